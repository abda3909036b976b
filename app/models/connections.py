"""
Conexões de provedores de cobrança por organização (billing_connections).
Credenciais são dado do tenant, não configuração do processo.
"""
import logging

from app.errors import ConfigurationError, ConnectionNotFoundError
from app.models.billing import PROVIDERS

logger = logging.getLogger(__name__)


def get_provider_connections(ledger, org_id: str, provider: str, connection_id: str | None = None) -> list[dict]:
    """Connections of one provider for the org, optionally a single one by id.

    Connections without api_token/api_key are dropped (logged).
    Raises ConnectionNotFoundError / ConfigurationError when nothing usable exists.
    """
    label = PROVIDERS.get(provider, provider)
    connections = ledger.list_connections(org_id, provider, connection_id)
    if connection_id and not connections:
        raise ConnectionNotFoundError(connection_id)
    if not connections:
        raise ConfigurationError(
            f"Nenhuma conexão {label} configurada. Vá em Configurações para adicionar."
        )

    usable = [c for c in connections if c.get("api_token") or c.get("api_key")]
    for c in connections:
        if c not in usable:
            logger.warning("%s connection %s (%s) has no credential, skipping", label, c.get("id"), c.get("nome"))
    if not usable:
        raise ConfigurationError(f"Conexão {label} sem credencial configurada.")
    return usable
