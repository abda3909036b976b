from app.errors import ConfigurationError
from app.models.billing import PROVIDERS
from app.services.providers.asaas import AsaasAdapter
from app.services.providers.base import ProviderAdapter
from app.services.providers.contaazul import ContaAzulAdapter
from app.services.providers.nibo import NiboAdapter
from app.services.providers.safe2pay import Safe2PayAdapter

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "nibo": NiboAdapter,
    "safe2pay": Safe2PayAdapter,
    "asaas": AsaasAdapter,
    "contaazul": ContaAzulAdapter,
}


def validate_provider(provider: str) -> str:
    provider = (provider or "").strip().lower()
    if provider not in PROVIDERS:
        raise ConfigurationError(f"Provedor desconhecido: {provider!r}")
    return provider


def get_adapter(provider: str, **kwargs) -> ProviderAdapter:
    return ADAPTERS[validate_provider(provider)](**kwargs)
