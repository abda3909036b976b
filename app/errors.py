"""
Exceções de domínio da conciliação.
Mapeadas para HTTP em app.main (ConfigurationError -> 400).
"""


class ReconciliationError(Exception):
    """Base for errors raised by import/sync services."""


class ConfigurationError(ReconciliationError):
    """Tenant has no usable provider connection (or missing credentials)."""


class ConnectionNotFoundError(ConfigurationError):
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__("Conexão não encontrada.")


class ProviderError(ReconciliationError):
    """Upstream provider call failed (non-2xx after retries, or network)."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")
