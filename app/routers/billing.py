"""
Billing API - importação e sincronização de boletos com o provedor de
cobrança ativo da organização (Nibo, Safe2Pay, Asaas, Conta Azul).
"""
import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from app.db.ledger import get_ledger
from app.models.billing import DEFAULT_PROVIDER, PROVIDERS
from app.routers.auth import TenantContext, require_member
from app.services.billing_import import (
    fetch_receivables,
    get_import_progress,
    import_receivables,
    progress_persister,
)
from app.services.providers.base import ProviderAdapter
from app.services.providers.registry import get_adapter, validate_provider
from app.services.status_sync import sync_status

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing"])

ACTIVE_PROVIDER_KEY = "active_billing_provider"


class ConnectionRequest(BaseModel):
    connection_id: str | None = Field(
        default=None, validation_alias=AliasChoices("connection_id", "connectionId")
    )


class SyncRequest(BaseModel):
    silent: bool = False


class ActiveProviderRequest(BaseModel):
    provider: str


def get_adapter_factory() -> Callable[[str], ProviderAdapter]:
    return get_adapter


@router.get("/providers")
async def list_providers(tenant: TenantContext = Depends(require_member), ledger=Depends(get_ledger)):
    active = ledger.get_setting(tenant.organization_id, ACTIVE_PROVIDER_KEY) or DEFAULT_PROVIDER
    return {
        "providers": [{"id": pid, "label": label} for pid, label in PROVIDERS.items()],
        "active": active,
    }


@router.put("/active-provider")
async def set_active_provider(
    req: ActiveProviderRequest,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
):
    provider = validate_provider(req.provider)
    ledger.upsert_setting(tenant.organization_id, ACTIVE_PROVIDER_KEY, provider)
    logger.info("Org %s active billing provider -> %s", tenant.organization_id, provider)
    return {"active": provider}


@router.post("/{provider}/fetch")
async def fetch_pending(
    provider: str,
    req: ConnectionRequest | None = None,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
    adapter_factory: Callable[[str], ProviderAdapter] = Depends(get_adapter_factory),
):
    """Pending receivables straight from the provider, nothing written."""
    req = req or ConnectionRequest()
    provider = validate_provider(provider)
    items = await fetch_receivables(
        ledger, tenant.organization_id, provider, req.connection_id, adapter=adapter_factory(provider)
    )
    return {
        "items": [r.model_dump(mode="json", by_alias=True) for r in items],
        "count": len(items),
    }


@router.post("/{provider}/import")
async def run_import(
    provider: str,
    req: ConnectionRequest | None = None,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
    adapter_factory: Callable[[str], ProviderAdapter] = Depends(get_adapter_factory),
):
    req = req or ConnectionRequest()
    provider = validate_provider(provider)
    result = await import_receivables(
        ledger,
        tenant.organization_id,
        provider,
        user_id=tenant.user_id,
        connection_id=req.connection_id,
        adapter=adapter_factory(provider),
        on_progress=progress_persister(ledger, tenant.organization_id, provider),
    )
    return result.model_dump(mode="json", by_alias=True)


@router.get("/{provider}/import/progress")
async def import_progress(
    provider: str,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
):
    provider = validate_provider(provider)
    return get_import_progress(ledger, tenant.organization_id, provider) or {}


@router.post("/{provider}/sync")
async def run_sync(
    provider: str,
    req: SyncRequest | None = None,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
    adapter_factory: Callable[[str], ProviderAdapter] = Depends(get_adapter_factory),
):
    req = req or SyncRequest()
    provider = validate_provider(provider)
    return await sync_status(
        ledger,
        tenant.organization_id,
        provider,
        user_id=tenant.user_id,
        silent=req.silent,
        adapter=adapter_factory(provider),
    )
