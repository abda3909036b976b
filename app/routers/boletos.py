"""
Operações em massa sobre boletos da organização.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.db.ledger import get_ledger
from app.routers.auth import TenantContext, require_admin_role, require_member
from app.services.boleto_cleanup import delete_all_boletos
from app.services.monthly_check import check_monthly_boletos
from app.services.providers.nibo import NiboAdapter

router = APIRouter(prefix="/boletos", tags=["boletos"])

COMPETENCIA_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class DeleteAllRequest(BaseModel):
    month_filter: str | None = Field(default=None, pattern=COMPETENCIA_PATTERN)


class MonthlyCheckRequest(BaseModel):
    competencia: str | None = Field(default=None, pattern=COMPETENCIA_PATTERN)


def get_nibo_adapter() -> NiboAdapter:
    return NiboAdapter()


@router.post("/delete-all")
async def delete_all(
    req: DeleteAllRequest | None = None,
    tenant: TenantContext = Depends(require_admin_role),
    ledger=Depends(get_ledger),
):
    """Pagos -> soft delete, demais -> hard delete. Requer owner/admin."""
    req = req or DeleteAllRequest()
    return delete_all_boletos(ledger, tenant.organization_id, tenant.user_id, req.month_filter)


@router.post("/monthly-check")
async def monthly_check(
    req: MonthlyCheckRequest | None = None,
    tenant: TenantContext = Depends(require_member),
    ledger=Depends(get_ledger),
    adapter: NiboAdapter = Depends(get_nibo_adapter),
):
    req = req or MonthlyCheckRequest()
    return await check_monthly_boletos(ledger, tenant.organization_id, req.competencia, adapter=adapter)
