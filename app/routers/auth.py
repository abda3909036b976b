"""
Dependencies de autenticação/tenancy para as rotas de cobrança.

Authorization: Bearer <jwt do Supabase Auth> -> usuário -> primeira linha em
organization_members -> TenantContext. Nenhuma chamada a provedor acontece
antes destas checagens.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from app.db.ledger import get_ledger
from app.db.supabase import get_user_id_from_jwt

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "admin")


@dataclass(frozen=True)
class TenantContext:
    user_id: str
    organization_id: str
    role: str | None = None


def get_token_verifier() -> Callable[[str], str | None]:
    return get_user_id_from_jwt


async def require_member(
    authorization: str | None = Header(default=None),
    verify_token: Callable[[str], str | None] = Depends(get_token_verifier),
    ledger=Depends(get_ledger),
) -> TenantContext:
    """Dependency: authenticated user with an organization."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing authorization")

    user_id = verify_token(authorization.removeprefix("Bearer ").strip())
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")

    membership = ledger.get_membership(user_id)
    if not membership:
        logger.warning("User %s has no organization membership", user_id)
        raise HTTPException(status_code=403, detail="Organização não encontrada.")

    return TenantContext(
        user_id=user_id,
        organization_id=membership["organization_id"],
        role=membership.get("role"),
    )


async def require_admin_role(tenant: TenantContext = Depends(require_member)) -> TenantContext:
    """Dependency: member whose role may run destructive operations."""
    if tenant.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=403,
            detail="Permissão negada. Apenas proprietários e administradores podem executar esta ação.",
        )
    return tenant
