"""
Lock de sincronização por (organização, provedor).

Lease com timestamp gravado em settings (key="{provider}_sync_lock").
Um lease mais novo que o TTL bloqueia novas execuções; um lease vencido é
tratado como ausente e pode ser tomado. Sem fencing: um crash entre acquire
e release deixa o lock até o TTL expirar.

Aquisição sem read-then-write:
  1. INSERT (unique key,organization_id) -> venceu
  2. conflito: lê o lease; se ainda vivo -> perdeu
  3. lease vencido: UPDATE ... WHERE value = <lease lido> -> só um vence
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from app.config import settings

logger = logging.getLogger(__name__)


def lock_key(provider: str) -> str:
    return f"{provider}_sync_lock"


def _parse_lease(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def try_acquire(
    ledger,
    org_id: str,
    provider: str,
    now: datetime | None = None,
    ttl_seconds: int | None = None,
) -> bool:
    now = now or datetime.now(timezone.utc)
    ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.sync_lock_ttl_seconds)
    key = lock_key(provider)
    stamp = now.isoformat()

    if ledger.insert_setting_if_absent(org_id, key, stamp):
        return True

    current = ledger.get_setting(org_id, key)
    if current is None:
        # Released between our insert and read
        return ledger.insert_setting_if_absent(org_id, key, stamp)

    held_since = _parse_lease(current)
    if held_since is not None and now - held_since < ttl:
        logger.info("Sync lock %s held for org %s since %s", key, org_id, current)
        return False

    logger.warning("Sync lock %s for org %s is stale (%s), taking over", key, org_id, current)
    return ledger.compare_and_set_setting(org_id, key, current, stamp)


def release(ledger, org_id: str, provider: str) -> None:
    ledger.delete_setting(org_id, lock_key(provider))


@asynccontextmanager
async def sync_lock(ledger, org_id: str, provider: str, ttl_seconds: int | None = None):
    """Yields True when acquired (and releases on exit), False when another run holds it."""
    acquired = try_acquire(ledger, org_id, provider, ttl_seconds=ttl_seconds)
    if not acquired:
        yield False
        return
    try:
        yield True
    finally:
        try:
            release(ledger, org_id, provider)
        except Exception:
            # Lease expires by TTL anyway
            logger.exception("Failed to release sync lock %s for org %s", lock_key(provider), org_id)
