"""
Exclusão em massa de boletos da organização (opcionalmente de um mês).

Pagos: soft delete (deleted_at) para preservar o histórico financeiro.
Não pagos/cancelados: hard delete.
Em blocos de settings.delete_chunk_size ids; erro num bloco é registrado
e os demais seguem. Sempre grava um audit_log.
"""
import logging
from datetime import datetime, timezone

from app.config import settings
from app.models.billing import BOLETO_PAID
from app.services.audit import RunTimer, record_run

logger = logging.getLogger(__name__)


def _chunks(ids: list[str], size: int):
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


def delete_all_boletos(
    ledger,
    org_id: str,
    user_id: str | None,
    month_filter: str | None = None,
    chunk_size: int | None = None,
) -> dict:
    timer = RunTimer()
    size = chunk_size or settings.delete_chunk_size
    boletos = ledger.list_boletos_for_cleanup(org_id, month_filter)

    paid_ids = [b["id"] for b in boletos if b.get("status") == BOLETO_PAID]
    unpaid_ids = [b["id"] for b in boletos if b.get("status") != BOLETO_PAID]

    soft_deleted = 0
    hard_deleted = 0
    errors: list[str] = []
    deleted_at = datetime.now(timezone.utc).isoformat()

    for chunk in _chunks(paid_ids, size):
        try:
            ledger.soft_delete_boletos(chunk, deleted_at)
            soft_deleted += len(chunk)
        except Exception as e:
            logger.error("Soft delete chunk failed (org=%s, %d ids): %s", org_id, len(chunk), e)
            errors.append(f"soft_delete_chunk: {e}")

    for chunk in _chunks(unpaid_ids, size):
        try:
            ledger.hard_delete_boletos(chunk)
            hard_deleted += len(chunk)
        except Exception as e:
            logger.error("Hard delete chunk failed (org=%s, %d ids): %s", org_id, len(chunk), e)
            errors.append(f"hard_delete_chunk: {e}")

    record_run(
        ledger, org_id, user_id, "delete_all_boletos",
        {
            "month_filter": month_filter,
            "total_found": len(boletos),
            "hard_deleted": hard_deleted,
            "soft_deleted": soft_deleted,
            "errors": errors,
        },
        timer,
    )
    logger.info(
        "delete-all-boletos: org=%s user=%s total=%d hard=%d soft=%d errors=%d",
        org_id, user_id, len(boletos), hard_deleted, soft_deleted, len(errors),
    )
    return {
        "hard_deleted": hard_deleted,
        "soft_deleted": soft_deleted,
        "total": len(boletos),
        "errors": errors,
    }
