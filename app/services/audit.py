"""
Registro de auditoria das execuções (import, sync, exclusão em massa).
Append-only em audit_logs: {organization_id, user_id, action, details}.
"""
import logging
import time

logger = logging.getLogger(__name__)


class RunTimer:
    def __init__(self):
        self._start = time.monotonic()

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)


def record_run(ledger, org_id: str, user_id: str | None, action: str, details: dict, timer: RunTimer | None = None) -> None:
    """Insert one audit row. A failed insert is logged, never raised:
    the run already happened and its result must still reach the caller."""
    payload = dict(details)
    if timer is not None:
        payload["duration_ms"] = timer.duration_ms
    try:
        ledger.insert_audit_log({
            "organization_id": org_id,
            "user_id": user_id,
            "action": action,
            "details": payload,
        })
    except Exception:
        logger.exception("Audit insert failed (org=%s action=%s details=%s)", org_id, action, payload)
