"""
Sincronização de status: transições pago/cancelado/vencimento, regra de
404 com várias conexões, mapa em lote (Nibo/Safe2Pay), isolamento de falha
por boleto e lock por (organização, provedor).
"""
import asyncio
from datetime import date, datetime, timezone

import httpx
import pytest

from app.errors import ConfigurationError
from app.models.billing import BOLETO_CANCELLED, BOLETO_PAID, BOLETO_UNPAID
from app.services.providers.nibo import NiboAdapter
from app.services.status_sync import (
    ALREADY_RUNNING_MESSAGE,
    NOTHING_TO_SYNC_MESSAGE,
    StatusSyncer,
    sync_status,
)
from app.services.sync_lock import lock_key

from conftest import ORG_ID, USER_ID, make_adapter


def _asaas_handler(payments: dict):
    """payments: payment id -> (http status, json body)."""
    def handler(request: httpx.Request) -> httpx.Response:
        pay_id = request.url.path.rsplit("/", 1)[-1]
        status, body = payments.get(pay_id, (404, None))
        return httpx.Response(status, json=body)
    return handler


# ── Transitions ─────────────────────────────────────────────────────────────

async def test_paid_upstream_marks_boleto_paid(ledger):
    ledger.add_connection("asaas")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1", vencimento="2025-11-10")
    adapter = make_adapter("asaas", _asaas_handler({
        "pay_1": (200, {"id": "pay_1", "status": "RECEIVED", "paymentDate": "2025-11-12", "dueDate": "2025-11-10"}),
    }))

    result = await sync_status(ledger, ORG_ID, "asaas", user_id=USER_ID, adapter=adapter)

    assert result == {"updated": 1, "unchanged": 0, "cancelled": 0, "dueDateUpdated": 0, "total": 1}
    row = ledger.boleto(boleto["id"])
    assert row["status"] == BOLETO_PAID
    assert row["data_pagamento"] == "2025-11-12"
    assert row["nibo_synced_at"] is not None

    [audit] = ledger.audit_logs
    assert audit["action"] == "asaas_sync"
    assert audit["details"]["updated"] == 1
    assert audit["details"]["silent"] is False


async def test_cancelled_upstream_is_terminal(ledger):
    ledger.add_connection("asaas")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1")
    adapter = make_adapter("asaas", _asaas_handler({"pay_1": (200, {"status": "REFUNDED", "dueDate": "2025-11-10"})}))

    first = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)
    second = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert first["cancelled"] == 1
    assert ledger.boleto(boleto["id"])["status"] == BOLETO_CANCELLED
    assert second["total"] == 0
    assert second["message"] == NOTHING_TO_SYNC_MESSAGE


async def test_changed_due_date_is_updated(ledger):
    ledger.add_connection("asaas")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1", vencimento="2025-11-10")
    adapter = make_adapter("asaas", _asaas_handler({"pay_1": (200, {"status": "PENDING", "dueDate": "2025-11-20"})}))

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert result["dueDateUpdated"] == 1
    row = ledger.boleto(boleto["id"])
    assert row["vencimento"] == "2025-11-20"
    assert row["status"] == BOLETO_UNPAID


async def test_open_with_same_due_date_is_unchanged_but_stamped(ledger):
    ledger.add_connection("asaas")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1", vencimento="2025-11-10")
    adapter = make_adapter("asaas", _asaas_handler({"pay_1": (200, {"status": "OVERDUE", "dueDate": "2025-11-10"})}))

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert result["unchanged"] == 1
    assert ledger.boleto(boleto["id"])["nibo_synced_at"] is not None


async def test_sync_never_unpays(ledger):
    paid = ledger.add_boleto(nibo_schedule_id="pay_1", status=BOLETO_PAID, data_pagamento="2025-11-05")
    adapter = make_adapter("asaas", _asaas_handler({"pay_1": (200, {"status": "PENDING", "dueDate": "2025-12-10"})}))
    conn = ledger.add_connection("asaas")

    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn]).run([dict(paid)])

    assert result.unchanged == 1
    row = ledger.boleto(paid["id"])
    assert row["status"] == BOLETO_PAID
    assert row["vencimento"] == "2025-11-10"


async def test_manual_payment_during_sync_is_not_overwritten(ledger):
    ledger.add_connection("asaas")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1")

    def handler(request: httpx.Request) -> httpx.Response:
        # Someone marks it paid in the dashboard while the provider call is in flight
        ledger.boleto(boleto["id"])["status"] = BOLETO_PAID
        return httpx.Response(200, json={"status": "REFUNDED"})

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=make_adapter("asaas", handler))

    assert ledger.boleto(boleto["id"])["status"] == BOLETO_PAID
    assert (result["cancelled"], result["unchanged"]) == (0, 1)


async def test_silent_flag_goes_to_audit(ledger):
    ledger.add_connection("asaas")
    await sync_status(ledger, ORG_ID, "asaas", silent=True, adapter=make_adapter("asaas", _asaas_handler({})))
    assert ledger.audit_logs[0]["details"]["silent"] is True


# ── Multiple connections ────────────────────────────────────────────────────

def _per_connection_handler(responses: dict):
    """responses: access_token -> (http status, json body)."""
    def handler(request: httpx.Request) -> httpx.Response:
        status, body = responses[request.headers["access_token"]]
        return httpx.Response(status, json=body)
    return handler


async def test_404_on_one_connection_defers_to_the_next(ledger):
    ledger.add_connection("asaas", api_token="a")
    ledger.add_connection("asaas", api_token="b")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1")
    adapter = make_adapter("asaas", _per_connection_handler({
        "a": (404, None),
        "b": (200, {"status": "CONFIRMED", "confirmedDate": "2025-11-12"}),
    }))

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert result["updated"] == 1
    assert ledger.boleto(boleto["id"])["status"] == BOLETO_PAID


async def test_404_on_every_connection_cancels(ledger):
    ledger.add_connection("asaas", api_token="a")
    ledger.add_connection("asaas", api_token="b")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1")
    adapter = make_adapter("asaas", _per_connection_handler({"a": (404, None), "b": (404, None)}))

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert result["cancelled"] == 1
    assert ledger.boleto(boleto["id"])["status"] == BOLETO_CANCELLED


async def test_404_plus_error_leaves_boleto_untouched(ledger):
    ledger.add_connection("asaas", api_token="a")
    ledger.add_connection("asaas", api_token="b")
    boleto = ledger.add_boleto(nibo_schedule_id="pay_1")
    adapter = make_adapter("asaas", _per_connection_handler({"a": (404, None), "b": (403, {"errors": []})}))

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=adapter)

    assert result["unchanged"] == 1
    assert result["cancelled"] == 0
    assert ledger.boleto(boleto["id"])["status"] == BOLETO_UNPAID


# ── Bulk map (Nibo) ─────────────────────────────────────────────────────────

def _nibo_bulk_handler(calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(path)
        if path == "/empresas/v1/schedules/credit/opened":
            return httpx.Response(200, json={"items": [
                {"scheduleId": "sched-open", "value": 100, "dueDate": "2025-11-10"},
            ]})
        if path == "/empresas/v1/schedules/credit":
            return httpx.Response(200, json={"items": [
                {"scheduleId": "sched-paid", "value": 100, "isPaid": True,
                 "writeOffDate": "2025-11-12", "dueDate": "2025-11-10"},
                {"scheduleId": "sched-open", "value": 100, "openValue": 100, "dueDate": "2025-11-10"},
            ]})
        return httpx.Response(404)
    return handler


async def test_nibo_bulk_map_resolves_from_lists_and_falls_back_per_item(ledger):
    conn = ledger.add_connection("nibo")
    paid = ledger.add_boleto(nibo_schedule_id="sched-paid")
    opened = ledger.add_boleto(nibo_schedule_id="sched-open")
    gone = ledger.add_boleto(nibo_schedule_id="sched-gone")
    calls = []
    adapter = NiboAdapter(transport=httpx.MockTransport(_nibo_bulk_handler(calls)), today=date(2025, 12, 1), retry_backoff=0)

    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn]).run(ledger.list_sync_candidates(ORG_ID))

    assert (result.updated, result.unchanged, result.cancelled, result.total) == (1, 1, 1, 3)
    assert ledger.boleto(paid["id"])["data_pagamento"] == "2025-11-12"
    assert ledger.boleto(opened["id"])["status"] == BOLETO_UNPAID
    assert ledger.boleto(gone["id"])["status"] == BOLETO_CANCELLED
    # Only the unknown id needed an individual lookup
    assert calls.count("/empresas/v1/schedules/credit/sched-gone") == 1
    assert "/empresas/v1/schedules/credit/sched-paid" not in calls


async def test_bulk_fetch_failure_falls_back_to_single_lookups(ledger):
    conn = ledger.add_connection("nibo")
    boleto = ledger.add_boleto(nibo_schedule_id="s1")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/empresas/v1/schedules/credit/s1":
            return httpx.Response(200, json={"isPaid": True, "paymentDate": "2025-11-15", "dueDate": "2025-11-10"})
        return httpx.Response(503)

    adapter = NiboAdapter(transport=httpx.MockTransport(handler), max_retries=0)
    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn]).run(ledger.list_sync_candidates(ORG_ID))

    assert result.updated == 1
    assert ledger.boleto(boleto["id"])["data_pagamento"] == "2025-11-15"


async def test_non_json_bulk_list_falls_back_to_single_lookups(ledger):
    ledger.add_connection("nibo")
    boleto = ledger.add_boleto(nibo_schedule_id="s1")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/empresas/v1/schedules/credit/s1":
            return httpx.Response(200, json={"isPaid": True, "paymentDate": "2025-11-15", "dueDate": "2025-11-10"})
        return httpx.Response(200, text="<html>maintenance</html>")

    result = await sync_status(ledger, ORG_ID, "nibo", adapter=make_adapter("nibo", handler))

    assert result["updated"] == 1
    assert ledger.boleto(boleto["id"])["status"] == BOLETO_PAID


# ── Bulk map (Safe2Pay) ─────────────────────────────────────────────────────

async def test_safe2pay_paid_list_resolves_without_single_lookups(ledger):
    conn = ledger.add_connection("safe2pay")
    paid = ledger.add_boleto(nibo_schedule_id="77")
    opened = ledger.add_boleto(nibo_schedule_id="80")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/v2/BankSlip/List":
            if request.url.params["IsPaid"] == "true":
                rows = [{"IdTransaction": 77, "Amount": 100, "DueDate": "2025-11-10"}]
            else:
                rows = [{"IdTransaction": 80, "Amount": 100, "DueDate": "2025-11-10"}]
            return httpx.Response(200, json={"ResponseDetail": {"Objects": rows}})
        return httpx.Response(404)

    adapter = make_adapter("safe2pay", handler)
    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn]).run(ledger.list_sync_candidates(ORG_ID))

    assert (result.updated, result.unchanged) == (1, 1)
    assert ledger.boleto(paid["id"])["status"] == BOLETO_PAID
    assert ledger.boleto(paid["id"])["data_pagamento"] == "2025-11-10"
    assert ledger.boleto(opened["id"])["status"] == BOLETO_UNPAID
    assert "/v2/transaction/Get" not in calls


# ── Failure isolation and batching ──────────────────────────────────────────

async def test_failed_update_does_not_stop_other_boletos(ledger, monkeypatch):
    conn = ledger.add_connection("asaas")
    ok = [ledger.add_boleto(nibo_schedule_id=f"pay_{i}") for i in range(3)]
    broken = ledger.add_boleto(nibo_schedule_id="pay_x")
    body = (200, {"status": "RECEIVED", "paymentDate": "2025-11-12"})
    adapter = make_adapter("asaas", _asaas_handler({b["nibo_schedule_id"]: body for b in ok + [broken]}))

    original = ledger.update_boleto

    def flaky_update(boleto_id, fields, expected_status=None):
        if boleto_id == broken["id"]:
            raise RuntimeError("statement timeout")
        return original(boleto_id, fields, expected_status)

    monkeypatch.setattr(ledger, "update_boleto", flaky_update)
    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn]).run(ledger.list_sync_candidates(ORG_ID))

    assert result.updated == 3
    assert result.total == 4
    assert all(ledger.boleto(b["id"])["status"] == BOLETO_PAID for b in ok)
    assert ledger.boleto(broken["id"])["status"] == BOLETO_UNPAID


async def test_small_batches_cover_every_candidate(ledger):
    conn = ledger.add_connection("asaas")
    for i in range(5):
        ledger.add_boleto(nibo_schedule_id=f"pay_{i}")
    adapter = make_adapter("asaas", _asaas_handler({
        f"pay_{i}": (200, {"status": "RECEIVED"}) for i in range(5)
    }))

    result = await StatusSyncer(ledger, ORG_ID, adapter, [conn], batch_size=2).run(ledger.list_sync_candidates(ORG_ID))

    assert result.updated == 5
    assert all(b["status"] == BOLETO_PAID for b in ledger.boletos)


# ── Lock and preconditions ──────────────────────────────────────────────────

async def test_held_lock_returns_already_running(ledger):
    ledger.add_connection("asaas")
    ledger.add_boleto(nibo_schedule_id="pay_1")
    ledger.upsert_setting(ORG_ID, lock_key("asaas"), datetime.now(timezone.utc).isoformat())
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"status": "RECEIVED"})

    result = await sync_status(ledger, ORG_ID, "asaas", adapter=make_adapter("asaas", handler))

    assert result == {"message": ALREADY_RUNNING_MESSAGE}
    assert calls == []
    assert ledger.audit_logs == []
    # The other run's lease is untouched
    assert ledger.get_setting(ORG_ID, lock_key("asaas")) is not None


async def test_concurrent_syncs_are_mutually_exclusive(ledger):
    ledger.add_connection("asaas")
    ledger.add_boleto(nibo_schedule_id="pay_1")

    async def slow_handler(request):
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"status": "OVERDUE"})

    adapter_a = make_adapter("asaas", slow_handler)
    adapter_b = make_adapter("asaas", slow_handler)
    results = await asyncio.gather(
        sync_status(ledger, ORG_ID, "asaas", adapter=adapter_a),
        sync_status(ledger, ORG_ID, "asaas", adapter=adapter_b),
    )

    messages = [r.get("message") for r in results]
    assert messages.count(ALREADY_RUNNING_MESSAGE) == 1
    assert ledger.get_setting(ORG_ID, lock_key("asaas")) is None
    assert len(ledger.audit_logs) == 1


async def test_lock_released_when_run_fails(ledger, monkeypatch):
    ledger.add_connection("asaas")

    def boom(org_id):
        raise RuntimeError("db down")

    monkeypatch.setattr(ledger, "list_sync_candidates", boom)
    with pytest.raises(RuntimeError):
        await sync_status(ledger, ORG_ID, "asaas", adapter=make_adapter("asaas", _asaas_handler({})))
    assert ledger.get_setting(ORG_ID, lock_key("asaas")) is None


async def test_no_connection_fails_before_taking_the_lock(ledger):
    with pytest.raises(ConfigurationError):
        await sync_status(ledger, ORG_ID, "safe2pay", adapter=make_adapter("safe2pay", _asaas_handler({})))
    assert ledger.get_setting(ORG_ID, lock_key("safe2pay")) is None
