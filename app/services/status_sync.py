"""
Sincronização de status dos boletos "não pago" com referência externa
contra o provedor.

Estratégias:
  - bulk_map (Nibo, Safe2Pay): baixa uma vez as listas de abertos e
    finalizados de cada conexão, monta mapa por id externo; o que não
    estiver em nenhum dos dois cai na consulta individual.
  - per_item (Asaas, Conta Azul): consulta individual por boleto.

Consulta individual com várias conexões: a primeira resposta definitiva
(pago, cancelado, aberto) vence. 404 numa conexão não é definitivo; o boleto
só é cancelado se todas as conexões responderem 404.

Transições: pago -> status/data_pagamento; cancelado -> status (terminal);
aberto com vencimento diferente -> só vencimento; resto inalterado.
Todo boleto examinado recebe nibo_synced_at.

Lotes de settings.sync_batch_size consultas concorrentes.
"""
import asyncio
import logging
from datetime import date, datetime, timezone

import httpx

from app.config import settings
from app.errors import ProviderError, ReconciliationError
from app.models.billing import (
    BOLETO_CANCELLED,
    BOLETO_PAID,
    BOLETO_UNPAID,
    ReceivableStatus,
    SyncResult,
    parse_date,
)
from app.models.connections import get_provider_connections
from app.services.audit import RunTimer, record_run
from app.services.providers.base import ProviderAdapter
from app.services.providers.registry import get_adapter, validate_provider
from app.services.sync_lock import sync_lock

logger = logging.getLogger(__name__)

ALREADY_RUNNING_MESSAGE = "Sincronização já em execução."
NOTHING_TO_SYNC_MESSAGE = "Nenhum boleto pendente."

OUTCOMES = ("updated", "unchanged", "cancelled", "due_date_updated", "error")


class StatusSyncer:
    def __init__(
        self,
        ledger,
        org_id: str,
        adapter: ProviderAdapter,
        connections: list[dict],
        batch_size: int | None = None,
        today: date | None = None,
    ):
        self.ledger = ledger
        self.org_id = org_id
        self.adapter = adapter
        self.connections = connections
        self.batch_size = batch_size or settings.sync_batch_size
        self.today = today
        self._open: dict[str, ReceivableStatus] = {}
        self._finished: dict[str, ReceivableStatus] = {}

    async def run(self, candidates: list[dict]) -> SyncResult:
        counts = dict.fromkeys(OUTCOMES, 0)
        async with self.adapter.session() as client:
            if self.adapter.strategy == "bulk_map":
                await self._load_maps(client)

            for i in range(0, len(candidates), self.batch_size):
                batch = candidates[i:i + self.batch_size]
                outcomes = await asyncio.gather(*(self._sync_one(client, b) for b in batch))
                for outcome in outcomes:
                    counts[outcome] += 1

        if counts["error"]:
            logger.warning("%s sync org=%s: %d boletos failed to update", self.adapter.label, self.org_id, counts["error"])
        return SyncResult(
            updated=counts["updated"],
            unchanged=counts["unchanged"],
            cancelled=counts["cancelled"],
            due_date_updated=counts["due_date_updated"],
            total=len(candidates),
        )

    async def _load_maps(self, client: httpx.AsyncClient) -> None:
        for conn in self.connections:
            try:
                finished = await self.adapter.list_statuses(client, conn, finished=True)
                opened = await self.adapter.list_statuses(client, conn, finished=False)
            except (ProviderError, httpx.HTTPError) as e:
                # Per-item lookups still cover this connection's boletos
                logger.error("%s bulk fetch failed for %s: %s", self.adapter.label, conn.get("nome"), e)
                continue
            for ext_id, status in finished.items():
                self._finished.setdefault(ext_id, status)
            for ext_id, status in opened.items():
                self._open.setdefault(ext_id, status)
        logger.info(
            "%s bulk map org=%s: %d open, %d finished",
            self.adapter.label, self.org_id, len(self._open), len(self._finished),
        )

    async def _resolve(self, client: httpx.AsyncClient, external_id: str) -> ReceivableStatus | None:
        if external_id in self._finished:
            return self._finished[external_id]
        if external_id in self._open:
            return self._open[external_id]

        not_found = 0
        for conn in self.connections:
            try:
                status = await self.adapter.check_one(client, conn, external_id)
            except (ReconciliationError, httpx.HTTPError) as e:
                logger.debug("%s check %s via %s failed: %s", self.adapter.label, external_id, conn.get("nome"), e)
                continue
            if status.state == "not_found":
                not_found += 1
                continue
            return status

        if not_found == len(self.connections):
            return ReceivableStatus(external_id=external_id, state="cancelled")
        return None

    async def _sync_one(self, client: httpx.AsyncClient, boleto: dict) -> str:
        if boleto.get("status") != BOLETO_UNPAID:
            return "unchanged"
        external_id = str(boleto["nibo_schedule_id"])
        try:
            status = await self._resolve(client, external_id)
        except Exception as e:
            logger.warning("%s status lookup for boleto %s failed: %s", self.adapter.label, boleto["id"], e)
            status = None

        if status is None:
            # No definitive answer from any connection: leave untouched
            return "unchanged"

        try:
            return self._apply(boleto, status)
        except Exception as e:
            logger.error("Boleto %s update failed (%s): %s", boleto["id"], status.state, e)
            return "error"

    def _apply(self, boleto: dict, status: ReceivableStatus) -> str:
        now_iso = datetime.now(timezone.utc).isoformat()
        boleto_id = boleto["id"]
        current_due = parse_date(boleto.get("vencimento"))

        if status.state == "paid":
            paid_on = status.paid_date or current_due or self.today or date.today()
            changed = self.ledger.update_boleto(
                boleto_id,
                {"status": BOLETO_PAID, "data_pagamento": paid_on.isoformat(), "nibo_synced_at": now_iso},
                expected_status=BOLETO_UNPAID,
            )
            if not changed:
                return "unchanged"
            logger.info("Boleto %s (%s): PAID on %s", boleto_id, status.external_id, paid_on)
            return "updated"

        if status.state in ("cancelled", "not_found"):
            changed = self.ledger.update_boleto(
                boleto_id,
                {"status": BOLETO_CANCELLED, "nibo_synced_at": now_iso},
                expected_status=BOLETO_UNPAID,
            )
            if not changed:
                return "unchanged"
            logger.info("Boleto %s (%s): cancelled upstream", boleto_id, status.external_id)
            return "cancelled"

        if status.due_date and status.due_date != current_due:
            changed = self.ledger.update_boleto(
                boleto_id,
                {"vencimento": status.due_date.isoformat(), "nibo_synced_at": now_iso},
                expected_status=BOLETO_UNPAID,
            )
            if not changed:
                return "unchanged"
            logger.info("Boleto %s due date %s -> %s", boleto_id, current_due, status.due_date)
            return "due_date_updated"

        self.ledger.update_boleto(boleto_id, {"nibo_synced_at": now_iso}, expected_status=BOLETO_UNPAID)
        return "unchanged"


async def sync_status(
    ledger,
    org_id: str,
    provider: str,
    user_id: str | None = None,
    silent: bool = False,
    adapter: ProviderAdapter | None = None,
) -> dict:
    """Run one status sync for (org, provider).

    Returns the SyncResult counters, or {"message": ...} when another run
    holds the lock or there is nothing to sync.
    Raises ConfigurationError before any work when no connection exists.
    """
    provider = validate_provider(provider)
    connections = get_provider_connections(ledger, org_id, provider)
    adapter = adapter or get_adapter(provider)

    async with sync_lock(ledger, org_id, provider) as acquired:
        if not acquired:
            return {"message": ALREADY_RUNNING_MESSAGE}

        timer = RunTimer()
        candidates = ledger.list_sync_candidates(org_id)
        if candidates:
            result = await StatusSyncer(ledger, org_id, adapter, connections).run(candidates)
        else:
            result = SyncResult()

        summary = result.model_dump(by_alias=True)
        record_run(ledger, org_id, user_id, f"{provider}_sync", {**summary, "silent": silent}, timer)
        logger.info("%s sync org=%s: %s", adapter.label, org_id, summary)

        if not candidates:
            return {**summary, "message": NOTHING_TO_SYNC_MESSAGE}
        return summary
