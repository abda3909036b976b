"""
Importação de recebíveis pendentes de um provedor para clientes + boletos.

Por recebível, na ordem de chegada:
  1. CPF/CNPJ normalizado; vazio -> skip "no tax id"
  2. cliente por CPF/CNPJ na organização
  3. senão, cliente por codigo "{PROVEDOR}-{doc}" (retry de execução parcial);
     senão cria o cliente
  4. competência = YYYY-MM do vencimento
  5. dedup por (cliente, vencimento, valor): se existir, preenche a referência
     externa quando faltar ("reference id backfilled") ou "duplicate"
  6. senão insere boleto "não pago" com a referência externa

Falha em um item vira skip "error: ..." e o lote segue.
Progresso é emitido após cada item e persistido em settings
("{provider}_import_progress") para a barra de progresso do dashboard.
"""
import asyncio
import json
import logging
from collections.abc import Callable
from datetime import date

from app.models.billing import (
    BOLETO_UNPAID,
    PROVIDERS,
    ImportLogEntry,
    ImportProgress,
    ImportResult,
    NormalizedReceivable,
    competence_of,
    normalize_tax_id,
)
from app.models.connections import get_provider_connections
from app.services.audit import RunTimer, record_run
from app.services.providers.base import ProviderAdapter
from app.services.providers.registry import get_adapter, validate_provider

logger = logging.getLogger(__name__)

REASON_NO_TAX_ID = "no tax id"
REASON_NO_DUE_DATE = "no due date"
REASON_CLIENT_CREATED = "client auto-created"
REASON_DUPLICATE = "duplicate"
REASON_BACKFILLED = "reference id backfilled"

# Persist progress every N items (and always on the last one)
_PROGRESS_PERSIST_INTERVAL = 10


def progress_key(provider: str) -> str:
    return f"{provider}_import_progress"


def client_code(provider: str, tax_id: str) -> str:
    return f"{provider.upper()}-{tax_id}"


class ReceivableImporter:
    """Reconciles a batch of normalized receivables into one org's ledger."""

    def __init__(
        self,
        ledger,
        org_id: str,
        provider: str,
        on_progress: Callable[[ImportProgress], None] | None = None,
    ):
        self.ledger = ledger
        self.org_id = org_id
        self.provider = provider
        self.on_progress = on_progress
        self._clients_by_doc: dict[str, dict] = {}

    def _load_clients(self) -> None:
        for c in self.ledger.list_clients(self.org_id):
            doc = normalize_tax_id(c.get("cnpj"))
            # Duplicate tax ids are tolerated; the first one wins
            if doc and doc not in self._clients_by_doc:
                self._clients_by_doc[doc] = c

    async def run(self, receivables: list[NormalizedReceivable]) -> ImportResult:
        self._load_clients()
        result = ImportResult()
        progress = ImportProgress(total=len(receivables))

        for i, item in enumerate(receivables):
            entry = self._import_one(item)
            result.log.append(entry)
            if entry.status == "imported":
                result.imported += 1
            else:
                result.skipped += 1

            progress.current = i + 1
            progress.imported = result.imported
            progress.skipped = result.skipped
            if self.on_progress:
                self.on_progress(progress.model_copy())
            # Let the progress endpoint run between items
            await asyncio.sleep(0)

        logger.info(
            "Import %s org=%s: %d imported, %d skipped (of %d)",
            self.provider, self.org_id, result.imported, result.skipped, len(receivables),
        )
        return result

    def _entry(self, item: NormalizedReceivable, doc: str, status: str, reason: str | None = None) -> ImportLogEntry:
        return ImportLogEntry(
            stakeholder_name=item.counterparty_name,
            stakeholder_doc=doc,
            value=item.amount,
            due_date=item.due_date,
            status=status,
            reason=reason,
        )

    def _import_one(self, item: NormalizedReceivable) -> ImportLogEntry:
        doc = normalize_tax_id(item.counterparty_tax_id)
        if not doc:
            return self._entry(item, doc, "skipped", REASON_NO_TAX_ID)
        if item.due_date is None:
            return self._entry(item, doc, "skipped", REASON_NO_DUE_DATE)

        try:
            client, created = self._match_or_create_client(item, doc)

            existing = self.ledger.find_boleto(self.org_id, client["id"], item.due_date, item.amount)
            if existing:
                if not existing.get("nibo_schedule_id") and item.external_id:
                    self.ledger.update_boleto(existing["id"], {"nibo_schedule_id": item.external_id})
                    return self._entry(item, doc, "skipped", REASON_BACKFILLED)
                return self._entry(item, doc, "skipped", REASON_DUPLICATE)

            self.ledger.insert_boleto({
                "client_id": client["id"],
                "valor": float(item.amount),
                "vencimento": item.due_date.isoformat(),
                "competencia": competence_of(item.due_date),
                "categoria": item.category or PROVIDERS[self.provider],
                "status": BOLETO_UNPAID,
                "organization_id": self.org_id,
                "nibo_schedule_id": item.external_id,
            })
        except Exception as e:
            logger.warning(
                "Import %s: item %s (%s) failed: %s", self.provider, item.external_id, doc, e
            )
            return self._entry(item, doc, "skipped", f"error: {e}")

        return self._entry(item, doc, "imported", REASON_CLIENT_CREATED if created else None)

    def _match_or_create_client(self, item: NormalizedReceivable, doc: str) -> tuple[dict, bool]:
        client = self._clients_by_doc.get(doc)
        if client:
            return client, False

        codigo = client_code(self.provider, doc)
        client = self.ledger.find_client_by_code(self.org_id, codigo)
        if client:
            self._clients_by_doc[doc] = client
            return client, False

        start = competence_of(item.due_date) or date.today().strftime("%Y-%m")
        client = self.ledger.insert_client({
            "cnpj": doc,
            "nome_fantasia": item.counterparty_name,
            "razao_social": item.counterparty_name,
            "codigo": codigo,
            "inicio_competencia": start,
            "situacao": "mes-corrente",
            "status": "ativo",
            "vencimento": 10,
            "services": [],
            "organization_id": self.org_id,
        })
        self._clients_by_doc[doc] = client
        logger.info("Import %s: client %s auto-created (%s)", self.provider, codigo, item.counterparty_name)
        return client, True


def progress_persister(ledger, org_id: str, provider: str) -> Callable[[ImportProgress], None]:
    """on_progress callback that writes the counters to settings."""
    key = progress_key(provider)

    def _persist(progress: ImportProgress) -> None:
        if progress.current % _PROGRESS_PERSIST_INTERVAL and progress.current != progress.total:
            return
        try:
            ledger.upsert_setting(org_id, key, progress.model_dump_json())
        except Exception as e:
            logger.warning("Import progress persist failed for org %s: %s", org_id, e)

    return _persist


def get_import_progress(ledger, org_id: str, provider: str) -> dict | None:
    raw = ledger.get_setting(org_id, progress_key(provider))
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def fetch_receivables(
    ledger,
    org_id: str,
    provider: str,
    connection_id: str | None = None,
    adapter: ProviderAdapter | None = None,
) -> list[NormalizedReceivable]:
    """Adapter layer only: pending receivables across the org's connections."""
    provider = validate_provider(provider)
    connections = get_provider_connections(ledger, org_id, provider, connection_id)
    adapter = adapter or get_adapter(provider)
    return await adapter.fetch_pending(connections)


async def import_receivables(
    ledger,
    org_id: str,
    provider: str,
    user_id: str | None = None,
    connection_id: str | None = None,
    adapter: ProviderAdapter | None = None,
    on_progress: Callable[[ImportProgress], None] | None = None,
) -> ImportResult:
    """Full import flow: fetch from provider, reconcile, audit."""
    provider = validate_provider(provider)
    timer = RunTimer()
    receivables = await fetch_receivables(ledger, org_id, provider, connection_id, adapter)

    importer = ReceivableImporter(ledger, org_id, provider, on_progress=on_progress)
    result = await importer.run(receivables)

    record_run(
        ledger, org_id, user_id, f"{provider}_import",
        {
            "imported": result.imported,
            "skipped": result.skipped,
            "total": len(receivables),
            "connection_id": connection_id,
        },
        timer,
    )
    return result
