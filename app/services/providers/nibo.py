"""
Nibo: agendamentos de crédito (schedules/credit).
Auth via header ApiToken. Paginação OData ($top/$skip).
"""
from datetime import date, timedelta

import httpx

from app.config import settings
from app.models.billing import NormalizedReceivable, ReceivableStatus, normalize_tax_id, parse_date, to_amount
from app.services.providers.base import ProviderAdapter, connection_credential

NIBO_API = "https://api.nibo.com.br/empresas/v1"
PAGE_SIZE = 500

PAID_STATUSES = {"finished", "paid", "pago", "finalizado"}


def _stakeholder(item: dict) -> dict:
    sh = item.get("stakeholder")
    if isinstance(sh, dict):
        return sh
    many = item.get("stakeholders") or []
    return many[0] if many and isinstance(many[0], dict) else {}


def stakeholder_document(item: dict) -> str:
    sh = _stakeholder(item)
    return normalize_tax_id(
        sh.get("document") or sh.get("cpfCnpj") or sh.get("taxNumber") or item.get("stakeholderDocument")
    )


def _items(data) -> list[dict]:
    if isinstance(data, dict):
        return data.get("items") or []
    return data if isinstance(data, list) else []


class NiboAdapter(ProviderAdapter):
    name = "nibo"
    label = "Nibo"
    strategy = "bulk_map"
    max_pages = 20

    def __init__(self, *args, today: date | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._today = today

    def base_url(self, conn: dict) -> str:
        return NIBO_API

    def headers(self, conn: dict) -> dict:
        return {"ApiToken": connection_credential(conn), "Accept": "application/json"}

    async def fetch_page(self, client: httpx.AsyncClient, conn: dict, page: int, finished: bool = False):
        params = {"$orderby": "dueDate", "$top": PAGE_SIZE, "$skip": page * PAGE_SIZE}
        if finished:
            # No dedicated "finished" list: fetch the whole window and keep
            # what parse_status says is paid (see list_statuses).
            since = (self._today or date.today()) - timedelta(days=settings.sync_finished_lookback_days)
            params["$filter"] = f"dueDate ge {since.isoformat()}"
            path = "/schedules/credit"
        else:
            path = "/schedules/credit/opened"
        items = _items(await self.get_json(client, conn, path, params))
        return items, len(items) >= PAGE_SIZE

    async def fetch_month(self, client: httpx.AsyncClient, conn: dict, start: date, end: date, max_pages: int = 10) -> list[dict]:
        """Raw schedules due within [start, end], used by the monthly check."""
        collected: list[dict] = []
        for page in range(max_pages):
            params = {
                "$filter": f"dueDate ge {start.isoformat()} and dueDate le {end.isoformat()}",
                "$orderby": "dueDate",
                "$top": PAGE_SIZE,
                "$skip": page * PAGE_SIZE,
            }
            items = _items(await self.get_json(client, conn, "/schedules/credit", params))
            collected.extend(items)
            if len(items) < PAGE_SIZE:
                break
        return collected

    def status_path(self, external_id: str):
        return f"/schedules/credit/{external_id}", None

    def parse_receivable(self, raw: dict, conn: dict) -> NormalizedReceivable:
        sh = _stakeholder(raw)
        category = raw.get("categoryName") or (raw.get("category") or {}).get("name")
        external_id = raw.get("scheduleId") or raw.get("id") or raw.get("scheduleID")
        return NormalizedReceivable(
            external_id=str(external_id) if external_id else None,
            counterparty_name=sh.get("name") or raw.get("stakeholderName") or "Desconhecido",
            counterparty_tax_id=stakeholder_document(raw),
            amount=to_amount(raw.get("value")),
            due_date=parse_date(raw.get("dueDate")),
            category=category or self.label,
            connection_name=conn.get("nome"),
        )

    def parse_status(self, raw: dict, external_id: str) -> ReceivableStatus:
        due = parse_date(raw.get("dueDate"))
        paid_value = to_amount(raw.get("paidValue"))
        open_raw = raw.get("openValue")
        open_value = to_amount(open_raw if open_raw is not None else raw.get("value"))
        write_off = parse_date(raw.get("writeOffDate"))
        status = str(raw.get("status") or "").lower()

        is_paid = (
            raw.get("isPaid") is True
            or status in PAID_STATUSES
            or (paid_value > 0 and open_value <= 0)
            or (write_off is not None and open_value <= 0)
        )
        if is_paid:
            paid = write_off or parse_date(raw.get("paymentDate")) or due
            return ReceivableStatus(external_id=external_id, state="paid", paid_date=paid, due_date=due)
        return ReceivableStatus(external_id=external_id, state="open", due_date=due)
