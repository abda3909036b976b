"""
Conta Azul (API v1): contas a receber.
Auth via Bearer token da conexão. Paginação page/size (1-based),
resposta é uma lista simples.
"""
import httpx

from app.models.billing import NormalizedReceivable, ReceivableStatus, normalize_tax_id, parse_date, to_amount
from app.services.providers.base import ProviderAdapter, connection_credential

CA_API = "https://api.contaazul.com/v1"
PAGE_SIZE = 50

PAID_STATUSES = {"RECEIVED", "ACQUITTED"}
CANCELLED_STATUSES = {"CANCELED", "CANCELLED", "LOST"}


class ContaAzulAdapter(ProviderAdapter):
    name = "contaazul"
    label = "Conta Azul"
    strategy = "per_item"
    max_pages = 200

    def base_url(self, conn: dict) -> str:
        return CA_API

    def headers(self, conn: dict) -> dict:
        return {"Authorization": f"Bearer {connection_credential(conn)}", "Accept": "application/json"}

    async def fetch_page(self, client: httpx.AsyncClient, conn: dict, page: int, finished: bool = False):
        data = await self.get_json(client, conn, "/receivables", {"page": page + 1, "size": PAGE_SIZE})
        items = data if isinstance(data, list) else (data or {}).get("items") or []
        return items, len(items) >= PAGE_SIZE

    def include_pending(self, raw: dict) -> bool:
        return str(raw.get("status") or "").upper() not in PAID_STATUSES

    def status_path(self, external_id: str):
        return f"/receivables/{external_id}", None

    def parse_receivable(self, raw: dict, conn: dict) -> NormalizedReceivable:
        customer = raw.get("customer") or {}
        external_id = raw.get("id")
        return NormalizedReceivable(
            external_id=str(external_id) if external_id else None,
            counterparty_name=customer.get("name") or "Desconhecido",
            counterparty_tax_id=normalize_tax_id(customer.get("document")),
            amount=to_amount(raw.get("value")),
            due_date=parse_date(raw.get("due_date")),
            category=self.label,
            connection_name=conn.get("nome"),
        )

    def parse_status(self, raw: dict, external_id: str) -> ReceivableStatus:
        due = parse_date(raw.get("due_date"))
        status = str(raw.get("status") or "").upper()
        if status in PAID_STATUSES:
            paid = parse_date(raw.get("payment_date")) or parse_date(raw.get("acquittance_date")) or due
            return ReceivableStatus(external_id=external_id, state="paid", paid_date=paid, due_date=due)
        if status in CANCELLED_STATUSES:
            return ReceivableStatus(external_id=external_id, state="cancelled", due_date=due)
        return ReceivableStatus(external_id=external_id, state="open", due_date=due)
