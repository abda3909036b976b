"""
Safe2Pay: boletos (BankSlip) e transações.
Auth via header x-api-key. Paginação PageNumber/RowsPerPage (1-based).
"""
import httpx

from app.errors import ProviderError
from app.models.billing import NormalizedReceivable, ReceivableStatus, normalize_tax_id, parse_date, to_amount
from app.services.providers.base import ProviderAdapter, connection_credential

SAFE2PAY_API = "https://api.safe2pay.com.br/v2"
ROWS_PER_PAGE = 200

# Transaction status codes
PAID_CODES = {3, 11}            # Autorizado, Liberado
CANCELLED_CODES = {6, 7, 8, 12}  # Devolvido, Baixado, Recusado, Chargeback


def _status_code(raw: dict) -> int | None:
    status = raw.get("Status", raw.get("TransactionStatus"))
    if isinstance(status, dict):
        status = status.get("Id", status.get("Code"))
    try:
        return int(status)
    except (TypeError, ValueError):
        return None


class Safe2PayAdapter(ProviderAdapter):
    name = "safe2pay"
    label = "Safe2Pay"
    strategy = "bulk_map"
    max_pages = 50

    def base_url(self, conn: dict) -> str:
        return SAFE2PAY_API

    def headers(self, conn: dict) -> dict:
        return {"x-api-key": connection_credential(conn), "Accept": "application/json"}

    async def fetch_page(self, client: httpx.AsyncClient, conn: dict, page: int, finished: bool = False):
        params = {
            "PageNumber": page + 1,
            "RowsPerPage": ROWS_PER_PAGE,
            "IsPaid": "true" if finished else "false",
        }
        data = await self.get_json(client, conn, "/BankSlip/List", params)
        items = ((data or {}).get("ResponseDetail") or {}).get("Objects") or []
        return items, len(items) >= ROWS_PER_PAGE

    def status_path(self, external_id: str):
        return "/transaction/Get", {"Id": external_id}

    def unwrap_status_body(self, body) -> dict:
        if not isinstance(body, dict):
            return {}
        if body.get("HasError"):
            raise ProviderError(self.name, f"{body.get('ErrorCode')}: {body.get('Error')}")
        return body.get("ResponseDetail") or {}

    def parse_receivable(self, raw: dict, conn: dict) -> NormalizedReceivable:
        customer = raw.get("Customer") or {}
        external_id = raw.get("IdTransaction") or raw.get("Id")
        return NormalizedReceivable(
            external_id=str(external_id) if external_id else None,
            counterparty_name=customer.get("Name") or "Desconhecido",
            counterparty_tax_id=normalize_tax_id(customer.get("Identity")),
            amount=to_amount(raw.get("Amount")),
            due_date=parse_date(raw.get("DueDate")),
            category=self.label,
            connection_name=conn.get("nome"),
        )

    def parse_status(self, raw: dict, external_id: str) -> ReceivableStatus:
        due = parse_date(raw.get("DueDate"))
        code = _status_code(raw)
        paid_date = parse_date(raw.get("PaymentDate"))
        if code in PAID_CODES or raw.get("IsPaid") is True or (code is None and paid_date):
            return ReceivableStatus(
                external_id=external_id, state="paid", paid_date=paid_date or due, due_date=due
            )
        if code in CANCELLED_CODES:
            return ReceivableStatus(external_id=external_id, state="cancelled", due_date=due)
        return ReceivableStatus(external_id=external_id, state="open", due_date=due)

    async def list_statuses(self, client: httpx.AsyncClient, conn: dict, finished: bool):
        if not finished:
            return await super().list_statuses(client, conn, finished=False)
        # Rows of the IsPaid=true list are paid even without a status code
        statuses = {}
        async for raw in self.iter_raw(client, conn, finished=True):
            external_id = raw.get("IdTransaction") or raw.get("Id")
            if not external_id:
                continue
            status = self.parse_status(raw, str(external_id))
            if status.state == "open":
                due = parse_date(raw.get("DueDate"))
                status = ReceivableStatus(
                    external_id=str(external_id),
                    state="paid",
                    paid_date=parse_date(raw.get("PaymentDate")) or due,
                    due_date=due,
                )
            statuses[str(external_id)] = status
        return statuses
