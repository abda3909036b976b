"""
Asaas: cobranças (payments) com billingType=BOLETO.
Auth via header access_token. Paginação offset/limit + hasMore.

A listagem traz só o id do customer; nome e CPF/CNPJ vêm de
GET /customers/{id}, com cache por conexão durante a execução.
"""
import logging

import httpx

from app.errors import ProviderError
from app.models.billing import NormalizedReceivable, ReceivableStatus, normalize_tax_id, parse_date, to_amount
from app.services.providers.base import ProviderAdapter, connection_credential, is_sandbox

logger = logging.getLogger(__name__)

ASAAS_API = "https://api.asaas.com/v3"
ASAAS_SANDBOX_API = "https://sandbox.asaas.com/api/v3"
PAGE_LIMIT = 100

PAID_STATUSES = {"RECEIVED", "CONFIRMED", "RECEIVED_IN_CASH"}
CANCELLED_STATUSES = {"REFUNDED", "DELETED"}


class AsaasAdapter(ProviderAdapter):
    name = "asaas"
    label = "Asaas"
    strategy = "per_item"
    max_pages = 100

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._customers: dict[tuple[str, str], dict] = {}

    def base_url(self, conn: dict) -> str:
        return ASAAS_SANDBOX_API if is_sandbox(conn) else ASAAS_API

    def headers(self, conn: dict) -> dict:
        return {"access_token": connection_credential(conn), "Accept": "application/json"}

    async def fetch_page(self, client: httpx.AsyncClient, conn: dict, page: int, finished: bool = False):
        params = {
            "status": "PENDING",
            "billingType": "BOLETO",
            "offset": page * PAGE_LIMIT,
            "limit": PAGE_LIMIT,
        }
        data = await self.get_json(client, conn, "/payments", params) or {}
        items = data.get("data") or []
        return items, bool(data.get("hasMore")) and len(items) >= PAGE_LIMIT

    async def enrich(self, client: httpx.AsyncClient, conn: dict, raw: dict) -> dict:
        customer_id = raw.get("customer")
        if not customer_id:
            return raw
        key = (str(conn.get("id")), str(customer_id))
        if key not in self._customers:
            try:
                self._customers[key] = await self.get_json(client, conn, f"/customers/{customer_id}") or {}
            except (ProviderError, httpx.HTTPError) as e:
                logger.warning("Asaas customer %s lookup failed: %s", customer_id, e)
                self._customers[key] = {}
        return {**raw, "_customer": self._customers[key]}

    def status_path(self, external_id: str):
        return f"/payments/{external_id}", None

    def parse_receivable(self, raw: dict, conn: dict) -> NormalizedReceivable:
        customer = raw.get("_customer") or {}
        external_id = raw.get("id")
        return NormalizedReceivable(
            external_id=str(external_id) if external_id else None,
            counterparty_name=customer.get("name") or raw.get("customerName") or raw.get("customer") or "Desconhecido",
            counterparty_tax_id=normalize_tax_id(customer.get("cpfCnpj")),
            amount=to_amount(raw.get("value")),
            due_date=parse_date(raw.get("dueDate")),
            category=self.label,
            connection_name=conn.get("nome"),
        )

    def parse_status(self, raw: dict, external_id: str) -> ReceivableStatus:
        due = parse_date(raw.get("dueDate"))
        status = str(raw.get("status") or "").upper()
        if status in PAID_STATUSES:
            paid = parse_date(raw.get("paymentDate")) or parse_date(raw.get("confirmedDate")) or due
            return ReceivableStatus(external_id=external_id, state="paid", paid_date=paid, due_date=due)
        if status in CANCELLED_STATUSES or raw.get("deleted") is True:
            return ReceivableStatus(external_id=external_id, state="cancelled", due_date=due)
        return ReceivableStatus(external_id=external_id, state="open", due_date=due)
