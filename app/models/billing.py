"""
Tipos compartilhados da conciliação: recebível normalizado, status de
provedor, log de importação e resumos de import/sync.

Boletos guardam status em português no Supabase ("não pago", "pago",
"cancelado"); as constantes abaixo são a única fonte desses literais.
"""
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

BOLETO_UNPAID = "não pago"
BOLETO_PAID = "pago"
BOLETO_CANCELLED = "cancelado"

# provider id -> label shown in the dashboard
PROVIDERS: dict[str, str] = {
    "nibo": "Nibo",
    "safe2pay": "Safe2Pay",
    "asaas": "Asaas",
    "contaazul": "Conta Azul",
}
DEFAULT_PROVIDER = "nibo"

_NON_DIGITS = re.compile(r"\D")
_CENTS = Decimal("0.01")

# Decimal internally, JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def normalize_tax_id(raw: str | None) -> str:
    """CPF/CNPJ reduced to digits only ("12.345.678/0001-90" -> "12345678000190")."""
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def to_amount(value) -> Decimal:
    """Currency value with 2 fraction digits. Unparseable or missing -> 0.00."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return Decimal("0.00")


def parse_date(value) -> date | None:
    """Accepts date, datetime, "YYYY-MM-DD", "YYYY-MM-DDTHH:MM:SS..." or "DD/MM/YYYY"."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) >= 10 and text[2] == "/" and text[5] == "/":
            return datetime.strptime(text[:10], "%d/%m/%Y").date()
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def competence_of(due: date | None) -> str:
    return due.strftime("%Y-%m") if due else ""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NormalizedReceivable(_CamelModel):
    """Provider receivable in the shape every adapter produces."""

    external_id: str | None = None
    counterparty_name: str = "Desconhecido"
    counterparty_tax_id: str = ""
    amount: Money = Decimal("0.00")
    due_date: date | None = None
    category: str | None = None
    connection_name: str | None = None


ReceivableState = Literal["open", "paid", "cancelled", "not_found"]


class ReceivableStatus(BaseModel):
    """Provider's view of a single receivable, used by status sync."""

    external_id: str
    state: ReceivableState
    paid_date: date | None = None
    due_date: date | None = None


class ImportLogEntry(_CamelModel):
    stakeholder_name: str
    stakeholder_doc: str
    value: Money
    due_date: date | None = None
    status: Literal["imported", "skipped"]
    reason: str | None = None


class ImportProgress(BaseModel):
    current: int = 0
    total: int = 0
    imported: int = 0
    skipped: int = 0


class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    log: list[ImportLogEntry] = Field(default_factory=list)


class SyncResult(_CamelModel):
    updated: int = 0
    unchanged: int = 0
    cancelled: int = 0
    due_date_updated: int = 0
    total: int = 0
