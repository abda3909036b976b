"""
Conferência mensal: para cada cliente ativo com serviços contratados,
verifica se os boletos esperados da competência existem no Nibo.

Esperado = um boleto por serviço com valor > 0 (valor_smart, valor_apoio,
valor_contabilidade, valor_personalite). Encontrado = agendamentos Nibo com
vencimento no mês e o mesmo CPF/CNPJ. Cada valor esperado consome no máximo
um agendamento, dentro da tolerância configurada.

Somente leitura: nada é gravado no Supabase.
"""
import logging
from calendar import monthrange
from datetime import date
from decimal import Decimal

import httpx

from app.config import settings
from app.errors import ProviderError
from app.models.billing import normalize_tax_id, to_amount
from app.services.providers.nibo import NiboAdapter, stakeholder_document

logger = logging.getLogger(__name__)

SERVICE_FIELDS = {
    "smart": "valor_smart",
    "apoio": "valor_apoio",
    "contabilidade": "valor_contabilidade",
    "personalite": "valor_personalite",
}


def month_range(competencia: str) -> tuple[date, date]:
    year, month = (int(p) for p in competencia.split("-"))
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def _documents(item: dict) -> set[str]:
    docs = set()
    candidates = list(item.get("stakeholders") or [])
    if isinstance(item.get("stakeholder"), dict):
        candidates.append(item["stakeholder"])
    for sh in candidates:
        if isinstance(sh, dict):
            doc = normalize_tax_id(sh.get("cpfCnpj") or sh.get("document"))
            if doc:
                docs.add(doc)
    if not docs:
        doc = stakeholder_document(item)
        if doc:
            docs.add(doc)
    return docs


def expected_boletos(client: dict) -> list[dict]:
    expected = []
    for svc in client.get("services") or []:
        field = SERVICE_FIELDS.get(svc)
        valor = to_amount(client.get(field)) if field else Decimal("0.00")
        if valor > 0:
            expected.append({"service": svc, "valor": valor})
    return expected


def _within_tolerance(found: Decimal, expected: Decimal) -> bool:
    tolerance = max(
        Decimal(str(settings.monthly_check_tolerance_abs)),
        Decimal(str(settings.monthly_check_tolerance_pct)) * expected,
    )
    return abs(found - expected) <= tolerance


def match_client(expected: list[dict], found: list[dict]) -> str:
    """Greedy match; returns "ok", "parcial" or "pendente"."""
    used: set[int] = set()
    matched = 0
    for exp in expected:
        for i, f in enumerate(found):
            if i in used:
                continue
            if _within_tolerance(f["valor"], exp["valor"]):
                used.add(i)
                matched += 1
                break
    if matched >= len(expected):
        return "ok"
    return "parcial" if matched else "pendente"


async def _fetch_schedules(adapter: NiboAdapter, connections: list[dict], start: date, end: date) -> list[dict]:
    items: list[dict] = []
    async with adapter.session() as client:
        for conn in connections:
            try:
                items.extend(await adapter.fetch_month(client, conn, start, end))
            except (ProviderError, httpx.HTTPError) as e:
                logger.error("Nibo API error for %s (monthly check): %s", conn.get("nome"), e)
    return items


async def check_monthly_boletos(
    ledger,
    org_id: str,
    competencia: str | None = None,
    adapter: NiboAdapter | None = None,
) -> dict:
    competencia = competencia or date.today().strftime("%Y-%m")
    start, end = month_range(competencia)
    adapter = adapter or NiboAdapter()

    clients = ledger.list_active_clients(org_id)
    connections = [
        c for c in ledger.list_connections(org_id, "nibo")
        if c.get("api_token") or c.get("api_key")
    ]
    items = await _fetch_schedules(adapter, connections, start, end) if connections else []
    logger.info("Monthly check %s org=%s: %d Nibo schedules", competencia, org_id, len(items))

    by_doc: dict[str, list[dict]] = {}
    for item in items:
        for doc in _documents(item):
            by_doc.setdefault(doc, []).append(item)

    results = []
    for client in clients:
        expected = expected_boletos(client)
        if not expected:
            continue
        found = [
            {
                "valor": to_amount(item.get("value") or item.get("totalValue")),
                "niboScheduleId": item.get("scheduleId") or item.get("id"),
                "dueDate": item.get("dueDate") or "",
            }
            for item in by_doc.get(normalize_tax_id(client.get("cnpj")), [])
        ]
        status = match_client(expected, found)
        results.append({
            "clientId": client["id"],
            "nomeFantasia": client.get("nome_fantasia"),
            "cnpj": client.get("cnpj"),
            "expectedBoletos": [{"service": e["service"], "valor": float(e["valor"])} for e in expected],
            "foundBoletos": [{**f, "valor": float(f["valor"])} for f in found],
            "status": status,
        })

    summary = {
        "competencia": competencia,
        "total": len(results),
        "ok": sum(1 for r in results if r["status"] == "ok"),
        "parcial": sum(1 for r in results if r["status"] == "parcial"),
        "pendente": sum(1 for r in results if r["status"] == "pendente"),
    }
    return {"summary": summary, "results": results}
