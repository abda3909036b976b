"""
Typed read/write operations over the Supabase tables touched by import,
status sync, lock and bulk delete.

Services never build PostgREST queries themselves; they receive a Ledger
(SupabaseLedger in production, an in-memory double in testes/).
Every query is scoped by organization_id.
"""
import calendar
import logging
from datetime import date
from decimal import Decimal

from supabase import Client

from app.db.supabase import get_db
from app.models.billing import BOLETO_UNPAID

logger = logging.getLogger(__name__)

CLIENT_COLUMNS = "id, nome_fantasia, razao_social, cnpj, codigo"
PAGE_LIMIT = 1000


def _is_unique_violation(exc: Exception) -> bool:
    err_str = str(exc).lower()
    return "duplicate" in err_str or "unique" in err_str or "23505" in err_str


def _paginate(build_query, page_limit: int = PAGE_LIMIT) -> list[dict]:
    """All rows of build_query(), page by page under the PostgREST max_rows cap.
    range() mutates the builder, so a fresh one is built per page."""
    rows = []
    start = 0
    while True:
        batch = build_query().range(start, start + page_limit - 1).execute().data or []
        rows.extend(batch)
        if len(batch) < page_limit:
            break
        start += page_limit
    return rows


def _month_bounds(month_filter: str) -> tuple[str, str]:
    """"2025-11" -> ("2025-11-01", "2025-11-30")."""
    year, month = (int(p) for p in month_filter.split("-"))
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1).isoformat(), date(year, month, last_day).isoformat()


class SupabaseLedger:
    def __init__(self, db: Client | None = None):
        self.db = db or get_db()

    # ── Tenancy ───────────────────────────────────────────────

    def get_membership(self, user_id: str) -> dict | None:
        result = (
            self.db.table("organization_members")
            .select("organization_id, role")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    # ── Provider connections ──────────────────────────────────

    def list_connections(self, org_id: str, provider: str, connection_id: str | None = None) -> list[dict]:
        query = (
            self.db.table("billing_connections")
            .select("*")
            .eq("organization_id", org_id)
            .eq("provider", provider)
        )
        if connection_id:
            query = query.eq("id", connection_id)
        rows = query.execute().data or []

        # Nibo connections created before billing_connections existed
        if provider == "nibo":
            legacy = self.db.table("nibo_connections").select("*").eq("organization_id", org_id)
            if connection_id:
                legacy = legacy.eq("id", connection_id)
            seen = {r["id"] for r in rows}
            for r in legacy.execute().data or []:
                if r["id"] not in seen:
                    rows.append({**r, "provider": "nibo"})
        return rows

    # ── Clients ───────────────────────────────────────────────

    def list_clients(self, org_id: str) -> list[dict]:
        return _paginate(
            lambda: self.db.table("clients").select(CLIENT_COLUMNS).eq("organization_id", org_id).order("id")
        )

    def list_active_clients(self, org_id: str) -> list[dict]:
        return _paginate(lambda: (
            self.db.table("clients")
            .select("id, nome_fantasia, cnpj, services, valor_smart, valor_apoio, "
                    "valor_contabilidade, valor_personalite, vencimento")
            .eq("organization_id", org_id)
            .eq("status", "ativo")
            .order("id")
        ))

    def find_client_by_code(self, org_id: str, codigo: str) -> dict | None:
        result = (
            self.db.table("clients")
            .select(CLIENT_COLUMNS)
            .eq("organization_id", org_id)
            .eq("codigo", codigo)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def insert_client(self, row: dict) -> dict:
        result = self.db.table("clients").insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Client insert returned no row (codigo={row.get('codigo')})")
        return result.data[0]

    # ── Boletos ───────────────────────────────────────────────

    def find_boleto(self, org_id: str, client_id: str, vencimento: date, valor: Decimal) -> dict | None:
        """Lookup by the import de-duplication key (client, due date, amount)."""
        result = (
            self.db.table("boletos")
            .select("id, nibo_schedule_id, status")
            .eq("organization_id", org_id)
            .eq("client_id", client_id)
            .eq("vencimento", vencimento.isoformat())
            .eq("valor", str(valor))
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def insert_boleto(self, row: dict) -> dict:
        result = self.db.table("boletos").insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Boleto insert returned no row (client_id={row.get('client_id')})")
        return result.data[0]

    def update_boleto(self, boleto_id: str, fields: dict, expected_status: str | None = None) -> bool:
        """Row-level update by id. expected_status guards against a concurrent
        manual pay/unpay between read and write. True if a row changed."""
        query = self.db.table("boletos").update(fields).eq("id", boleto_id)
        if expected_status:
            query = query.eq("status", expected_status)
        return bool(query.execute().data)

    def list_sync_candidates(self, org_id: str) -> list[dict]:
        """Unpaid, not soft-deleted boletos that carry an external reference."""
        return _paginate(lambda: (
            self.db.table("boletos")
            .select("id, nibo_schedule_id, vencimento, valor, status, client_id")
            .eq("organization_id", org_id)
            .eq("status", BOLETO_UNPAID)
            .not_.is_("nibo_schedule_id", "null")
            .is_("deleted_at", "null")
            .order("id")
        ))

    def list_boletos_for_cleanup(self, org_id: str, month_filter: str | None = None) -> list[dict]:
        bounds = _month_bounds(month_filter) if month_filter else None

        def build():
            query = (
                self.db.table("boletos")
                .select("id, status")
                .eq("organization_id", org_id)
                .is_("deleted_at", "null")
            )
            if bounds:
                query = query.gte("vencimento", bounds[0]).lte("vencimento", bounds[1])
            return query.order("id")

        return _paginate(build)

    def soft_delete_boletos(self, ids: list[str], deleted_at: str) -> None:
        self.db.table("boletos").update({"deleted_at": deleted_at}).in_("id", ids).execute()

    def hard_delete_boletos(self, ids: list[str]) -> None:
        self.db.table("boletos").delete().in_("id", ids).execute()

    # ── Settings (key/value per org) ──────────────────────────

    def get_setting(self, org_id: str, key: str) -> str | None:
        result = (
            self.db.table("settings")
            .select("value")
            .eq("organization_id", org_id)
            .eq("key", key)
            .limit(1)
            .execute()
        )
        return result.data[0]["value"] if result.data else None

    def upsert_setting(self, org_id: str, key: str, value: str) -> None:
        self.db.table("settings").upsert(
            {"key": key, "value": value, "organization_id": org_id},
            on_conflict="key,organization_id",
        ).execute()

    def insert_setting_if_absent(self, org_id: str, key: str, value: str) -> bool:
        """Plain INSERT relying on the (key, organization_id) unique constraint.
        Returns False when the key already exists."""
        try:
            self.db.table("settings").insert(
                {"key": key, "value": value, "organization_id": org_id}
            ).execute()
            return True
        except Exception as e:
            if _is_unique_violation(e):
                return False
            raise

    def compare_and_set_setting(self, org_id: str, key: str, expected: str, value: str) -> bool:
        """UPDATE ... WHERE value = expected. True only if this call changed the row."""
        result = (
            self.db.table("settings")
            .update({"value": value})
            .eq("organization_id", org_id)
            .eq("key", key)
            .eq("value", expected)
            .execute()
        )
        return bool(result.data)

    def delete_setting(self, org_id: str, key: str) -> None:
        self.db.table("settings").delete().eq("organization_id", org_id).eq("key", key).execute()

    # ── Audit ─────────────────────────────────────────────────

    def insert_audit_log(self, row: dict) -> None:
        self.db.table("audit_logs").insert(row).execute()


def get_ledger() -> SupabaseLedger:
    return SupabaseLedger(get_db())
