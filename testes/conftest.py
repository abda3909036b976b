"""
Fixtures compartilhadas: ledger em memória (mesmas operações do
SupabaseLedger), cliente HTTP da API e adaptadores com MockTransport.
Nenhum teste fala com Supabase ou com provedores reais.
"""
import copy
import itertools
from datetime import date

import httpx
import pytest
from fastapi.testclient import TestClient

from app.db.ledger import get_ledger
from app.models.billing import BOLETO_UNPAID, to_amount
from app.routers.auth import get_token_verifier
from app.routers.billing import get_adapter_factory
from app.routers.boletos import get_nibo_adapter
from app.services.providers.nibo import NiboAdapter
from app.services.providers.registry import get_adapter

ORG_ID = "org-1"
OTHER_ORG_ID = "org-2"
USER_ID = "user-1"
VALID_TOKEN = "valid-token"
AUTH = {"Authorization": f"Bearer {VALID_TOKEN}"}


class FakeLedger:
    """In-memory stand-in for SupabaseLedger."""

    def __init__(self):
        self.members: dict[str, dict] = {}
        self.connections: list[dict] = []
        self.legacy_nibo_connections: list[dict] = []
        self.clients: list[dict] = []
        self.boletos: list[dict] = []
        self.settings: dict[tuple[str, str], str] = {}
        self.audit_logs: list[dict] = []
        self._ids = itertools.count(1)

    # ── Seeding helpers ───────────────────────────────────────

    def add_member(self, user_id: str, org_id: str = ORG_ID, role: str = "owner") -> None:
        self.members[user_id] = {"organization_id": org_id, "role": role}

    def add_connection(self, provider: str, org_id: str = ORG_ID, **fields) -> dict:
        row = {
            "id": f"conn-{next(self._ids)}",
            "provider": provider,
            "nome": f"{provider} principal",
            "api_token": "token-ok",
            "api_key": None,
            "extra_config": {},
            "organization_id": org_id,
            **fields,
        }
        self.connections.append(row)
        return row

    def add_client(self, org_id: str = ORG_ID, **fields) -> dict:
        row = {
            "id": f"client-{next(self._ids)}",
            "nome_fantasia": "Cliente",
            "razao_social": "Cliente",
            "cnpj": None,
            "codigo": None,
            "status": "ativo",
            "services": [],
            "organization_id": org_id,
            **fields,
        }
        self.clients.append(row)
        return row

    def add_boleto(self, org_id: str = ORG_ID, **fields) -> dict:
        row = {
            "id": f"boleto-{next(self._ids)}",
            "client_id": None,
            "valor": 100.0,
            "vencimento": "2025-11-10",
            "competencia": "2025-11",
            "status": BOLETO_UNPAID,
            "data_pagamento": None,
            "nibo_schedule_id": None,
            "nibo_synced_at": None,
            "deleted_at": None,
            "organization_id": org_id,
            **fields,
        }
        self.boletos.append(row)
        return row

    def boleto(self, boleto_id: str) -> dict | None:
        return next((b for b in self.boletos if b["id"] == boleto_id), None)

    # ── Tenancy ───────────────────────────────────────────────

    def get_membership(self, user_id):
        m = self.members.get(user_id)
        return dict(m) if m else None

    def list_connections(self, org_id, provider, connection_id=None):
        rows = [
            c for c in self.connections
            if c["organization_id"] == org_id and c["provider"] == provider
            and (connection_id is None or c["id"] == connection_id)
        ]
        if provider == "nibo":
            seen = {r["id"] for r in rows}
            for r in self.legacy_nibo_connections:
                if r["organization_id"] == org_id and r["id"] not in seen and (
                    connection_id is None or r["id"] == connection_id
                ):
                    rows.append({**r, "provider": "nibo"})
        return copy.deepcopy(rows)

    # ── Clients ───────────────────────────────────────────────

    def list_clients(self, org_id):
        return [c for c in self.clients if c["organization_id"] == org_id]

    def list_active_clients(self, org_id):
        return [c for c in self.clients if c["organization_id"] == org_id and c.get("status") == "ativo"]

    def find_client_by_code(self, org_id, codigo):
        return next(
            (c for c in self.clients if c["organization_id"] == org_id and c.get("codigo") == codigo),
            None,
        )

    def insert_client(self, row):
        return self.add_client(**row)

    # ── Boletos ───────────────────────────────────────────────

    def find_boleto(self, org_id, client_id, vencimento: date, valor):
        for b in self.boletos:
            if (
                b["organization_id"] == org_id
                and b["client_id"] == client_id
                and b["vencimento"] == vencimento.isoformat()
                and to_amount(b["valor"]) == valor
            ):
                return b
        return None

    def insert_boleto(self, row):
        return self.add_boleto(**row)

    def update_boleto(self, boleto_id, fields, expected_status=None):
        row = self.boleto(boleto_id)
        if row is None:
            return False
        if expected_status and row["status"] != expected_status:
            return False
        row.update(fields)
        return True

    def list_sync_candidates(self, org_id):
        return [
            dict(b) for b in self.boletos
            if b["organization_id"] == org_id
            and b["status"] == BOLETO_UNPAID
            and b.get("nibo_schedule_id")
            and b.get("deleted_at") is None
        ]

    def list_boletos_for_cleanup(self, org_id, month_filter=None):
        return [
            {"id": b["id"], "status": b["status"]} for b in self.boletos
            if b["organization_id"] == org_id
            and b.get("deleted_at") is None
            and (month_filter is None or b["vencimento"].startswith(month_filter))
        ]

    def soft_delete_boletos(self, ids, deleted_at):
        for b in self.boletos:
            if b["id"] in ids:
                b["deleted_at"] = deleted_at

    def hard_delete_boletos(self, ids):
        self.boletos = [b for b in self.boletos if b["id"] not in ids]

    # ── Settings ──────────────────────────────────────────────

    def get_setting(self, org_id, key):
        return self.settings.get((org_id, key))

    def upsert_setting(self, org_id, key, value):
        self.settings[(org_id, key)] = value

    def insert_setting_if_absent(self, org_id, key, value):
        if (org_id, key) in self.settings:
            return False
        self.settings[(org_id, key)] = value
        return True

    def compare_and_set_setting(self, org_id, key, expected, value):
        if self.settings.get((org_id, key)) != expected:
            return False
        self.settings[(org_id, key)] = value
        return True

    def delete_setting(self, org_id, key):
        self.settings.pop((org_id, key), None)

    # ── Audit ─────────────────────────────────────────────────

    def insert_audit_log(self, row):
        self.audit_logs.append(copy.deepcopy(row))


def make_adapter(provider: str, handler, **kwargs):
    """Adapter whose HTTP goes to handler(request) -> httpx.Response."""
    kwargs.setdefault("retry_backoff", 0)
    return get_adapter(provider, transport=httpx.MockTransport(handler), **kwargs)


def _verify_token(token: str) -> str | None:
    return USER_ID if token == VALID_TOKEN else None


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.add_member(USER_ID)
    return fake


@pytest.fixture
def api(ledger):
    from app.main import app

    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_token_verifier] = lambda: _verify_token
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def provider_http():
    """Install a MockTransport handler for every adapter the API builds."""
    from app.main import app

    def _install(handler):
        transport = httpx.MockTransport(handler)
        app.dependency_overrides[get_adapter_factory] = lambda: (
            lambda provider: get_adapter(provider, transport=transport, retry_backoff=0)
        )
        app.dependency_overrides[get_nibo_adapter] = lambda: NiboAdapter(transport=transport, retry_backoff=0)

    return _install
