"""
Base comum dos adaptadores de provedores de cobrança (Nibo, Safe2Pay,
Asaas, Conta Azul).

Cada adaptador define:
  - base URL (prod/sandbox) e headers de autenticação
  - página da lista de recebíveis pendentes (e, se houver, da lista de
    finalizados) com a semântica de cursor do provedor
  - endpoint de status de um único recebível
  - parse do item cru para NormalizedReceivable / ReceivableStatus

Paginação, retry (429/5xx) e política de erro por conexão ficam aqui.
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

import httpx

from app.config import settings
from app.errors import ConfigurationError, ProviderError
from app.models.billing import NormalizedReceivable, ReceivableStatus, parse_date

logger = logging.getLogger(__name__)

SyncStrategy = Literal["bulk_map", "per_item"]


def connection_credential(conn: dict) -> str:
    token = conn.get("api_token") or conn.get("api_key") or ""
    if not token:
        raise ConfigurationError(f"Conexão '{conn.get('nome', conn.get('id'))}' sem credencial configurada.")
    return token


def is_sandbox(conn: dict) -> bool:
    extra = conn.get("extra_config") or {}
    return isinstance(extra, dict) and extra.get("sandbox") is True


def iso_day(value) -> str | None:
    d = parse_date(value)
    return d.isoformat() if d else None


class ProviderAdapter:
    """One billing provider. Subclasses fill in the provider specifics."""

    name: str = ""
    label: str = ""
    strategy: SyncStrategy = "per_item"
    max_pages: int = 20

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_backoff: float = 1.0,
    ):
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._max_retries = max_retries if max_retries is not None else settings.provider_max_retries
        self._retry_backoff = retry_backoff

    # ── Provider specifics ────────────────────────────────────

    def base_url(self, conn: dict) -> str:
        raise NotImplementedError

    def headers(self, conn: dict) -> dict:
        raise NotImplementedError

    async def fetch_page(
        self, client: httpx.AsyncClient, conn: dict, page: int, finished: bool = False
    ) -> tuple[list[dict], bool]:
        """Return (raw items, has_more) for 0-based page index."""
        raise NotImplementedError

    def status_path(self, external_id: str) -> tuple[str, dict | None]:
        """(path, params) of the single-receivable endpoint."""
        raise NotImplementedError

    def parse_receivable(self, raw: dict, conn: dict) -> NormalizedReceivable:
        raise NotImplementedError

    def parse_status(self, raw: dict, external_id: str) -> ReceivableStatus:
        raise NotImplementedError

    def unwrap_status_body(self, body) -> dict:
        return body if isinstance(body, dict) else {}

    def include_pending(self, raw: dict) -> bool:
        return True

    async def enrich(self, client: httpx.AsyncClient, conn: dict, raw: dict) -> dict:
        return raw

    # ── HTTP ──────────────────────────────────────────────────

    @asynccontextmanager
    async def session(self) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            yield client

    async def get(
        self, client: httpx.AsyncClient, conn: dict, path: str, params: dict | None = None
    ) -> httpx.Response:
        """GET with retry on 429/5xx. Other statuses are returned to the caller."""
        url = f"{self.base_url(conn)}{path}"
        headers = self.headers(conn)
        resp = None
        for attempt in range(self._max_retries + 1):
            resp = await client.get(url, params=params, headers=headers)
            if (resp.status_code == 429 or resp.status_code >= 500) and attempt < self._max_retries:
                wait = (attempt + 1) * self._retry_backoff
                logger.warning(
                    "%s %s on GET %s, retry %d in %.1fs",
                    self.label, resp.status_code, path, attempt + 1, wait,
                )
                await asyncio.sleep(wait)
                continue
            break
        return resp

    async def get_json(self, client: httpx.AsyncClient, conn: dict, path: str, params: dict | None = None):
        resp = await self.get(client, conn, path, params)
        if not resp.is_success:
            raise ProviderError(self.name, f"HTTP {resp.status_code} on {path}: {resp.text[:200]}", resp.status_code)
        return self.decode(resp, path)

    def decode(self, resp: httpx.Response, path: str):
        """Body as JSON. A 2xx with a non-JSON body (maintenance page) is a ProviderError."""
        try:
            return resp.json()
        except ValueError:
            raise ProviderError(
                self.name, f"non-JSON body on {path}: {resp.text[:200]}", resp.status_code
            ) from None

    # ── Pagination ────────────────────────────────────────────

    async def iter_raw(
        self, client: httpx.AsyncClient, conn: dict, finished: bool = False
    ) -> AsyncIterator[dict]:
        """Lazy pagination bounded by max_pages.

        A failed page stops this connection only; the error propagates to
        fetch_pending so it can decide whether every connection failed.
        """
        for page in range(self.max_pages):
            items, has_more = await self.fetch_page(client, conn, page, finished=finished)
            for raw in items:
                yield raw
            if not has_more or not items:
                return
        logger.warning(
            "%s (%s): page ceiling %d reached, stopping pagination",
            self.label, conn.get("nome"), self.max_pages,
        )

    async def iter_pending(self, client: httpx.AsyncClient, conn: dict) -> AsyncIterator[NormalizedReceivable]:
        async for raw in self.iter_raw(client, conn):
            if not self.include_pending(raw):
                continue
            raw = await self.enrich(client, conn, raw)
            yield self.parse_receivable(raw, conn)

    async def fetch_pending(self, connections: list[dict]) -> list[NormalizedReceivable]:
        """All pending receivables across the tenant's connections, in order.

        A connection that fails (HTTP error or network) is logged and skipped.
        ProviderError is raised only if every connection failed.
        """
        items: list[NormalizedReceivable] = []
        failures = 0
        async with self.session() as client:
            for conn in connections:
                fetched = 0
                try:
                    async for receivable in self.iter_pending(client, conn):
                        items.append(receivable)
                        fetched += 1
                except (ProviderError, httpx.HTTPError) as e:
                    logger.error("%s API error for connection %s: %s", self.label, conn.get("nome"), e)
                    if fetched == 0:
                        failures += 1
                    continue
                logger.info("%s (%s): %d pending receivables", self.label, conn.get("nome"), fetched)

        if connections and failures == len(connections):
            raise ProviderError(self.name, "all connections failed")
        return items

    # ── Status ────────────────────────────────────────────────

    async def check_one(self, client: httpx.AsyncClient, conn: dict, external_id: str) -> ReceivableStatus:
        """Current provider status of one receivable. 404 -> state "not_found".
        Raises ProviderError on any other non-2xx."""
        path, params = self.status_path(external_id)
        resp = await self.get(client, conn, path, params)
        if resp.status_code == 404:
            return ReceivableStatus(external_id=external_id, state="not_found")
        if not resp.is_success:
            raise ProviderError(self.name, f"HTTP {resp.status_code} checking {external_id}", resp.status_code)
        return self.parse_status(self.unwrap_status_body(self.decode(resp, path)), external_id)

    async def list_statuses(
        self, client: httpx.AsyncClient, conn: dict, finished: bool
    ) -> dict[str, ReceivableStatus]:
        """Bulk-map strategy: external_id -> status for the open or finished list."""
        statuses: dict[str, ReceivableStatus] = {}
        async for raw in self.iter_raw(client, conn, finished=finished):
            receivable = self.parse_receivable(raw, conn)
            if not receivable.external_id:
                continue
            if finished:
                status = self.parse_status(raw, receivable.external_id)
                if status.state == "open":
                    continue
            else:
                status = ReceivableStatus(
                    external_id=receivable.external_id, state="open", due_date=receivable.due_date
                )
            statuses[receivable.external_id] = status
        return statuses
