"""
Odoo JSON-RPC client.

The query engine only depends on the four-operation ``RecordClient``
protocol below; ``OdooClient`` is the concrete httpx implementation that
talks to ``<url>/jsonrpc`` using the ``common.authenticate`` and
``object.execute_kw`` services.  Authentication is lazy (first call) and the
resulting uid is reused for the lifetime of the client.

Every method accepts a ``timeout`` (seconds) so callers can propagate a
per-call deadline down to the HTTP request.
"""
from __future__ import annotations

import itertools
import threading
from typing import Any, Protocol

import httpx

from erpcopilot.core.config import Settings, get_settings
from erpcopilot.core.logging import get_logger
from erpcopilot.erp.rows import FieldValue, decode_rows

logger = get_logger(__name__)

Domain = list[list[Any]]


class OdooError(RuntimeError):
    """Transport or RPC failure reported by the record system."""


class OdooAuthError(OdooError):
    """The credentials were rejected."""


class RecordClient(Protocol):
    """What the engine needs from a record system."""

    def search_read(
        self,
        model: str,
        domain: Domain,
        fields: list[str],
        limit: int | None = None,
        order: str | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, FieldValue]]: ...

    def search_count(self, model: str, domain: Domain, timeout: float | None = None) -> int: ...

    def read_group(
        self,
        model: str,
        domain: Domain,
        fields: list[str],
        groupby: list[str],
        limit: int | None = None,
        orderby: str | None = None,
        lazy: bool = True,
        timeout: float | None = None,
    ) -> list[dict[str, FieldValue]]: ...

    def fields_get(
        self,
        model: str,
        attributes: list[str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, dict[str, Any]]: ...


class OdooClient:
    """Read-only JSON-RPC client for one Odoo database."""

    def __init__(
        self,
        url: str,
        db: str,
        username: str,
        api_key: str,
        timeout: float = 30.0,
        http: httpx.Client | None = None,
    ):
        self._url = url.rstrip("/")
        self._db = db
        self._username = username
        self._api_key = api_key
        self._timeout = timeout
        self._http = http or httpx.Client(timeout=timeout)
        self._uid: int | None = None
        self._auth_lock = threading.Lock()
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OdooClient":
        settings = settings or get_settings()
        return cls(
            url=settings.odoo_url,
            db=settings.odoo_db,
            username=settings.odoo_username,
            api_key=settings.odoo_api_key,
            timeout=settings.odoo_timeout_seconds,
        )

    # ── Transport ───────────────────────────────────────

    def _rpc(self, service: str, method: str, args: list[Any], timeout: float | None = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": next(self._ids),
        }
        try:
            resp = self._http.post(
                f"{self._url}/jsonrpc",
                json=payload,
                timeout=timeout if timeout is not None else self._timeout,
            )
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise OdooError(f"Odoo request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise OdooError(f"Odoo HTTP error: {exc}") from exc

        data = resp.json()
        error = data.get("error")
        if error:
            detail = (error.get("data") or {}).get("message") or error.get("message") or "unknown error"
            raise OdooError(f"Odoo RPC error: {detail}")
        return data.get("result")

    def authenticate(self, timeout: float | None = None) -> int:
        """Return the uid, authenticating on first use."""
        with self._auth_lock:
            if self._uid is not None:
                return self._uid
            logger.info("Authenticating to Odoo url=%s db=%s user=%s", self._url, self._db, self._username)
            uid = self._rpc("common", "authenticate", [self._db, self._username, self._api_key, {}], timeout)
            if not isinstance(uid, int) or isinstance(uid, bool) or uid <= 0:
                raise OdooAuthError("Odoo authentication failed; check the configured credentials.")
            self._uid = uid
            return uid

    def execute_kw(
        self,
        model: str,
        method: str,
        args: list[Any],
        kwargs: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        uid = self.authenticate(timeout)
        return self._rpc(
            "object",
            "execute_kw",
            [self._db, uid, self._api_key, model, method, args, kwargs or {}],
            timeout,
        )

    # ── RecordClient protocol ───────────────────────────

    def search_read(
        self,
        model: str,
        domain: Domain,
        fields: list[str],
        limit: int | None = None,
        order: str | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, FieldValue]]:
        kwargs: dict[str, Any] = {"fields": fields}
        if limit is not None:
            kwargs["limit"] = limit
        if order:
            kwargs["order"] = order
        rows = self.execute_kw(model, "search_read", [domain], kwargs, timeout)
        return decode_rows(rows)

    def search_count(self, model: str, domain: Domain, timeout: float | None = None) -> int:
        return int(self.execute_kw(model, "search_count", [domain], {}, timeout) or 0)

    def read_group(
        self,
        model: str,
        domain: Domain,
        fields: list[str],
        groupby: list[str],
        limit: int | None = None,
        orderby: str | None = None,
        lazy: bool = True,
        timeout: float | None = None,
    ) -> list[dict[str, FieldValue]]:
        kwargs: dict[str, Any] = {"fields": fields, "groupby": groupby, "lazy": lazy}
        if limit is not None:
            kwargs["limit"] = limit
        if orderby:
            kwargs["orderby"] = orderby
        rows = self.execute_kw(model, "read_group", [domain], kwargs, timeout)
        return decode_rows(rows)

    def fields_get(
        self,
        model: str,
        attributes: list[str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, dict[str, Any]]:
        kwargs = {"attributes": attributes} if attributes else {}
        return self.execute_kw(model, "fields_get", [], kwargs, timeout) or {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "OdooClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
