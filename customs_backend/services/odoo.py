"""Odoo helpdesk integration over XML-RPC.

The client authenticates once against ``/xmlrpc/2/common`` and reuses the
uid for every ``execute_kw`` call on ``/xmlrpc/2/object``. One client is
built at startup and injected wherever tickets are created.
"""

from __future__ import annotations

import threading
import xmlrpc.client
from typing import Any, Callable, Optional, Protocol

import structlog

from customs_backend.config import Settings
from customs_backend.errors import ExternalServiceError
from customs_backend.schemas import Declaration

logger = structlog.get_logger(__name__)

ProxyFactory = Callable[[str], Any]

ACCESS_FAULT_MARKERS = ("access denied", "accessdenied", "session expired")


class Ticketing(Protocol):
    def create_ticket(self, declaration: Declaration) -> int: ...


class _TimeoutTransport(xmlrpc.client.Transport):
    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


class _TimeoutSafeTransport(xmlrpc.client.SafeTransport):
    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


def _describe(exc: Exception) -> str:
    if isinstance(exc, xmlrpc.client.Fault):
        return exc.faultString
    if isinstance(exc, xmlrpc.client.ProtocolError):
        return f"{exc.errcode} {exc.errmsg}"
    return str(exc) or exc.__class__.__name__


def _is_access_fault(exc: xmlrpc.client.Fault) -> bool:
    text = str(exc.faultString).lower()
    return any(marker in text for marker in ACCESS_FAULT_MARKERS)


class OdooClient:
    def __init__(
        self,
        url: str,
        db: str,
        username: str,
        api_key: str,
        timeout: float = 30.0,
        proxy_factory: Optional[ProxyFactory] = None,
    ):
        self.url = url.rstrip("/")
        self.db = db
        self.username = username
        self.api_key = api_key
        self.timeout = timeout
        self._proxy_factory = proxy_factory or self._server_proxy
        self._uid: Optional[int] = None
        self._lock = threading.Lock()

    def _server_proxy(self, endpoint: str) -> xmlrpc.client.ServerProxy:
        if endpoint.startswith("https://"):
            transport = _TimeoutSafeTransport(self.timeout)
        else:
            transport = _TimeoutTransport(self.timeout)
        return xmlrpc.client.ServerProxy(endpoint, transport=transport, allow_none=True)

    def _proxy(self, service: str):
        # ServerProxy keeps a single connection, so one per call keeps threads apart
        return self._proxy_factory(f"{self.url}/xmlrpc/2/{service}")

    def authenticate(self) -> int:
        with self._lock:
            if self._uid:
                return self._uid
            logger.info("odoo_authenticating", url=self.url, db=self.db)
            try:
                uid = self._proxy("common").authenticate(self.db, self.username, self.api_key, {})
            except (xmlrpc.client.Error, OSError) as exc:
                logger.error("odoo_auth_error", error=_describe(exc))
                raise ExternalServiceError(_describe(exc)) from exc
            if not uid:
                raise ExternalServiceError(
                    "Odoo authentication failed: invalid credentials or database name"
                )
            self._uid = uid
            logger.info("odoo_authenticated", uid=uid)
            return uid

    def reset(self) -> None:
        with self._lock:
            self._uid = None

    def execute(self, model: str, method: str, args: Optional[list] = None, kwargs: Optional[dict] = None):
        uid = self.authenticate()
        try:
            return self._proxy("object").execute_kw(
                self.db, uid, self.api_key, model, method, args or [], kwargs or {}
            )
        except xmlrpc.client.Fault as exc:
            if _is_access_fault(exc):
                # stale uid or revoked key: log in again on the next call
                logger.warning("odoo_access_denied", model=model, method=method)
                self.reset()
            raise ExternalServiceError(_describe(exc)) from exc
        except (xmlrpc.client.Error, OSError) as exc:
            raise ExternalServiceError(_describe(exc)) from exc

    def search(self, model: str, domain: list, limit: Optional[int] = None) -> list[int]:
        kwargs = {"limit": limit} if limit else {}
        return self.execute(model, "search", [domain], kwargs)

    def read(self, model: str, ids: list[int], fields: Optional[list[str]] = None) -> list[dict]:
        kwargs = {"fields": fields} if fields else {}
        return self.execute(model, "read", [ids], kwargs)

    def search_read(
        self,
        model: str,
        domain: list,
        fields: Optional[list[str]] = None,
        limit: Optional[int] = None,
        order: Optional[str] = None,
    ) -> list[dict]:
        kwargs: dict[str, Any] = {}
        if fields:
            kwargs["fields"] = fields
        if limit:
            kwargs["limit"] = limit
        if order:
            kwargs["order"] = order
        return self.execute(model, "search_read", [domain], kwargs)

    def create(self, model: str, values: dict) -> int:
        return self.execute(model, "create", [values])

    def write(self, model: str, ids: list[int], values: dict) -> bool:
        return self.execute(model, "write", [ids, values])


class HelpdeskService:
    TICKET_MODEL = "helpdesk.ticket"
    TEAM_MODEL = "helpdesk.team"
    PARTNER_MODEL = "res.partner"

    def __init__(self, client: OdooClient):
        self.client = client
        self._team_cache: dict[str, int] = {}

    def find_team(self, team_name: str) -> Optional[int]:
        if team_name in self._team_cache:
            return self._team_cache[team_name]
        team_ids = self.client.search(self.TEAM_MODEL, [["name", "ilike", team_name]], limit=1)
        if team_ids:
            self._team_cache[team_name] = team_ids[0]
            return team_ids[0]
        return None

    def create_ticket(
        self,
        name: str,
        team_name: Optional[str] = None,
        description: Optional[str] = None,
        priority: str = "1",
        partner_email: Optional[str] = None,
    ) -> int:
        values: dict[str, Any] = {"name": name, "priority": priority}

        if team_name:
            team_id = self.find_team(team_name)
            if team_id:
                values["team_id"] = team_id
            else:
                logger.warning("helpdesk_team_not_found", team=team_name)

        if description:
            values["description"] = description

        if partner_email:
            partner_ids = self.client.search(
                self.PARTNER_MODEL, [["email", "=", partner_email]], limit=1
            )
            if partner_ids:
                values["partner_id"] = partner_ids[0]

        logger.info("helpdesk_ticket_creating", name=name)
        return self.client.create(self.TICKET_MODEL, values)


class OdooTicketing:
    """Creates one helpdesk ticket per declaration."""

    def __init__(self, helpdesk: HelpdeskService, team_name: str = "Internal"):
        self.helpdesk = helpdesk
        self.team_name = team_name

    def create_ticket(self, declaration: Declaration) -> int:
        ticket_id = self.helpdesk.create_ticket(
            name=declaration.subject or f"Declaration {declaration.declaration_id}",
            description=declaration.body
            or f"Generated from declaration {declaration.declaration_id}",
            team_name=self.team_name,
            priority="1",
        )
        return int(ticket_id)


class UnconfiguredTicketing:
    def create_ticket(self, declaration: Declaration) -> int:
        raise ExternalServiceError("Odoo connection is not configured")


def build_ticketing(settings: Settings) -> Ticketing:
    if not settings.odoo_configured:
        logger.warning("odoo_not_configured")
        return UnconfiguredTicketing()
    client = OdooClient(
        settings.odoo_url,
        settings.odoo_db,
        settings.odoo_username,
        settings.odoo_api_key,
        timeout=settings.odoo_timeout_seconds,
    )
    return OdooTicketing(HelpdeskService(client), team_name=settings.odoo_team_name)
