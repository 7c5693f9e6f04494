"""ERP user directory over the Odoo external API."""

import asyncio
import http.client
import xmlrpc.client
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, field_validator

from erp_gateway.config import Settings
from erp_gateway.errors import ErpConnectionError, UserNotFound

logger = structlog.get_logger()

USER_MODEL = "res.users"
USER_FIELDS = [
    "id",
    "name",
    "login",
    "email",
    "active",
    "partner_id",
    "company_id",
    "create_date",
    "write_date",
]


class ErpUser(BaseModel):
    """User record as returned by the ERP."""

    id: int
    name: str
    login: str
    email: str | None = None
    active: bool = True
    partner_id: tuple[int, str] | None = None
    company_id: tuple[int, str] | None = None
    create_date: str | None = None
    write_date: str | None = None

    @field_validator("email", "partner_id", "company_id", "create_date", "write_date", mode="before")
    @classmethod
    def false_to_none(cls, v: Any) -> Any:
        """Odoo reports empty fields as ``False``."""
        return None if v is False else v


class UserDirectory(Protocol):
    """Read-only user lookups against the ERP."""

    async def authenticate(self, login: str, password: str) -> ErpUser | None: ...

    async def get_user(self, user_id: int) -> ErpUser: ...

    async def list_users(self, active_only: bool = False) -> list[ErpUser]: ...

    async def find_by_email(self, email: str) -> list[ErpUser]: ...


class _TimeoutTransport(xmlrpc.client.SafeTransport):
    def __init__(self, timeout: float, use_https: bool):
        super().__init__()
        self._timeout = timeout
        self._use_https = use_https

    def make_connection(self, host):
        if self._use_https:
            conn = super().make_connection(host)
        else:
            conn = xmlrpc.client.Transport.make_connection(self, host)
        conn.timeout = self._timeout
        return conn


class OdooUserDirectory:
    """Looks users up through Odoo's XML-RPC endpoints.

    XML-RPC calls block, so each one runs in a worker thread.
    """

    def __init__(self, url: str, db: str, username: str, password: str, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.db = db
        self.username = username
        self._password = password
        self.timeout = timeout
        self._uid: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "OdooUserDirectory":
        return cls(
            url=settings.erp_url,
            db=settings.erp_db,
            username=settings.erp_user,
            password=settings.erp_password,
            timeout=settings.erp_timeout,
        )

    def _proxy(self, endpoint: str) -> xmlrpc.client.ServerProxy:
        transport = _TimeoutTransport(self.timeout, use_https=self.url.startswith("https"))
        return xmlrpc.client.ServerProxy(f"{self.url}/xmlrpc/2/{endpoint}", transport=transport, allow_none=True)

    async def _run(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, http.client.HTTPException, xmlrpc.client.ProtocolError, xmlrpc.client.Fault) as e:
            logger.error("ERP call failed", operation=operation, url=self.url, error=str(e))
            raise ErpConnectionError() from e

    def _login(self, login: str, password: str) -> int | None:
        uid = self._proxy("common").authenticate(self.db, login, password, {})
        return uid or None

    async def _service_uid(self) -> int:
        if self._uid is None:
            uid = await self._run("authenticate", self._login, self.username, self._password)
            if uid is None:
                raise ErpConnectionError("ERP service account was rejected")
            self._uid = uid
        return self._uid

    async def _search_read(self, domain: list, limit: int | None = None) -> list[dict[str, Any]]:
        uid = await self._service_uid()
        options: dict[str, Any] = {"fields": USER_FIELDS}
        if limit:
            options["limit"] = limit

        def call():
            return self._proxy("object").execute_kw(
                self.db, uid, self._password, USER_MODEL, "search_read", [domain], options
            )

        return await self._run("search_read", call)

    async def authenticate(self, login: str, password: str) -> ErpUser | None:
        uid = await self._run("authenticate", self._login, login, password)
        if uid is None:
            logger.info("ERP rejected credentials", login=login)
            return None
        return await self.get_user(uid)

    async def get_user(self, user_id: int) -> ErpUser:
        records = await self._search_read([["id", "=", user_id]], limit=1)
        if not records:
            raise UserNotFound(user_id)
        return ErpUser.model_validate(records[0])

    async def list_users(self, active_only: bool = False) -> list[ErpUser]:
        domain = [["active", "=", True]] if active_only else []
        records = await self._search_read(domain)
        return [ErpUser.model_validate(r) for r in records]

    async def find_by_email(self, email: str) -> list[ErpUser]:
        records = await self._search_read([["email", "=", email]])
        return [ErpUser.model_validate(r) for r in records]
