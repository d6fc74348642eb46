"""
Management API transport.

Holds the in-memory connection settings (base URL, management key, timeout)
loaded from the settings table, and a small JSON client that turns transport
and HTTP failures into ManagementApiError with a human-readable message.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import select

from models.settings import AppSettings
from utils.http_client import get_http_client

logger = logging.getLogger(__name__)

DEFAULT_MANAGEMENT_BASE_URL = "http://127.0.0.1:8317/v0/management"
DEFAULT_REQUEST_TIMEOUT = 30.0

CONNECTION_SETTING_KEYS = ("management_base_url", "management_key", "request_timeout")


class ManagementApiError(Exception):
    """A management API call failed; ``str(err)`` is shown to the user."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ManagementConnection:
    base_url: str = DEFAULT_MANAGEMENT_BASE_URL
    management_key: str = ""
    timeout: float = DEFAULT_REQUEST_TIMEOUT

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.management_key)


# Global cache
_connection = ManagementConnection()


def get_cached_connection() -> ManagementConnection:
    return _connection


def set_cached_connection(
    base_url: str | None = None,
    management_key: str | None = None,
    timeout: str | float | None = None,
) -> ManagementConnection:
    """Update the cached connection; ``None`` leaves a field unchanged."""
    if base_url is not None:
        _connection.base_url = base_url.strip().rstrip("/") or DEFAULT_MANAGEMENT_BASE_URL
        logger.info(f"Management base URL updated: {_connection.base_url}")
    if management_key is not None:
        _connection.management_key = management_key.strip()
        logger.info(f"Management key {'set' if _connection.management_key else 'cleared'}")
    if timeout is not None:
        try:
            value = float(timeout)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid request timeout: {timeout!r}")
        else:
            _connection.timeout = value if value > 0 else DEFAULT_REQUEST_TIMEOUT
    return _connection


async def load_connection_from_db(session):
    """Load management connection settings from DB into memory."""
    result = await session.execute(
        select(AppSettings).where(AppSettings.key.in_(CONNECTION_SETTING_KEYS))
    )
    settings = {s.key: s.value for s in result.scalars().all()}
    set_cached_connection(
        base_url=settings.get("management_base_url", DEFAULT_MANAGEMENT_BASE_URL),
        management_key=settings.get("management_key", ""),
        timeout=settings.get("request_timeout", DEFAULT_REQUEST_TIMEOUT),
    )


def _error_message(response: httpx.Response) -> str:
    """Pick the most useful message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error", "message", "detail"):
            if data.get(key):
                return f"HTTP {response.status_code}: {data[key]}"
    text = response.text.strip()
    if text:
        return f"HTTP {response.status_code}: {text[:200]}"
    return f"HTTP {response.status_code}"


class ManagementApiClient:
    """JSON client for the management API.

    Every call is a single request: no retries, no caching. ``transport`` is
    passed straight to httpx and exists so tests can plug in a MockTransport.
    """

    def __init__(
        self,
        connection: ManagementConnection | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._connection = connection
        self._transport = transport

    @property
    def connection(self) -> ManagementConnection:
        return self._connection or get_cached_connection()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
    ) -> Any:
        conn = self.connection
        if not conn.is_configured:
            raise ManagementApiError("Management API is not configured: set the management key first")

        kwargs = {}
        if self._transport is not None:
            kwargs["transport"] = self._transport

        try:
            async with get_http_client(
                base_url=conn.base_url,
                timeout=conn.timeout,
                headers={"Authorization": f"Bearer {conn.management_key}"},
                **kwargs,
            ) as client:
                response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.error(f"Management API {method} {path} failed: {type(e).__name__}: {e}")
            raise ManagementApiError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise ManagementApiError(_error_message(response), status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ManagementApiError(f"Invalid JSON from management API: {e}") from e

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs) -> Any:
        return await self.request("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs) -> Any:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request("DELETE", path, **kwargs)
