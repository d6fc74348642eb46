import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

logger = logging.getLogger(__name__)

REDACTED_HEADERS = ("authorization", "x-management-key", "cookie")


def redact_headers(headers: dict) -> dict:
    """Lowercase header names and hide credentials."""
    h_lower = {k.lower(): v for k, v in headers.items()}
    for name in REDACTED_HEADERS:
        if name in h_lower:
            h_lower[name] = "[REDACTED]"
    return h_lower


# Logging hooks
async def _log_request_hook(request: httpx.Request):
    request.extensions["log_start_time"] = time.time()
    logger.debug(f"--> {request.method} {request.url} headers={redact_headers(dict(request.headers))}")


async def _log_response_hook(response: httpx.Response):
    req = response.request
    start = req.extensions.get("log_start_time")
    duration = (time.time() - start) * 1000 if start else 0
    if response.is_success:
        logger.debug(f"<-- {req.method} {req.url} {response.status_code} ({duration:.0f}ms)")
    else:
        logger.warning(f"<-- {req.method} {req.url} {response.status_code} ({duration:.0f}ms)")


@asynccontextmanager
async def get_http_client(
    base_url: str = "",
    timeout: float = 30.0,
    headers: dict | None = None,
    **kwargs,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield an AsyncClient with request/response logging hooks attached.

    Extra ``event_hooks`` passed by the caller run after the logging hooks.
    """
    hooks = {"request": [_log_request_hook], "response": [_log_response_hook]}

    if "event_hooks" in kwargs:
        eh = kwargs.pop("event_hooks")
        hooks["request"].extend(eh.get("request", []))
        hooks["response"].extend(eh.get("response", []))

    client = httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        headers=headers,
        event_hooks=hooks,
        **kwargs,
    )

    async with client as c:
        yield c
