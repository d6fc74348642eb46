import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("keypolicy.access")

# Paths to ignore (health checks and docs)
SKIP_PREFIXES = ("/docs", "/openapi.json", "/favicon.ico", "/api/health")


class RequestLogger(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(SKIP_PREFIXES):
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "-"

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = (time.time() - start_time) * 1000
            logger.error(
                f"{request.method} {request.url.path} 500 {process_time:.1f}ms "
                f"client={client_ip} error={type(e).__name__}: {e}"
            )
            raise

        process_time = (time.time() - start_time) * 1000
        level = logging.INFO if response.status_code < 400 else logging.WARNING
        logger.log(
            level,
            f"{request.method} {request.url.path} {response.status_code} "
            f"{process_time:.1f}ms client={client_ip}",
        )
        return response
