import hashlib
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("wagerodds.http")

# Query parameters worth echoing into the request log.
_LOGGED_PARAMS = ("event", "sport", "providers", "strategy", "market", "side")


def _client_hash(request: Request) -> str | None:
    if not request.client or not request.client.host:
        return None
    return hashlib.sha256(request.client.host.encode()).hexdigest()[:12]


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON log line per HTTP request, tagged with an ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        start = time.perf_counter()

        log_data = {
            "event": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "params": {k: request.query_params[k] for k in _LOGGED_PARAMS if k in request.query_params},
            "client_ip_hash": _client_hash(request),
        }

        try:
            response: Response = await call_next(request)
        except Exception:
            log_data["status"] = 500
            log_data["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            logger.error(json.dumps(log_data))
            raise

        log_data["status"] = response.status_code
        log_data["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # One upstream_call line per request already comes from ProviderHttpClient.
    logging.getLogger("httpx").setLevel(logging.WARNING)
