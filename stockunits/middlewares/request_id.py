from __future__ import annotations

import logging
import re
import time
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
principal_ctx_var: ContextVar[str | None] = ContextVar("principal_id", default=None)
facility_ctx_var: ContextVar[str | None] = ContextVar("facility_id", default=None)
logger = logging.getLogger("stockunits.request")

_FACILITY_PATH_RE = re.compile(r"/facilities/([^/]+)")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log one line when it finishes.

    The id comes from the incoming header when present so upstream proxies can
    stitch logs together. Facility-scoped paths also set ``facility_ctx_var`` so
    every engine log line written during the request names the facility.
    """

    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or uuid4().hex
        request.state.request_id = request_id
        id_token = request_id_ctx_var.set(request_id)
        principal_token = principal_ctx_var.set(None)
        fields: dict[str, object] = {"method": request.method, "path": request.url.path}
        match = _FACILITY_PATH_RE.search(request.url.path)
        facility_token = facility_ctx_var.set(match.group(1) if match else None)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            logger.exception("request.failed", extra={"extra_data": fields})
            raise
        else:
            fields["status"] = response.status_code
            fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            principal = getattr(request.state, "principal", None)
            if principal:
                fields["principal"] = principal
            response.headers[self.header_name] = request_id
            logger.info("request.completed", extra={"extra_data": fields})
            return response
        finally:
            request_id_ctx_var.reset(id_token)
            principal_ctx_var.reset(principal_token)
            facility_ctx_var.reset(facility_token)
