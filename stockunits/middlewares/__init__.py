from __future__ import annotations

from .request_id import RequestIdMiddleware, facility_ctx_var, principal_ctx_var, request_id_ctx_var

__all__ = [
    "RequestIdMiddleware",
    "facility_ctx_var",
    "request_id_ctx_var",
    "principal_ctx_var",
]
