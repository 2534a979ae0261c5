"""Domain errors raised by the inventory engine and their HTTP rendering.

The engine raises the ``InventoryError`` family; routers never translate them
by hand. ``inventory_error_handler`` maps each class onto the shared
``ErrorEnvelope`` JSON shape (``{"code", "message", "details"}``).
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException


class InventoryError(Exception):
    """Base class for every failure the engine reports to its caller."""

    code = "inventory_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_details(self) -> dict[str, Any] | None:
        return dict(self.details) or None


class ValidationError(InventoryError, ValueError):
    """Malformed creation/distribution input. Nothing was written."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(InventoryError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InsufficientInventory(InventoryError):
    """Requested quantity exceeds what is available. Nothing was written."""

    code = "insufficient_inventory"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, *, available: int, requested: int, product_name: str | None = None) -> None:
        super().__init__(
            f"Insufficient inventory. Available: {available}, Requested: {requested}",
            available=available,
            requested=requested,
            product_name=product_name,
        )
        self.available = available
        self.requested = requested


class PrefixExhausted(InventoryError):
    """Every prefix candidate for a product name is already in use."""

    code = "prefix_exhausted"
    status_code = status.HTTP_409_CONFLICT


class PartialDistributionFailure(InventoryError):
    """The store failed between units of a per-unit distribution.

    ``items`` lists the consumption already persisted; those rows are the source
    of truth and the caller may resume with the same ``operation_id``.
    """

    code = "partial_distribution"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, *, requested: int, distributed: int, items: list[dict[str, Any]], operation_id: str | None) -> None:
        super().__init__(
            f"Distribution interrupted after {distributed} of {requested} units",
            requested=requested,
            distributed=distributed,
            items=items,
            operation_id=operation_id,
        )
        self.requested = requested
        self.distributed = distributed
        self.items = items
        self.operation_id = operation_id


class ErrorEnvelope(JSONResponse):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"code": code, "message": message}
        if details is not None:
            payload["details"] = details
        super().__init__(payload, status_code=status_code, headers=headers)


async def inventory_error_handler(request: Request, exc: InventoryError):
    return ErrorEnvelope(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.to_details()),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Error"
    details = detail if isinstance(detail, dict) else None
    return ErrorEnvelope(
        status_code=exc.status_code,
        code="http_error",
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc):  # type: ignore[override]
    from fastapi.exceptions import RequestValidationError

    if isinstance(exc, RequestValidationError):
        return ErrorEnvelope(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )
    raise exc
