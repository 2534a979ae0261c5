"""Application wiring for the StockUnits API.

Configuration, logging, the database schema and the unit routes come together
here. Tests import ``create_app`` and swap the ``get_db`` dependency; uvicorn
serves the module-level ``app``.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import settings
from .core.errors import (
    InventoryError,
    http_exception_handler,
    inventory_error_handler,
    validation_exception_handler,
)
from .core.logging import configure_logging
from .db.migrate import run_migrations
from .db.session import Base, engine
from .middlewares import RequestIdMiddleware

# Importing the models registers their tables with the metadata.
from .models import unit as _unit  # noqa: F401
from .routers import api_units as api_units_router


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME)

    # ---------- Middleware ----------
    app.add_middleware(RequestIdMiddleware)

    # ---------- Exception handling ----------
    app.add_exception_handler(InventoryError, inventory_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # ---------- Routers ----------
    app.include_router(api_units_router.router)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    # ``create_all`` covers fresh databases, ``run_migrations`` upgrades older ones.
    @app.on_event("startup")
    async def _init_db() -> None:
        Base.metadata.create_all(bind=engine)
        run_migrations(engine)

    Instrumentator().instrument(app).expose(app)
    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

__all__ = ["app", "create_app"]
