"""Unit creation and maintenance helpers.

``create_units`` is the materializer: one call allocates a single batch id and
writes one row per physical item, each with its own SKU and a ``created``
history entry. The rest of the module covers the day-to-day edits made to
units after they exist (descriptive updates per unit or per batch, status
changes), the small aggregate views used by product pickers and dashboards,
and the CSV export.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from pydantic import BaseModel
from sqlalchemy import case, desc, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.errors import NotFound, ValidationError
from ..core.time_utils import parse_iso_datetime, to_utc_naive, utcnow
from ..models.unit import InventoryUnit, UnitStatus
from ..schemas.history import (
    CreatedDetails,
    FieldChange,
    HistoryEntryOut,
    StatusChangedDetails,
    UpdatedDetails,
    parse_history_details,
)
from ..services.concurrency import run_with_retry
from ..services.prefixes import ExhaustedPolicy, clean_product_name
from ..services.sequencing import allocate_batch

logger = logging.getLogger("stockunits.units")

UNIT_INDEX_WIDTH = 3
EDITABLE_FIELDS = ("category", "description", "price_per_unit", "expiry_date", "expiry_alert_days")
SETTABLE_STATUSES = {UnitStatus.ACTIVE.value, UnitStatus.DAMAGED.value, UnitStatus.RECALLED.value}


def _normalize_amount(value: object) -> float | None:
    """Convert user-entered currency values to a float or ``None`` if invalid."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        cleaned = cleaned.replace("$", "").replace(",", "")
        try:
            return float(Decimal(cleaned))
        except InvalidOperation:
            return None
    return None


def _coerce_quantity(value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError("quantity must be a whole number", quantity=value)
    if isinstance(value, int):
        quantity = value
    elif isinstance(value, float) and value.is_integer():
        quantity = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        quantity = int(value.strip())
    else:
        raise ValidationError("quantity must be a whole number", quantity=value)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", quantity=quantity)
    return quantity


def _coerce_price(value: object) -> float:
    price = _normalize_amount(value)
    if price is None:
        raise ValidationError("price_per_unit is required", price_per_unit=value)
    if price < 0:
        raise ValidationError("price_per_unit cannot be negative", price_per_unit=price)
    return price


def _coerce_datetime(value: object, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError as exc:
            raise ValidationError(f"{field} must be an ISO-8601 datetime", **{field: value}) from exc
    raise ValidationError(f"{field} must be an ISO-8601 datetime", **{field: value})


def _coerce_alert_days(value: object) -> int:
    if value is None:
        return settings.EXPIRY_ALERT_DAYS
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("expiry_alert_days must be a non-negative integer", expiry_alert_days=value)
    return value


def _clean_product_data(product_data: Mapping[str, Any]) -> dict[str, Any]:
    category = (product_data.get("category") or "").strip()
    if not category:
        raise ValidationError("category is required")
    return {
        "name": clean_product_name(product_data.get("name")),
        "category": category,
        "quantity": _coerce_quantity(product_data.get("quantity")),
        "price_per_unit": _coerce_price(product_data.get("price_per_unit")),
        "description": (product_data.get("description") or "").strip() or None,
        "expiry_date": _coerce_datetime(product_data.get("expiry_date"), "expiry_date"),
        "expiry_alert_days": _coerce_alert_days(product_data.get("expiry_alert_days")),
        "received_date": _coerce_datetime(product_data.get("received_date"), "received_date"),
    }


def format_unit_sku(batch_id: str, unit_index: int) -> str:
    return f"{batch_id}-{unit_index:0{UNIT_INDEX_WIDTH}d}"


def create_units(
    db: Session,
    product_data: Mapping[str, Any] | BaseModel,
    facility_id: str,
    user_id: str | None,
    *,
    exhausted_policy: ExhaustedPolicy | None = None,
) -> list[InventoryUnit]:
    """Materialize ``quantity`` single-item units sharing one new batch id.

    The rows are committed together. If a concurrent caller claimed the same
    batch id first, the unique SKU index rejects the flush and the whole
    allocation is redone against the refreshed state.
    """

    if isinstance(product_data, BaseModel):
        product_data = product_data.model_dump(exclude_unset=True)
    facility = (facility_id or "").strip()
    if not facility:
        raise ValidationError("facility_id is required")
    data = _clean_product_data(product_data)
    actor = user_id or "system"

    def _materialize() -> tuple[list[InventoryUnit], bool]:
        allocation = allocate_batch(db, data["name"], facility, exhausted_policy=exhausted_policy)
        now = utcnow()
        received = data["received_date"] or now
        units: list[InventoryUnit] = []
        for index in range(1, data["quantity"] + 1):
            unit = InventoryUnit(
                facility_id=facility,
                product_name=data["name"],
                category=data["category"],
                description=data["description"],
                batch_id=allocation.batch_id,
                unit_index=index,
                unit_sku=format_unit_sku(allocation.batch_id, index),
                initial_quantity=1,
                quantity=1,
                price_per_unit=data["price_per_unit"],
                total_price=data["price_per_unit"],
                received_date=received,
                expiry_tracked=data["expiry_date"] is not None,
                expiry_date=data["expiry_date"],
                expiry_alert_days=data["expiry_alert_days"],
                status=UnitStatus.ACTIVE.value,
                created_by=actor,
                updated_by=actor,
                created_at=now,
                updated_at=now,
            )
            unit.record_history(
                CreatedDetails(
                    batch=allocation.batch_id,
                    unit=index,
                    original_quantity=data["quantity"],
                    degraded=allocation.degraded,
                ),
                actor,
                at=now,
            )
            db.add(unit)
            db.flush()
            units.append(unit)
        db.commit()
        return units, allocation.degraded

    units, degraded = run_with_retry(
        db,
        _materialize,
        attempts=settings.ALLOCATION_ATTEMPTS,
        retry_on=(IntegrityError, OperationalError),
        operation="units.create",
    )
    logger.info(
        "units.created",
        extra={
            "extra_data": {
                "facility_id": facility,
                "product_name": data["name"],
                "batch_id": units[0].batch_id,
                "count": len(units),
                "degraded": degraded,
                "actor": actor,
            }
        },
    )
    return units


def get_unit(db: Session, unit_id: int) -> InventoryUnit | None:
    return db.get(InventoryUnit, unit_id)


def get_unit_by_sku(db: Session, facility_id: str, sku: str) -> InventoryUnit | None:
    stmt = select(InventoryUnit).where(
        InventoryUnit.facility_id == facility_id,
        InventoryUnit.unit_sku == (sku or "").strip().upper(),
    )
    return db.execute(stmt).scalars().first()


def list_units(
    db: Session,
    facility_id: str,
    *,
    product_name: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[InventoryUnit]:
    """Units of a facility in FIFO order, optionally narrowed to one product/status."""

    stmt = select(InventoryUnit).where(InventoryUnit.facility_id == facility_id)
    if product_name:
        stmt = stmt.where(InventoryUnit.product_name == product_name.strip())
    if status:
        stmt = stmt.where(InventoryUnit.status == status)
    stmt = stmt.order_by(InventoryUnit.received_date, InventoryUnit.id).limit(limit).offset(offset)
    return db.execute(stmt).scalars().all()


def _clean_update(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Validate every editable field present in ``payload`` before anything is touched."""

    cleaned: dict[str, Any] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        raw = payload.get(field)
        if field == "category":
            value: Any = (raw or "").strip()
            if not value:
                raise ValidationError("category is required")
        elif field == "description":
            value = (raw or "").strip() or None
        elif field == "price_per_unit":
            value = _coerce_price(raw)
        elif field == "expiry_date":
            value = _coerce_datetime(raw, "expiry_date")
        else:
            value = _coerce_alert_days(raw)
        cleaned[field] = value
    return cleaned


def _apply_update(unit: InventoryUnit, cleaned: Mapping[str, Any], actor: str, at: datetime) -> dict[str, FieldChange]:
    changes: dict[str, FieldChange] = {}
    for field, value in cleaned.items():
        current = getattr(unit, field)
        if current == value:
            continue
        changes[field] = FieldChange(from_=current, to=value)
        setattr(unit, field, value)
        if field == "price_per_unit":
            unit.total_price = value * unit.initial_quantity
        if field == "expiry_date":
            unit.expiry_tracked = value is not None
    if changes:
        unit.updated_by = actor
        unit.updated_at = at
        unit.record_history(UpdatedDetails(changes=changes), actor, at=at)
    return changes


def update_unit(db: Session, unit: InventoryUnit, payload: Mapping[str, Any], user_id: str | None) -> InventoryUnit:
    """Apply descriptive edits and record what changed.

    Identity (name, batch, SKU) and stock levels are not editable here; those
    only move through creation and distribution.
    """

    actor = user_id or "system"
    changes = _apply_update(unit, _clean_update(payload), actor, utcnow())
    if not changes:
        return unit

    db.commit()
    db.refresh(unit)
    logger.info(
        "unit.updated",
        extra={"extra_data": {"unit_sku": unit.unit_sku, "fields": sorted(changes), "actor": actor}},
    )
    return unit


def update_batch(
    db: Session,
    facility_id: str,
    batch_id: str,
    payload: Mapping[str, Any] | BaseModel,
    user_id: str | None,
) -> dict[str, object]:
    """Apply the same descriptive edits to every unit of one batch.

    Each unit whose values actually change gets its own ``updated`` history
    entry. The batch commits as one transaction and is re-read from scratch if
    a concurrent distribution bumped one of its rows first.
    """

    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    cleaned = _clean_update(payload)
    batch = (batch_id or "").strip().upper()
    actor = user_id or "system"

    def _apply() -> tuple[int, list[str]]:
        stmt = (
            select(InventoryUnit)
            .where(InventoryUnit.facility_id == facility_id, InventoryUnit.batch_id == batch)
            .order_by(InventoryUnit.unit_index, InventoryUnit.id)
        )
        units = db.execute(stmt).scalars().all()
        if not units:
            raise NotFound(f"No units found for batch '{batch}'", batch_id=batch, facility_id=facility_id)
        now = utcnow()
        updated = [unit.unit_sku for unit in units if _apply_update(unit, cleaned, actor, now)]
        if updated:
            db.commit()
        return len(units), updated

    matched, updated = run_with_retry(
        db,
        _apply,
        attempts=settings.DISTRIBUTION_ATTEMPTS,
        retry_on=(StaleDataError,),
        operation="units.update_batch",
    )
    logger.info(
        "batch.updated",
        extra={
            "extra_data": {
                "facility_id": facility_id,
                "batch_id": batch,
                "fields": sorted(cleaned),
                "matched": matched,
                "updated": len(updated),
                "actor": actor,
            }
        },
    )
    return {"batch_id": batch, "matched_count": matched, "updated_count": len(updated), "updated_skus": updated}


def change_status(
    db: Session,
    unit: InventoryUnit,
    status: str,
    user_id: str | None,
    note: str | None = None,
) -> InventoryUnit:
    if status not in SETTABLE_STATUSES:
        raise ValidationError(f"status must be one of {sorted(SETTABLE_STATUSES)}", status=status)
    if status == UnitStatus.ACTIVE.value and unit.quantity == 0:
        raise ValidationError("an exhausted unit cannot be reactivated", unit_sku=unit.unit_sku)
    if unit.status == status:
        return unit

    actor = user_id or "system"
    previous = unit.status
    unit.status = status
    unit.updated_by = actor
    unit.updated_at = utcnow()
    unit.record_history(
        StatusChangedDetails(from_status=previous, to_status=status, note=(note or "").strip() or None),
        actor,
    )
    db.commit()
    db.refresh(unit)
    logger.info(
        "unit.status_changed",
        extra={"extra_data": {"unit_sku": unit.unit_sku, "from": previous, "to": status, "actor": actor}},
    )
    return unit


def unit_history_entries(unit: InventoryUnit) -> list[HistoryEntryOut]:
    return [
        HistoryEntryOut(
            id=entry.id,
            action=entry.action,
            actor_id=entry.actor_id,
            created_at=entry.created_at,
            details=parse_history_details(entry.action, entry.details),
        )
        for entry in unit.history
    ]


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _active_quantity():
    return func.coalesce(
        func.sum(case((InventoryUnit.status == UnitStatus.ACTIVE.value, InventoryUnit.quantity), else_=0)),
        0,
    )


def suggest_products(db: Session, facility_id: str, query: str, limit: int = 5) -> list[dict[str, object]]:
    """Product names matching ``query`` with their prefix and current stock."""

    term = (query or "").strip()
    if not term:
        return []
    active_quantity = _active_quantity().label("active_quantity")
    last_created = func.max(InventoryUnit.created_at).label("last_created")
    stmt = (
        select(
            InventoryUnit.product_name,
            func.min(InventoryUnit.batch_id).label("batch_id"),
            func.min(InventoryUnit.category).label("category"),
            func.max(InventoryUnit.price_per_unit).label("price_per_unit"),
            func.count(InventoryUnit.id).label("unit_count"),
            active_quantity,
            last_created,
        )
        .where(
            InventoryUnit.facility_id == facility_id,
            InventoryUnit.product_name.ilike(_like_pattern(term), escape="\\"),
        )
        .group_by(InventoryUnit.product_name)
        .order_by(desc(active_quantity), desc(last_created))
        .limit(limit)
    )
    return [
        {
            "name": row.product_name,
            "prefix": (row.batch_id or "").split("-", 1)[0],
            "category": row.category,
            "price_per_unit": row.price_per_unit,
            "active_quantity": int(row.active_quantity or 0),
            "unit_count": int(row.unit_count or 0),
            "last_created": row.last_created,
        }
        for row in db.execute(stmt).all()
    ]


def summarize_batches(db: Session, facility_id: str, limit: int = 10) -> list[dict[str, object]]:
    """Per-batch unit counts and remaining value, most valuable first."""

    total_value = func.coalesce(func.sum(InventoryUnit.quantity * InventoryUnit.price_per_unit), 0).label("total_value")
    stmt = (
        select(
            InventoryUnit.batch_id,
            InventoryUnit.product_name,
            func.count(InventoryUnit.id).label("unit_count"),
            _active_quantity().label("remaining_quantity"),
            total_value,
        )
        .where(InventoryUnit.facility_id == facility_id)
        .group_by(InventoryUnit.batch_id, InventoryUnit.product_name)
        .order_by(desc(total_value), InventoryUnit.batch_id)
        .limit(limit)
    )
    return [
        {
            "batch_id": row.batch_id,
            "product_name": row.product_name,
            "unit_count": int(row.unit_count or 0),
            "remaining_quantity": int(row.remaining_quantity or 0),
            "total_value": float(row.total_value or 0),
        }
        for row in db.execute(stmt).all()
    ]


def group_products(
    db: Session,
    facility_id: str,
    *,
    category: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> list[dict[str, object]]:
    """Units rolled up by product name and batch prefix, each group listing its batches."""

    stmt = (
        select(
            InventoryUnit.product_name,
            InventoryUnit.batch_id,
            func.min(InventoryUnit.category).label("category"),
            func.min(InventoryUnit.received_date).label("received_date"),
            func.count(InventoryUnit.id).label("unit_count"),
            _active_quantity().label("active_quantity"),
        )
        .where(InventoryUnit.facility_id == facility_id)
        .group_by(InventoryUnit.product_name, InventoryUnit.batch_id)
        .order_by(InventoryUnit.product_name, InventoryUnit.batch_id)
    )
    if category:
        stmt = stmt.where(InventoryUnit.category == category.strip())
    if status:
        stmt = stmt.where(InventoryUnit.status == status)
    term = (search or "").strip()
    if term:
        stmt = stmt.where(InventoryUnit.product_name.ilike(_like_pattern(term), escape="\\"))

    groups: dict[tuple[str, str], dict[str, Any]] = {}
    for row in db.execute(stmt).all():
        prefix = row.batch_id.split("-", 1)[0]
        group = groups.setdefault(
            (row.product_name, prefix),
            {
                "name": row.product_name,
                "prefix": prefix,
                "category": row.category,
                "unit_count": 0,
                "active_quantity": 0,
                "batches": [],
            },
        )
        unit_count = int(row.unit_count or 0)
        active_quantity = int(row.active_quantity or 0)
        group["unit_count"] += unit_count
        group["active_quantity"] += active_quantity
        group["batches"].append(
            {
                "batch_id": row.batch_id,
                "received_date": row.received_date,
                "unit_count": unit_count,
                "active_quantity": active_quantity,
            }
        )
    return list(groups.values())


EXPORT_FIELDS = (
    "name",
    "sku",
    "batch",
    "category",
    "description",
    "quantity",
    "price_per_unit",
    "total_price",
    "received_date",
    "expiry_date",
    "status",
)


def export_units_csv(db: Session, facility_id: str) -> str:
    """Every unit of a facility as CSV text, grouped by product in FIFO order."""

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS)
    writer.writeheader()
    stmt = (
        select(InventoryUnit)
        .where(InventoryUnit.facility_id == facility_id)
        .order_by(InventoryUnit.product_name, InventoryUnit.received_date, InventoryUnit.id)
    )
    count = 0
    for unit in db.execute(stmt).scalars():
        writer.writerow(
            {
                "name": unit.product_name,
                "sku": unit.unit_sku,
                "batch": unit.batch_id,
                "category": unit.category,
                "description": unit.description or "",
                "quantity": unit.quantity,
                "price_per_unit": unit.price_per_unit,
                "total_price": unit.total_price,
                "received_date": unit.received_date.date().isoformat(),
                "expiry_date": unit.expiry_date.date().isoformat() if unit.expiry_date else "",
                "status": unit.status,
            }
        )
        count += 1
    logger.info("units.exported", extra={"extra_data": {"facility_id": facility_id, "count": count}})
    return output.getvalue()
