"""FIFO distribution across individually tracked units.

A request for ``N`` units of a product walks the facility's active units
oldest-first (``received_date``, then row id) and takes from each until the
request is met. Availability is checked before anything is written, so an
oversized request leaves every unit untouched.

Two commit modes exist:

* ``atomic`` (default): all consumption commits together. Units carry an
  optimistic version counter; a concurrent writer makes the flush fail with
  ``StaleDataError`` and the whole call is re-run from a fresh read.
* ``per_unit``: each consumed unit commits on its own. A store failure part
  way through raises ``PartialDistributionFailure`` describing what was
  already persisted.

Passing an ``operation_id`` makes a call resumable: quantities already
recorded under that id count towards the request, and a fully recorded
operation is answered from the stored rows without writing anything.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.errors import InsufficientInventory, NotFound, PartialDistributionFailure, ValidationError
from ..core.time_utils import utcnow
from ..models.unit import InventoryUnit, UnitDistribution, UnitStatus
from ..schemas.history import DistributedDetails
from ..schemas.units import DistributedItem, DistributionResult
from .concurrency import run_with_retry
from .prefixes import clean_product_name

logger = logging.getLogger("stockunits.distribution")

CommitMode = Literal["atomic", "per_unit"]


def select_fifo_units(db: Session, facility_id: str, product_name: str) -> list[InventoryUnit]:
    """Active units with stock left, oldest receipt first, row id as tie-break."""

    stmt = (
        select(InventoryUnit)
        .where(
            InventoryUnit.facility_id == facility_id,
            InventoryUnit.product_name == product_name,
            InventoryUnit.status == UnitStatus.ACTIVE.value,
            InventoryUnit.quantity > 0,
        )
        .order_by(InventoryUnit.received_date, InventoryUnit.id)
    )
    return db.execute(stmt).scalars().all()


def _recorded_operation(
    db: Session, facility_id: str, product_name: str, operation_id: str
) -> list[tuple[UnitDistribution, InventoryUnit]]:
    stmt = (
        select(UnitDistribution, InventoryUnit)
        .join(InventoryUnit, InventoryUnit.id == UnitDistribution.unit_id)
        .where(
            UnitDistribution.operation_id == operation_id,
            InventoryUnit.facility_id == facility_id,
            InventoryUnit.product_name == product_name,
        )
        .order_by(UnitDistribution.id)
    )
    return [(row[0], row[1]) for row in db.execute(stmt).all()]


def _item_for(unit: InventoryUnit, record: UnitDistribution) -> DistributedItem:
    return DistributedItem(
        unit_id=unit.id,
        sku=unit.unit_sku,
        batch_id=unit.batch_id,
        quantity_distributed=record.quantity_taken,
        remaining_quantity=record.remaining_after,
        expiry_date=unit.expiry_date,
        fifo_position=record.fifo_position,
    )


def _coerce_requested(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("quantity must be a whole number", quantity=value)
    if value < 1:
        raise ValidationError("quantity must be at least 1", quantity=value)
    return value


def _consume(
    db: Session,
    unit: InventoryUnit,
    take: int,
    *,
    reason: str,
    destination: str | None,
    operation_id: str | None,
    actor: str,
    position: int,
    at: datetime,
) -> UnitDistribution:
    unit.quantity = unit.quantity - take
    if unit.quantity == 0:
        unit.status = UnitStatus.EXHAUSTED.value
    unit.updated_by = actor
    unit.updated_at = at
    record = UnitDistribution(
        operation_id=operation_id,
        destination=destination,
        reason=reason,
        quantity_taken=take,
        unit_price_at_time=unit.price_per_unit,
        total_value=take * unit.price_per_unit,
        remaining_after=unit.quantity,
        fifo_position=position,
        actor_id=actor,
        created_at=at,
    )
    unit.distributions.append(record)
    unit.record_history(
        DistributedDetails(
            distributed_quantity=take,
            reason=reason,
            fifo_position=position,
            destination=destination,
            operation_id=operation_id,
        ),
        actor,
        at=at,
    )
    db.flush()
    return record


def _run_distribution(
    db: Session,
    *,
    facility_id: str,
    product_name: str,
    requested: int,
    reason: str,
    actor: str,
    destination: str | None,
    operation_id: str | None,
    per_unit: bool,
) -> DistributionResult:
    items: list[DistributedItem] = []
    if operation_id:
        recorded = _recorded_operation(db, facility_id, product_name, operation_id)
        items = [_item_for(unit, record) for record, unit in recorded]
        already = sum(item.quantity_distributed for item in items)
        if recorded and already >= requested:
            return DistributionResult(
                product_name=product_name,
                facility_id=facility_id,
                requested_quantity=requested,
                distributed_quantity=already,
                items=items,
                distributed_at=recorded[-1][0].created_at,
                operation_id=operation_id,
                replayed=True,
            )
    remaining = requested - sum(item.quantity_distributed for item in items)

    units = select_fifo_units(db, facility_id, product_name)
    if not units and not items:
        raise NotFound(
            f"No active units of '{product_name}' available for distribution",
            product_name=product_name,
            facility_id=facility_id,
        )
    available = sum(unit.quantity for unit in units)
    if available < remaining:
        raise InsufficientInventory(available=available, requested=remaining, product_name=product_name)

    distributed_at = utcnow()
    # Positions continue after any items already recorded under this operation.
    position = len(items)
    for unit in units:
        if remaining <= 0:
            break
        try:
            # Re-read after earlier per-unit commits; another writer may have taken it.
            if unit.status != UnitStatus.ACTIVE.value or unit.quantity <= 0:
                continue
            take = min(unit.quantity, remaining)
            position += 1
            record = _consume(
                db,
                unit,
                take,
                reason=reason,
                destination=destination,
                operation_id=operation_id,
                actor=actor,
                position=position,
                at=distributed_at,
            )
            item = _item_for(unit, record)
            if per_unit:
                db.commit()
        except SQLAlchemyError as exc:
            if not per_unit:
                raise
            db.rollback()
            raise PartialDistributionFailure(
                requested=requested,
                distributed=requested - remaining,
                items=[existing.model_dump() for existing in items],
                operation_id=operation_id,
            ) from exc
        items.append(item)
        remaining -= take
        logger.info(
            "distribution.unit",
            extra={
                "extra_data": {
                    "facility_id": facility_id,
                    "unit_sku": item.sku,
                    "quantity": take,
                    "fifo_position": position,
                    "actor": actor,
                }
            },
        )

    if remaining > 0:
        if per_unit:
            raise PartialDistributionFailure(
                requested=requested,
                distributed=requested - remaining,
                items=[existing.model_dump() for existing in items],
                operation_id=operation_id,
            )
        db.rollback()
        raise InsufficientInventory(available=requested - remaining, requested=requested, product_name=product_name)

    if not per_unit:
        db.commit()

    return DistributionResult(
        product_name=product_name,
        facility_id=facility_id,
        requested_quantity=requested,
        distributed_quantity=requested,
        items=items,
        distributed_at=distributed_at,
        operation_id=operation_id,
    )


def distribute(
    db: Session,
    facility_id: str,
    product_name: str,
    requested_quantity: int,
    reason: str,
    actor_id: str | None,
    *,
    destination: str | None = None,
    operation_id: str | None = None,
    commit_mode: CommitMode | None = None,
) -> DistributionResult:
    facility = (facility_id or "").strip()
    if not facility:
        raise ValidationError("facility_id is required")
    name = clean_product_name(product_name)
    requested = _coerce_requested(requested_quantity)
    reason_text = (reason or "").strip()
    if not reason_text:
        raise ValidationError("reason is required")
    mode = commit_mode or settings.DISTRIBUTION_COMMIT_MODE
    if mode not in ("atomic", "per_unit"):
        raise ValidationError("commit_mode must be 'atomic' or 'per_unit'", commit_mode=mode)

    def _attempt() -> DistributionResult:
        return _run_distribution(
            db,
            facility_id=facility,
            product_name=name,
            requested=requested,
            reason=reason_text,
            actor=actor_id or "system",
            destination=(destination or "").strip() or None,
            operation_id=(operation_id or "").strip() or None,
            per_unit=mode == "per_unit",
        )

    if mode == "per_unit":
        result = _attempt()
    else:
        result = run_with_retry(
            db,
            _attempt,
            attempts=settings.DISTRIBUTION_ATTEMPTS,
            retry_on=(StaleDataError,),
            operation="units.distribute",
        )

    logger.info(
        "distribution.completed",
        extra={
            "extra_data": {
                "facility_id": facility,
                "product_name": name,
                "requested": requested,
                "units": result.unit_count,
                "batches": result.batches,
                "operation_id": result.operation_id,
                "replayed": result.replayed,
            }
        },
    )
    return result
