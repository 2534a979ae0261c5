"""Grouped alert views over a facility's units.

Both views return ``GroupedUnits``: iterating it runs one query per bucket and
streams rows from the cursor, yielding ``(bucket, units)`` pairs in a fixed
bucket order. Empty buckets are skipped. Nothing is cached, so iterating again
re-reads the store against the current clock.
"""

from __future__ import annotations

import itertools
from datetime import timedelta
from typing import Callable, Iterator, Sequence

from sqlalchemy import Select, case, func, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ValidationError
from ..core.time_utils import utcnow
from ..models.unit import InventoryUnit, UnitStatus
from .expiry import ExpiryStatus

BucketPlan = Sequence[tuple[str, "Select | None"]]

STREAM_CHUNK = 100


class GroupedUnits:
    """Finite, restartable sequence of ``(bucket, Iterator[InventoryUnit])``."""

    def __init__(self, db: Session, plan: Callable[[], BucketPlan], chunk_size: int = STREAM_CHUNK) -> None:
        self._db = db
        self._plan = plan
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[tuple[str, Iterator[InventoryUnit]]]:
        for bucket, stmt in self._plan():
            if stmt is None:
                continue
            rows = iter(self._db.scalars(stmt.execution_options(yield_per=self._chunk_size)))
            first = next(rows, None)
            if first is None:
                continue
            yield bucket, itertools.chain([first], rows)

    def as_dict(self) -> dict[str, list[InventoryUnit]]:
        return {bucket: list(units) for bucket, units in self}


def _non_negative(value: int | None, default: int, field: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", **{field: value})
    return value


def list_expiring(db: Session, facility_id: str, window_days: int | None = None) -> GroupedUnits:
    """Active tracked units expiring within ``window_days`` (or already expired).

    Buckets: ``expired`` then ``expiring``, each ordered by expiry date.
    """

    window = _non_negative(window_days, settings.EXPIRY_ALERT_DAYS, "window_days")

    def plan() -> BucketPlan:
        now = utcnow()
        horizon = now + timedelta(days=window)
        base = (
            select(InventoryUnit)
            .where(
                InventoryUnit.facility_id == facility_id,
                InventoryUnit.status == UnitStatus.ACTIVE.value,
                InventoryUnit.expiry_tracked.is_(True),
                InventoryUnit.expiry_date.is_not(None),
            )
            .order_by(InventoryUnit.expiry_date, InventoryUnit.id)
        )
        return [
            (ExpiryStatus.EXPIRED.value, base.where(InventoryUnit.expiry_date < now)),
            (
                ExpiryStatus.EXPIRING.value,
                base.where(InventoryUnit.expiry_date >= now, InventoryUnit.expiry_date <= horizon),
            ),
        ]

    return GroupedUnits(db, plan)


def list_low_stock(db: Session, facility_id: str, threshold: int | None = None) -> GroupedUnits:
    """Units of products whose remaining active quantity is at or below ``threshold``.

    Buckets: ``out_of_stock`` (exhausted units of products with nothing left),
    ``critical`` (at or below ``LOW_STOCK_CRITICAL``) and ``low``.
    """

    limit = _non_negative(threshold, settings.LOW_STOCK_THRESHOLD, "threshold")
    critical = min(settings.LOW_STOCK_CRITICAL, limit)
    tracked_statuses = (UnitStatus.ACTIVE.value, UnitStatus.EXHAUSTED.value)

    def plan() -> BucketPlan:
        remaining = func.coalesce(
            func.sum(case((InventoryUnit.status == UnitStatus.ACTIVE.value, InventoryUnit.quantity), else_=0)),
            0,
        )
        totals_stmt = (
            select(InventoryUnit.product_name, remaining.label("remaining"))
            .where(InventoryUnit.facility_id == facility_id, InventoryUnit.status.in_(tracked_statuses))
            .group_by(InventoryUnit.product_name)
            .having(remaining <= limit)
        )
        out_of_stock: list[str] = []
        critical_names: list[str] = []
        low: list[str] = []
        for row in db.execute(totals_stmt).all():
            quantity = int(row.remaining or 0)
            if quantity == 0:
                out_of_stock.append(row.product_name)
            elif quantity <= critical:
                critical_names.append(row.product_name)
            else:
                low.append(row.product_name)

        def units_of(names: list[str], status: str) -> Select | None:
            if not names:
                return None
            return (
                select(InventoryUnit)
                .where(
                    InventoryUnit.facility_id == facility_id,
                    InventoryUnit.product_name.in_(names),
                    InventoryUnit.status == status,
                )
                .order_by(InventoryUnit.product_name, InventoryUnit.received_date, InventoryUnit.id)
            )

        return [
            ("out_of_stock", units_of(out_of_stock, UnitStatus.EXHAUSTED.value)),
            ("critical", units_of(critical_names, UnitStatus.ACTIVE.value)),
            ("low", units_of(low, UnitStatus.ACTIVE.value)),
        ]

    return GroupedUnits(db, plan)
