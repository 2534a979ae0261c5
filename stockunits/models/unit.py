"""SQLAlchemy models for individually tracked inventory units.

One ``InventoryUnit`` row is one physical item. Units created together share a
``batch_id``; each carries its own distribution records and an append-only
history. ``expiry_status`` is recomputed whenever a row is loaded or flushed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    event,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.orm.attributes import set_committed_value

from ..core.time_utils import utcnow
from ..db.session import Base
from ..schemas.history import dump_history_details
from ..services.expiry import ExpiryInfo, ExpiryStatus, classify, days_until


class UnitStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    DAMAGED = "damaged"
    RECALLED = "recalled"


class InventoryUnit(Base):
    """A single physical item with a mutable remaining quantity (1 → 0)."""

    __tablename__ = "inventory_units"
    __allow_unmapped__ = True
    __table_args__ = (
        Index("ux_inventory_units_unit_sku", "unit_sku", unique=True),
        Index("ix_inventory_units_fifo", "facility_id", "product_name", "received_date", "id"),
        Index("ix_inventory_units_batch", "facility_id", "batch_id"),
        Index("ix_inventory_units_expiry", "facility_id", "expiry_date"),
        CheckConstraint("quantity >= 0", name="ck_inventory_units_quantity_nonnegative"),
        CheckConstraint("quantity <= initial_quantity", name="ck_inventory_units_quantity_bounded"),
    )

    id = Column(Integer, primary_key=True)
    facility_id = Column(Text, nullable=False, index=True)
    product_name = Column(Text, nullable=False, index=True)
    category = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    batch_id = Column(Text, nullable=False)
    unit_index = Column(Integer, nullable=False)
    unit_sku = Column(Text, nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    initial_quantity = Column(Integer, nullable=False, default=1)
    price_per_unit = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False, default=0.0)

    received_date = Column(DateTime, nullable=False, default=utcnow)

    expiry_tracked = Column(Boolean, nullable=False, default=False)
    expiry_date = Column(DateTime, nullable=True)
    expiry_alert_days = Column(Integer, nullable=False, default=30)
    expiry_status = Column(Text, nullable=False, default=ExpiryStatus.UNTRACKED.value)

    status = Column(Text, nullable=False, default=UnitStatus.ACTIVE.value, index=True)

    created_by = Column(Text, nullable=False, default="system")
    updated_by = Column(Text, nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    version_id = Column(Integer, nullable=False, default=1)

    distributions = relationship(
        "UnitDistribution",
        back_populates="unit",
        order_by="UnitDistribution.id",
        cascade="save-update, merge",
    )
    history = relationship(
        "UnitHistory",
        back_populates="unit",
        order_by="UnitHistory.id",
        cascade="save-update, merge",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @validates("quantity")
    def _validate_quantity(self, key: str, value: int) -> int:
        if value is None or value < 0:
            raise ValueError("quantity cannot be negative")
        if self.initial_quantity is not None and value > self.initial_quantity:
            raise ValueError("quantity cannot exceed initial_quantity")
        if self.quantity is not None and value > self.quantity and self.distributions:
            raise ValueError("quantity cannot increase once distribution has begun")
        return value

    @property
    def prefix(self) -> str:
        return (self.batch_id or "").split("-", 1)[0]

    @property
    def expiry(self) -> ExpiryInfo:
        return ExpiryInfo(
            is_tracked=bool(self.expiry_tracked),
            date=self.expiry_date,
            alert_window_days=self.expiry_alert_days,
            status=ExpiryStatus(self.expiry_status) if self.expiry_status else None,
        )

    @property
    def days_until_expiry(self) -> int | None:
        if not self.expiry_tracked or self.expiry_date is None:
            return None
        return days_until(self.expiry_date)

    @property
    def total_value(self) -> float:
        return (self.quantity or 0) * (self.price_per_unit or 0.0)

    @property
    def distributed_quantity(self) -> int:
        return sum(record.quantity_taken for record in self.distributions)

    def record_history(self, details: BaseModel, actor_id: str | None, at: datetime | None = None) -> "UnitHistory":
        entry = UnitHistory(
            action=details.action,
            actor_id=actor_id or "system",
            details=dump_history_details(details),
            created_at=at or utcnow(),
        )
        self.history.append(entry)
        return entry


class UnitDistribution(Base):
    """Quantity taken from one unit by one distribution call."""

    __tablename__ = "unit_distributions"
    __table_args__ = (
        CheckConstraint("quantity_taken > 0", name="ck_unit_distributions_quantity_positive"),
        CheckConstraint("remaining_after >= 0", name="ck_unit_distributions_remaining_nonnegative"),
    )

    id = Column(Integer, primary_key=True)
    unit_id = Column(Integer, ForeignKey("inventory_units.id"), nullable=False, index=True)
    operation_id = Column(Text, nullable=True, index=True)
    destination = Column(Text, nullable=True)
    reason = Column(Text, nullable=False)
    quantity_taken = Column(Integer, nullable=False)
    unit_price_at_time = Column(Float, nullable=False)
    total_value = Column(Float, nullable=False)
    remaining_after = Column(Integer, nullable=False)
    fifo_position = Column(Integer, nullable=False)
    actor_id = Column(Text, nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    unit = relationship("InventoryUnit", back_populates="distributions")


class UnitHistory(Base):
    """Audit entry. Rows are written once and never changed or removed."""

    __tablename__ = "unit_history"

    id = Column(Integer, primary_key=True)
    unit_id = Column(Integer, ForeignKey("inventory_units.id"), nullable=False, index=True)
    action = Column(Text, nullable=False)
    actor_id = Column(Text, nullable=False, default="system")
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    unit = relationship("InventoryUnit", back_populates="history")


def _expiry_status_for(unit: InventoryUnit) -> str:
    return classify(unit.expiry).value


@event.listens_for(InventoryUnit, "load")
def _classify_on_load(target: InventoryUnit, context) -> None:
    # Refresh the label without dirtying the row (and bumping version_id).
    set_committed_value(target, "expiry_status", _expiry_status_for(target))


@event.listens_for(InventoryUnit, "before_insert")
@event.listens_for(InventoryUnit, "before_update")
def _classify_on_save(mapper, connection, target: InventoryUnit) -> None:
    target.expiry_status = _expiry_status_for(target)


@event.listens_for(UnitHistory, "before_update")
def _reject_history_update(mapper, connection, target: UnitHistory) -> None:
    raise ValueError("unit history is append-only")


@event.listens_for(UnitHistory, "before_delete")
def _reject_history_delete(mapper, connection, target: UnitHistory) -> None:
    raise ValueError("unit history is append-only")


__all__ = ["InventoryUnit", "UnitDistribution", "UnitHistory", "UnitStatus"]
