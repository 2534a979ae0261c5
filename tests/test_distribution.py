"""Tests for FIFO distribution."""

import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from stockunits.core.config import settings
from stockunits.core.errors import InsufficientInventory, NotFound, PartialDistributionFailure, ValidationError
from stockunits.core.time_utils import utcnow
from stockunits.crud.units import create_units, unit_history_entries
from stockunits.db.session import Base
from stockunits.models.unit import InventoryUnit, UnitDistribution
from stockunits.schemas.history import DistributedDetails
from stockunits.services import distribution
from stockunits.services.distribution import distribute, select_fifo_units


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def _stock(db, batch_id, quantity, received, *, name="Gauze", status="active", facility="F"):
    unit = InventoryUnit(
        facility_id=facility,
        product_name=name,
        category="Medical",
        batch_id=batch_id,
        unit_index=1,
        unit_sku=f"{batch_id}-001",
        initial_quantity=quantity,
        quantity=quantity,
        price_per_unit=2.0,
        total_price=2.0 * quantity,
        received_date=received,
        status=status,
    )
    db.add(unit)
    db.commit()
    return unit


def _widgets(db, quantity, facility="F"):
    return create_units(
        db,
        {"name": "Widget", "category": "Parts", "quantity": quantity, "price_per_unit": 10},
        facility,
        "receiver",
    )


def _distribution_count(db):
    return db.execute(select(func.count(UnitDistribution.id))).scalar_one()


def test_fifo_consumes_oldest_first(db_session):
    now = utcnow()
    t1 = _stock(db_session, "GAU-001", 5, now - timedelta(days=3))
    t2 = _stock(db_session, "GAU-002", 3, now - timedelta(days=2))
    t3 = _stock(db_session, "GAU-003", 10, now - timedelta(days=1))

    result = distribute(db_session, "F", "Gauze", 6, "ward restock", "nurse")

    assert [(item.sku, item.quantity_distributed) for item in result.items] == [
        ("GAU-001-001", 5),
        ("GAU-002-001", 1),
    ]
    assert [item.fifo_position for item in result.items] == [1, 2]
    assert [item.remaining_quantity for item in result.items] == [0, 2]
    assert (t1.quantity, t2.quantity, t3.quantity) == (0, 2, 10)
    assert t1.status == "exhausted"
    assert t2.status == "active"
    assert t3.distributions == []
    assert result.distributed_quantity == 6
    assert result.batches == ["GAU-001", "GAU-002"]


def test_widget_scenario_spans_two_batches(db_session):
    _widgets(db_session, 3)
    _widgets(db_session, 2)

    result = distribute(db_session, "F", "Widget", 4, "test", "clerk")

    assert result.unit_count == 4
    assert result.batches == ["WID-001", "WID-002"]
    assert [item.sku for item in result.items] == ["WID-001-001", "WID-001-002", "WID-001-003", "WID-002-001"]
    remaining = db_session.execute(
        select(InventoryUnit.unit_sku).where(InventoryUnit.quantity > 0).order_by(InventoryUnit.id)
    ).scalars().all()
    assert remaining == ["WID-002-002"]


def test_equal_receipt_dates_fall_back_to_creation_order(db_session):
    received = utcnow() - timedelta(days=1)
    _stock(db_session, "GAU-002", 1, received)
    _stock(db_session, "GAU-001", 1, received)

    result = distribute(db_session, "F", "Gauze", 1, "ward", "nurse")
    assert result.items[0].sku == "GAU-002-001"


def test_inactive_units_are_skipped(db_session):
    now = utcnow()
    _stock(db_session, "GAU-001", 4, now - timedelta(days=5), status="recalled")
    _stock(db_session, "GAU-002", 4, now - timedelta(days=4), status="damaged")
    fresh = _stock(db_session, "GAU-003", 4, now - timedelta(days=1))

    assert [unit.batch_id for unit in select_fifo_units(db_session, "F", "Gauze")] == ["GAU-003"]
    result = distribute(db_session, "F", "Gauze", 2, "ward", "nurse")
    assert result.batches == ["GAU-003"]
    assert fresh.quantity == 2


def test_oversized_request_changes_nothing(db_session):
    now = utcnow()
    _stock(db_session, "GAU-001", 5, now - timedelta(days=2))
    _stock(db_session, "GAU-002", 3, now - timedelta(days=1))

    with pytest.raises(InsufficientInventory) as excinfo:
        distribute(db_session, "F", "Gauze", 9, "ward", "nurse")

    assert excinfo.value.available == 8
    assert excinfo.value.requested == 9
    quantities = db_session.execute(select(InventoryUnit.quantity).order_by(InventoryUnit.id)).scalars().all()
    assert quantities == [5, 3]
    assert _distribution_count(db_session) == 0


def test_unknown_product_is_not_found(db_session):
    _widgets(db_session, 1)
    with pytest.raises(NotFound):
        distribute(db_session, "F", "Sprocket", 1, "test", "clerk")
    with pytest.raises(NotFound):
        distribute(db_session, "G", "Widget", 1, "test", "clerk")


@pytest.mark.parametrize(
    "quantity, reason",
    [(0, "test"), (-3, "test"), (True, "test"), (1, "   ")],
)
def test_invalid_requests_are_rejected(db_session, quantity, reason):
    _widgets(db_session, 2)
    with pytest.raises(ValidationError):
        distribute(db_session, "F", "Widget", quantity, reason, "clerk")
    assert _distribution_count(db_session) == 0


def test_distribution_writes_records_and_history(db_session):
    units = _widgets(db_session, 2)
    distribute(db_session, "F", "Widget", 1, "sold", "clerk", destination="Front desk")

    unit = units[0]
    (record,) = unit.distributions
    assert record.quantity_taken == 1
    assert record.reason == "sold"
    assert record.destination == "Front desk"
    assert record.unit_price_at_time == 10
    assert record.total_value == 10
    assert record.remaining_after == 0
    assert record.actor_id == "clerk"

    entries = unit_history_entries(unit)
    assert [entry.action for entry in entries] == ["created", "distributed"]
    details = entries[-1].details
    assert isinstance(details, DistributedDetails)
    assert details.distributed_quantity == 1
    assert details.reason == "sold"
    assert details.fifo_position == 1
    assert unit.updated_by == "clerk"


def test_operation_id_replays_without_writing(db_session):
    _widgets(db_session, 3)

    first = distribute(db_session, "F", "Widget", 2, "sold", "clerk", operation_id="op-1")
    again = distribute(db_session, "F", "Widget", 2, "sold", "clerk", operation_id="op-1")

    assert first.replayed is False
    assert again.replayed is True
    assert [item.sku for item in again.items] == [item.sku for item in first.items]
    assert _distribution_count(db_session) == 2
    remaining = db_session.execute(select(func.sum(InventoryUnit.quantity))).scalar_one()
    assert remaining == 1


def test_per_unit_failure_reports_progress_and_resumes(db_session, monkeypatch):
    _widgets(db_session, 4)
    real_consume = distribution._consume
    calls = []

    def flaky_consume(db, unit, take, **kwargs):
        calls.append(unit.unit_sku)
        if len(calls) == 2:
            raise OperationalError("UPDATE inventory_units", {}, Exception("disk I/O error"))
        return real_consume(db, unit, take, **kwargs)

    monkeypatch.setattr(distribution, "_consume", flaky_consume)
    with pytest.raises(PartialDistributionFailure) as excinfo:
        distribute(db_session, "F", "Widget", 3, "sold", "clerk", operation_id="op-7", commit_mode="per_unit")

    failure = excinfo.value
    assert failure.requested == 3
    assert failure.distributed == 1
    assert [item["sku"] for item in failure.items] == ["WID-001-001"]
    assert _distribution_count(db_session) == 1

    monkeypatch.setattr(distribution, "_consume", real_consume)
    resumed = distribute(db_session, "F", "Widget", 3, "sold", "clerk", operation_id="op-7", commit_mode="per_unit")

    assert resumed.distributed_quantity == 3
    assert [item.sku for item in resumed.items] == ["WID-001-001", "WID-001-002", "WID-001-003"]
    assert _distribution_count(db_session) == 3
    left = db_session.execute(select(InventoryUnit.unit_sku).where(InventoryUnit.quantity > 0)).scalars().all()
    assert left == ["WID-001-004"]


def test_unknown_commit_mode_is_rejected(db_session):
    _widgets(db_session, 1)
    with pytest.raises(ValidationError):
        distribute(db_session, "F", "Widget", 1, "sold", "clerk", commit_mode="eventually")


def test_resumed_operation_keeps_fifo_positions_contiguous(db_session, monkeypatch):
    _widgets(db_session, 4)
    real_consume = distribution._consume
    calls = []

    def flaky_consume(db, unit, take, **kwargs):
        calls.append(unit.unit_sku)
        if len(calls) == 3:
            raise OperationalError("UPDATE inventory_units", {}, Exception("disk I/O error"))
        return real_consume(db, unit, take, **kwargs)

    monkeypatch.setattr(distribution, "_consume", flaky_consume)
    with pytest.raises(PartialDistributionFailure):
        distribute(db_session, "F", "Widget", 4, "sold", "clerk", operation_id="op1", commit_mode="per_unit")

    monkeypatch.setattr(distribution, "_consume", real_consume)
    resumed = distribute(db_session, "F", "Widget", 4, "sold", "clerk", operation_id="op1", commit_mode="per_unit")

    assert [item.fifo_position for item in resumed.items] == [1, 2, 3, 4]
    stored = db_session.execute(
        select(UnitDistribution.fifo_position).order_by(UnitDistribution.id)
    ).scalars().all()
    assert stored == [1, 2, 3, 4]
    history_positions = [
        entry.details.fifo_position
        for unit in db_session.execute(select(InventoryUnit).order_by(InventoryUnit.id)).scalars()
        for entry in unit_history_entries(unit)
        if entry.action == "distributed"
    ]
    assert history_positions == [1, 2, 3, 4]


def test_concurrent_writer_cannot_oversell_a_unit(tmp_path, monkeypatch, caplog):
    engine = create_engine(f"sqlite:///{tmp_path / 'stock.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    monkeypatch.setattr(settings, "RETRY_BACKOFF", 0)

    setup = Sessions()
    _stock(setup, "GAU-001", 5, utcnow() - timedelta(days=1))
    setup.close()

    first = Sessions()
    second = Sessions()
    try:
        # The first session holds the unit at quantity 5 in its identity map.
        (stale,) = select_fifo_units(first, "F", "Gauze")
        assert stale.quantity == 5

        distribute(second, "F", "Gauze", 3, "ward A", "nurse-b")

        with caplog.at_level(logging.WARNING, logger="stockunits.concurrency"):
            with pytest.raises(InsufficientInventory) as excinfo:
                distribute(first, "F", "Gauze", 4, "ward B", "nurse-a")

        assert excinfo.value.available == 2
        assert any(record.getMessage() == "retry.conflict" for record in caplog.records)
        assert _distribution_count(first) == 1
        assert first.execute(select(InventoryUnit.quantity)).scalar_one() == 2
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_units_taken_by_another_session_are_not_found(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'stock.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    first = Sessions()
    second = Sessions()
    try:
        _widgets(first, 2)
        assert len(select_fifo_units(first, "F", "Widget")) == 2

        distribute(second, "F", "Widget", 2, "sold", "clerk-b")

        with pytest.raises(NotFound):
            distribute(first, "F", "Widget", 1, "sold", "clerk-a")
        assert _distribution_count(first) == 2
    finally:
        first.close()
        second.close()
        engine.dispose()
