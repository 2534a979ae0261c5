"""Tests for the expiring and low-stock views."""

import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from stockunits.core.config import settings
from stockunits.core.errors import ValidationError
from stockunits.core.time_utils import utcnow
from stockunits.crud.units import change_status, create_units
from stockunits.db.session import Base
from stockunits.services.distribution import distribute
from stockunits.services.listings import list_expiring, list_low_stock


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


def _create(db, name, quantity, facility="F", **extra):
    data = {"name": name, "category": "Pharmacy", "quantity": quantity, "price_per_unit": 1}
    data.update(extra)
    return create_units(db, data, facility, "tester")


def _skus(groups):
    return {bucket: [unit.unit_sku for unit in units] for bucket, units in groups.items()}


def test_expiring_groups_by_bucket(db_session):
    now = utcnow()
    _create(db_session, "Aspirin", 1, expiry_date=now - timedelta(days=2))
    _create(db_session, "Bandage", 1, expiry_date=now + timedelta(days=5))
    _create(db_session, "Cream", 1, expiry_date=now + timedelta(days=60))
    _create(db_session, "Drops", 1)
    (recalled,) = _create(db_session, "Elixir", 1, expiry_date=now - timedelta(days=1))
    change_status(db_session, recalled, "recalled", "qa")
    _create(db_session, "Aspirin", 1, facility="G", expiry_date=now - timedelta(days=2))

    groups = list_expiring(db_session, "F").as_dict()
    assert list(groups) == ["expired", "expiring"]
    assert _skus(groups) == {"expired": ["ASP-001-001"], "expiring": ["BAN-001-001"]}


def test_expiring_window_override_and_empty_buckets(db_session):
    now = utcnow()
    _create(db_session, "Bandage", 1, expiry_date=now + timedelta(days=5))
    _create(db_session, "Cream", 1, expiry_date=now + timedelta(days=60))

    wide = list_expiring(db_session, "F", window_days=90).as_dict()
    assert list(wide) == ["expiring"]
    assert _skus(wide)["expiring"] == ["BAN-001-001", "CRE-001-001"]

    assert list(list_expiring(db_session, "F", window_days=1)) == []


def test_grouped_sequence_is_restartable(db_session):
    now = utcnow()
    _create(db_session, "Bandage", 2, expiry_date=now + timedelta(days=5))
    view = list_expiring(db_session, "F")

    first = [(bucket, [unit.unit_sku for unit in units]) for bucket, units in view]
    _create(db_session, "Aspirin", 1, expiry_date=now - timedelta(days=1))
    second = [(bucket, [unit.unit_sku for unit in units]) for bucket, units in view]

    assert first == [("expiring", ["BAN-001-001", "BAN-001-002"])]
    assert second == [("expired", ["ASP-001-001"]), ("expiring", ["BAN-001-001", "BAN-001-002"])]


def test_negative_window_is_rejected(db_session):
    with pytest.raises(ValidationError):
        list_expiring(db_session, "F", window_days=-1)
    with pytest.raises(ValidationError):
        list_low_stock(db_session, "F", threshold=-5)


def test_low_stock_buckets(db_session, monkeypatch):
    monkeypatch.setattr(settings, "LOW_STOCK_CRITICAL", 5)
    _create(db_session, "Aspirin", 3)
    _create(db_session, "Bandage", 8)
    _create(db_session, "Cream", 20)
    _create(db_session, "Drops", 2)
    distribute(db_session, "F", "Drops", 2, "dispensed", "nurse")
    _create(db_session, "Aspirin", 1, facility="G")

    groups = list_low_stock(db_session, "F", threshold=10).as_dict()

    assert list(groups) == ["out_of_stock", "critical", "low"]
    assert _skus(groups)["out_of_stock"] == ["DRO-001-001", "DRO-001-002"]
    assert len(groups["critical"]) == 3
    assert {unit.product_name for unit in groups["critical"]} == {"Aspirin"}
    assert len(groups["low"]) == 8
    assert {unit.product_name for unit in groups["low"]} == {"Bandage"}


def test_low_stock_default_threshold(db_session, monkeypatch):
    monkeypatch.setattr(settings, "LOW_STOCK_THRESHOLD", 2)
    monkeypatch.setattr(settings, "LOW_STOCK_CRITICAL", 1)
    _create(db_session, "Aspirin", 1)
    _create(db_session, "Bandage", 2)
    _create(db_session, "Cream", 3)

    groups = list_low_stock(db_session, "F").as_dict()
    assert _skus(groups) == {"critical": ["ASP-001-001"], "low": ["BAN-001-001", "BAN-001-002"]}
