"""Tests for batch prefix allocation."""

import logging
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from stockunits.core.errors import PrefixExhausted, ValidationError
from stockunits.core.time_utils import utcnow
from stockunits.crud.units import create_units
from stockunits.db.session import Base
from stockunits.models.unit import InventoryUnit
from stockunits.services.prefixes import (
    candidate_prefixes,
    extended_prefixes,
    generate_unique_prefix,
    get_or_create_prefix,
    normalize_name,
)


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


def _product(name, quantity=1, **extra):
    data = {"name": name, "category": "Supplies", "quantity": quantity, "price_per_unit": 10}
    data.update(extra)
    return data


def _seed_batch(db, name, batch_id, facility="F"):
    unit = InventoryUnit(
        facility_id=facility,
        product_name=name,
        category="Supplies",
        batch_id=batch_id,
        unit_index=1,
        unit_sku=f"{batch_id}-001",
        initial_quantity=1,
        quantity=1,
        price_per_unit=1.0,
        total_price=1.0,
        received_date=utcnow(),
    )
    db.add(unit)
    db.commit()
    return unit


def test_normalize_name_strips_symbols_and_uppercases():
    assert normalize_name("Widget-Pro 2!") == "WIDGETPRO2"
    assert normalize_name("  café au lait ") == "CAFAULAIT"
    assert normalize_name("!!!") == ""


def test_candidate_order_for_long_name():
    assert candidate_prefixes("WIDGET") == [
        "WID",
        "WIT",
        "WGT",
        "WI1",
        "WI2",
        "WI3",
        "WI4",
        "WI5",
        "WI6",
        "WI7",
        "WI8",
        "WI9",
    ]


def test_candidates_for_short_names_use_whole_name():
    assert candidate_prefixes("AB") == ["AB"] + [f"AB{digit}" for digit in range(1, 10)]
    assert candidate_prefixes("X")[0] == "X"
    assert candidate_prefixes("X")[1] == "X1"


def test_extended_prefixes_grow_before_numbering():
    extended = extended_prefixes("WIDGET")
    assert extended[:3] == ["WIDG", "WIDGE", "WIDGET"]
    assert extended[3] == "WI10"
    assert extended[-1] == "WI99"


def test_new_product_gets_first_three_letters(db_session):
    assert get_or_create_prefix(db_session, "Widget", "F") == "WID"


def test_prefix_is_stable_across_orders(db_session):
    first = get_or_create_prefix(db_session, "Widget", "F")
    create_units(db_session, _product("Widget"), "F", "tester")
    assert get_or_create_prefix(db_session, "Widget", "F") == first
    assert get_or_create_prefix(db_session, "  WIDGET ", "F") == first


def test_non_ascii_names_match_regardless_of_case(db_session):
    (first,) = create_units(db_session, _product("Éclair"), "F", "tester")
    assert first.batch_id == "CLA-001"

    assert get_or_create_prefix(db_session, "éclair", "F") == "CLA"
    assert get_or_create_prefix(db_session, "ÉCLAIR", "F") == "CLA"
    (second,) = create_units(db_session, _product("éclair"), "F", "tester")
    assert second.batch_id == "CLA-002"


def test_distinct_names_get_distinct_prefixes(db_session):
    create_units(db_session, _product("Widget"), "F", "tester")
    create_units(db_session, _product("Widgeon"), "F", "tester")
    create_units(db_session, _product("Widow"), "F", "tester")

    widget = get_or_create_prefix(db_session, "Widget", "F")
    widgeon = get_or_create_prefix(db_session, "Widgeon", "F")
    widow = get_or_create_prefix(db_session, "Widow", "F")
    assert widget == "WID"
    assert widgeon == "WIN"
    assert widow == "WIW"
    assert len({widget, widgeon, widow}) == 3


def test_prefixes_are_scoped_per_facility(db_session):
    create_units(db_session, _product("Widget"), "F", "tester")
    assert get_or_create_prefix(db_session, "Widening Tool", "G") == "WID"
    assert get_or_create_prefix(db_session, "Widening Tool", "F") == "WIL"


def test_blank_or_symbol_only_names_are_rejected(db_session):
    with pytest.raises(ValidationError):
        get_or_create_prefix(db_session, "   ", "F")
    with pytest.raises(ValidationError):
        get_or_create_prefix(db_session, "!!!", "F")


def _exhaust_ab(db):
    _seed_batch(db, "Other 0", "AB-001")
    for digit in range(1, 10):
        _seed_batch(db, f"Other {digit}", f"AB{digit}-001")


def test_exhausted_candidates_extend_by_default(db_session, caplog):
    _exhaust_ab(db_session)
    with caplog.at_level(logging.WARNING, logger="stockunits.prefixes"):
        prefix = generate_unique_prefix(db_session, "A-B", "F", exhausted_policy="extend")
    assert prefix == "AB10"
    assert any(record.getMessage() == "allocation.degraded" for record in caplog.records)


def test_exhausted_candidates_reject_policy(db_session):
    _exhaust_ab(db_session)
    with pytest.raises(PrefixExhausted) as excinfo:
        generate_unique_prefix(db_session, "A-B", "F", exhausted_policy="reject")
    assert excinfo.value.details["policy"] == "reject"


def test_exhausted_candidates_allow_policy_returns_colliding_prefix(db_session, caplog):
    _exhaust_ab(db_session)
    with caplog.at_level(logging.WARNING, logger="stockunits.prefixes"):
        prefix = generate_unique_prefix(db_session, "A-B", "F", exhausted_policy="allow")
    assert prefix == "AB"
    degraded = [record for record in caplog.records if record.getMessage() == "allocation.degraded"]
    assert degraded
    assert degraded[0].extra_data["strategy"] == "colliding_prefix"
