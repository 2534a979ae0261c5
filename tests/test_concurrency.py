"""Tests for the conflict retry helper."""

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from stockunits.services.concurrency import run_with_retry


class FakeSession:
    def __init__(self):
        self.rollbacks = 0

    def rollback(self):
        self.rollbacks += 1


def test_retries_until_success():
    db = FakeSession()
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise StaleDataError("row changed underneath us")
        return "done"

    assert run_with_retry(db, flaky, attempts=3, backoff_base=0) == "done"
    assert len(attempts) == 3
    assert db.rollbacks == 2


def test_last_conflict_propagates():
    db = FakeSession()

    def always_conflicts():
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(IntegrityError):
        run_with_retry(db, always_conflicts, attempts=2, backoff_base=0)
    assert db.rollbacks == 2


def test_other_errors_are_not_retried():
    db = FakeSession()
    calls = []

    def broken():
        calls.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        run_with_retry(db, broken, attempts=5, backoff_base=0, retry_on=(StaleDataError,))
    assert calls == [1]
    assert db.rollbacks == 0
