"""Batch sequence numbers scoped to a prefix (``WID-001``, ``WID-002``, ...)."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.unit import InventoryUnit
from .prefixes import ExhaustedPolicy, get_or_create_prefix

logger = logging.getLogger("stockunits.sequencing")

SEQUENCE_WIDTH = 3


@dataclass(frozen=True)
class BatchAllocation:
    prefix: str
    sequence: int
    batch_id: str
    degraded: bool = False


def format_batch_id(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:0{SEQUENCE_WIDTH}d}"


def highest_sequence(db: Session, prefix: str) -> int:
    """Largest numeric suffix among ``{prefix}-<digits>`` batch ids, 0 if none.

    The scan is not limited to one facility: prefixes are facility-scoped but
    unit SKUs must stay unique across the whole store.
    """

    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    stmt = select(InventoryUnit.batch_id).where(InventoryUnit.batch_id.like(f"{prefix}-%")).distinct()
    highest = 0
    for batch_id in db.execute(stmt).scalars():
        match = pattern.match(batch_id or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def _timestamp_sequence() -> int:
    return int(time.time() * 1000) % 999 + 1


def allocate_batch(
    db: Session,
    product_name: str,
    facility_id: str,
    *,
    exhausted_policy: ExhaustedPolicy | None = None,
) -> BatchAllocation:
    prefix = get_or_create_prefix(db, product_name, facility_id, exhausted_policy=exhausted_policy)
    try:
        sequence = highest_sequence(db, prefix) + 1
    except SQLAlchemyError:
        db.rollback()
        sequence = _timestamp_sequence()
        logger.warning(
            "allocation.degraded",
            exc_info=True,
            extra={
                "extra_data": {
                    "strategy": "timestamp_sequence",
                    "prefix": prefix,
                    "sequence": sequence,
                    "facility_id": facility_id,
                }
            },
        )
        return BatchAllocation(prefix=prefix, sequence=sequence, batch_id=format_batch_id(prefix, sequence), degraded=True)
    return BatchAllocation(prefix=prefix, sequence=sequence, batch_id=format_batch_id(prefix, sequence))


def get_next_batch_number(db: Session, product_name: str, facility_id: str) -> str:
    return allocate_batch(db, product_name, facility_id).batch_id
