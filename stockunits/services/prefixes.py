"""Batch prefix allocation for product names.

A prefix is the short code in front of every batch id (``WID`` in
``WID-002``). The same product name always maps to the same prefix inside a
facility, and two different names never share one. Lookup is read-only: the
prefix becomes "taken" once the first unit carrying it is persisted.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Literal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import PrefixExhausted, ValidationError
from ..models.unit import InventoryUnit

logger = logging.getLogger("stockunits.prefixes")

PRIMARY_LENGTH = 3

_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]")

ExhaustedPolicy = Literal["extend", "reject", "allow"]


def clean_product_name(name: str | None) -> str:
    """Trim the free-text name; blank names are rejected."""

    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("product name is required")
    return cleaned


def normalize_name(name: str) -> str:
    return _NON_ALNUM_RE.sub("", (name or "").upper())


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def candidate_prefixes(normalized: str) -> list[str]:
    """Preferred prefixes for a normalized name, in the order they are tried.

    Whole name (≤3 chars) or its first three characters, then first two plus
    last, then first plus middle plus last, then the first two characters of
    the primary attempt followed by a digit 1..9.
    """

    primary = normalized[:PRIMARY_LENGTH]
    candidates = [primary]
    if len(normalized) > PRIMARY_LENGTH:
        candidates.append(normalized[:2] + normalized[-1])
        candidates.append(normalized[0] + normalized[len(normalized) // 2] + normalized[-1])
    stem = primary[:2]
    candidates.extend(f"{stem}{digit}" for digit in range(1, 10))
    return _dedupe(candidates)


def extended_prefixes(normalized: str) -> list[str]:
    """Longer fallbacks used once every preferred candidate is taken."""

    longer = [normalized[:length] for length in range(PRIMARY_LENGTH + 1, len(normalized) + 1)]
    stem = normalized[:2]
    longer.extend(f"{stem}{number}" for number in range(10, 100))
    return _dedupe(longer)


def used_prefixes(db: Session, facility_id: str) -> set[str]:
    stmt = select(InventoryUnit.batch_id).where(InventoryUnit.facility_id == facility_id).distinct()
    return {batch_id.split("-", 1)[0] for batch_id in db.execute(stmt).scalars() if batch_id}


def find_existing_prefix(db: Session, product_name: str, facility_id: str) -> str | None:
    """Prefix already used by a unit with this name (case-insensitive), if any.

    Names are folded in Python because SQLite's ``lower()`` only folds ASCII.
    """

    wanted = product_name.casefold()
    stmt = (
        select(InventoryUnit.product_name, func.min(InventoryUnit.id))
        .where(InventoryUnit.facility_id == facility_id)
        .group_by(InventoryUnit.product_name)
    )
    first_ids = [first_id for name, first_id in db.execute(stmt) if name.casefold() == wanted]
    if not first_ids:
        return None
    batch_id = db.execute(select(InventoryUnit.batch_id).where(InventoryUnit.id == min(first_ids))).scalar_one()
    return batch_id.split("-", 1)[0]


def generate_unique_prefix(
    db: Session,
    product_name: str,
    facility_id: str,
    *,
    exhausted_policy: ExhaustedPolicy | None = None,
) -> str:
    normalized = normalize_name(product_name)
    if not normalized:
        raise ValidationError("product name must contain letters or digits", product_name=product_name)

    taken = used_prefixes(db, facility_id)
    for candidate in candidate_prefixes(normalized):
        if candidate not in taken:
            return candidate

    policy = exhausted_policy or settings.PREFIX_EXHAUSTED_POLICY
    primary = normalized[:PRIMARY_LENGTH]
    log_fields = {"product_name": product_name, "facility_id": facility_id, "primary": primary}

    if policy == "extend":
        for candidate in extended_prefixes(normalized):
            if candidate not in taken:
                logger.warning(
                    "allocation.degraded",
                    extra={"extra_data": {**log_fields, "strategy": "extended_prefix", "prefix": candidate}},
                )
                return candidate
    elif policy == "allow":
        logger.warning(
            "allocation.degraded",
            extra={"extra_data": {**log_fields, "strategy": "colliding_prefix", "prefix": primary}},
        )
        return primary

    raise PrefixExhausted(
        f"No free batch prefix for '{product_name}'",
        product_name=product_name,
        facility_id=facility_id,
        policy=policy,
    )


def get_or_create_prefix(
    db: Session,
    product_name: str,
    facility_id: str,
    *,
    exhausted_policy: ExhaustedPolicy | None = None,
) -> str:
    name = clean_product_name(product_name)
    existing = find_existing_prefix(db, name, facility_id)
    if existing:
        return existing
    return generate_unique_prefix(db, name, facility_id, exhausted_policy=exhausted_policy)
