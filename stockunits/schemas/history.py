"""Typed payloads for the append-only unit history.

Each ``action`` has its own details model. The stored JSON omits the tag
(it lives in ``UnitHistory.action``); ``parse_history_details`` re-attaches it
and validates, so unknown actions or malformed rows raise instead of leaking
through as free-form dicts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class CreatedDetails(BaseModel):
    action: Literal["created"] = "created"
    batch: str
    unit: int
    original_quantity: int
    degraded: bool = False


class DistributedDetails(BaseModel):
    action: Literal["distributed"] = "distributed"
    distributed_quantity: int
    reason: str
    fifo_position: int
    destination: Optional[str] = None
    operation_id: Optional[str] = None


class FieldChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Any = Field(default=None, alias="from")
    to: Any = None


class UpdatedDetails(BaseModel):
    action: Literal["updated"] = "updated"
    changes: dict[str, FieldChange]


class StatusChangedDetails(BaseModel):
    action: Literal["status_changed"] = "status_changed"
    from_status: str
    to_status: str
    note: Optional[str] = None


HistoryDetails = Annotated[
    Union[CreatedDetails, DistributedDetails, UpdatedDetails, StatusChangedDetails],
    Field(discriminator="action"),
]

_DETAILS_ADAPTER: TypeAdapter[Any] = TypeAdapter(HistoryDetails)


def dump_history_details(details: BaseModel) -> dict[str, Any]:
    return details.model_dump(mode="json", by_alias=True, exclude={"action"})


def parse_history_details(action: str, details: dict[str, Any] | None) -> HistoryDetails:
    payload = dict(details or {})
    payload["action"] = action
    return _DETAILS_ADAPTER.validate_python(payload)


class HistoryEntryOut(BaseModel):
    id: int
    action: str
    actor_id: str
    created_at: datetime
    details: HistoryDetails
