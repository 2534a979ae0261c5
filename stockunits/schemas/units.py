from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, computed_field

from ..services.expiry import ExpiryStatus


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    category: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price_per_unit: float = Field(ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    expiry_date: Optional[datetime] = None
    expiry_alert_days: Optional[int] = Field(default=None, ge=0)
    received_date: Optional[datetime] = None


class UnitUpdate(BaseModel):
    category: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)
    price_per_unit: Optional[float] = Field(default=None, ge=0)
    expiry_date: Optional[datetime] = None
    expiry_alert_days: Optional[int] = Field(default=None, ge=0)


class StatusChange(BaseModel):
    status: Literal["active", "damaged", "recalled"]
    note: Optional[str] = None


class ExpiryOut(BaseModel):
    is_tracked: bool
    date: Optional[datetime] = None
    alert_window_days: Optional[int] = None
    status: Optional[ExpiryStatus] = None

    class Config:
        from_attributes = True


class DistributionRecordOut(BaseModel):
    id: int
    operation_id: Optional[str] = None
    destination: Optional[str] = None
    reason: str
    quantity_taken: int
    unit_price_at_time: float
    total_value: float
    remaining_after: int
    fifo_position: int
    actor_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class UnitOut(BaseModel):
    id: int
    facility_id: str
    product_name: str
    category: str
    description: Optional[str] = None
    batch_id: str
    unit_index: int
    unit_sku: str
    quantity: int
    initial_quantity: int
    price_per_unit: float
    total_price: float
    received_date: datetime
    status: str
    expiry: ExpiryOut
    days_until_expiry: Optional[int] = None
    created_by: str
    updated_by: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UnitDetail(UnitOut):
    distributions: list[DistributionRecordOut] = Field(default_factory=list)


class UnitGroupOut(BaseModel):
    bucket: str
    units: list[UnitOut]


class DistributionRequest(BaseModel):
    product_name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    reason: str = Field(min_length=1)
    destination: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, max_length=100)


class DistributedItem(BaseModel):
    unit_id: int
    sku: str
    batch_id: str
    quantity_distributed: int
    remaining_quantity: int
    expiry_date: Optional[datetime] = None
    fifo_position: int


class DistributionResult(BaseModel):
    product_name: str
    facility_id: str
    requested_quantity: int
    distributed_quantity: int
    items: list[DistributedItem] = Field(default_factory=list)
    distributed_at: datetime
    operation_id: Optional[str] = None
    replayed: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def batches(self) -> list[str]:
        seen: list[str] = []
        for item in self.items:
            if item.batch_id not in seen:
                seen.append(item.batch_id)
        return seen

    @computed_field  # type: ignore[prop-decorator]
    @property
    def unit_count(self) -> int:
        return len(self.items)


class PrefixOut(BaseModel):
    product_name: str
    prefix: str


class ProductSuggestion(BaseModel):
    name: str
    prefix: str
    category: Optional[str] = None
    price_per_unit: Optional[float] = None
    active_quantity: int
    unit_count: int
    last_created: Optional[datetime] = None


class BatchSummary(BaseModel):
    batch_id: str
    product_name: str
    unit_count: int
    remaining_quantity: int
    total_value: float


class BatchPriceUpdate(BaseModel):
    price_per_unit: float = Field(ge=0)


class BatchUpdateResult(BaseModel):
    batch_id: str
    matched_count: int
    updated_count: int
    updated_skus: list[str] = Field(default_factory=list)


class GroupedBatch(BaseModel):
    batch_id: str
    received_date: Optional[datetime] = None
    unit_count: int
    active_quantity: int


class ProductGroup(BaseModel):
    name: str
    prefix: str
    category: Optional[str] = None
    unit_count: int
    active_quantity: int
    batches: list[GroupedBatch] = Field(default_factory=list)
