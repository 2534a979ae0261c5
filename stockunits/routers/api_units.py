from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..crud.units import (
    change_status,
    create_units,
    export_units_csv,
    get_unit_by_sku,
    group_products,
    list_units,
    suggest_products,
    summarize_batches,
    unit_history_entries,
    update_batch,
    update_unit,
)
from ..db.session import get_db
from ..deps.auth import get_actor_id, require_api_key
from ..models.unit import InventoryUnit
from ..schemas.history import HistoryEntryOut
from ..schemas.units import (
    BatchPriceUpdate,
    BatchSummary,
    BatchUpdateResult,
    DistributionRequest,
    DistributionResult,
    PrefixOut,
    ProductCreate,
    ProductGroup,
    ProductSuggestion,
    StatusChange,
    UnitDetail,
    UnitGroupOut,
    UnitOut,
    UnitUpdate,
)
from ..services.distribution import distribute
from ..services.listings import GroupedUnits, list_expiring, list_low_stock
from ..services.prefixes import get_or_create_prefix

router = APIRouter(
    prefix="/api/v1/facilities/{facility_id}/units",
    tags=["units"],
    dependencies=[Depends(require_api_key)],
)


def _unit_out(unit: InventoryUnit) -> UnitOut:
    return UnitOut.model_validate(unit, from_attributes=True)


def _groups_out(groups: GroupedUnits) -> list[UnitGroupOut]:
    return [UnitGroupOut(bucket=bucket, units=[_unit_out(unit) for unit in units]) for bucket, units in groups]


def _lookup_unit(db: Session, facility_id: str, sku: str) -> InventoryUnit:
    unit = get_unit_by_sku(db, facility_id, sku)
    if not unit:
        raise HTTPException(status_code=404, detail="Unit not found")
    return unit


@router.get("", response_model=list[UnitOut])
def api_list_units(
    facility_id: str,
    product_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    units = list_units(db, facility_id, product_name=product_name, status=status, limit=limit, offset=offset)
    return [_unit_out(unit) for unit in units]


@router.post("", response_model=list[UnitOut], status_code=201)
def api_create_units(
    facility_id: str,
    payload: ProductCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    units = create_units(db, payload.model_dump(exclude_unset=True), facility_id, actor)
    return [_unit_out(unit) for unit in units]


@router.post("/distribute", response_model=DistributionResult)
def api_distribute(
    facility_id: str,
    payload: DistributionRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    return distribute(
        db,
        facility_id,
        payload.product_name,
        payload.quantity,
        payload.reason,
        actor,
        destination=payload.destination,
        operation_id=payload.operation_id,
    )


@router.get("/expiring", response_model=list[UnitGroupOut])
def api_expiring_units(
    facility_id: str,
    window_days: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
):
    return _groups_out(list_expiring(db, facility_id, window_days))


@router.get("/low-stock", response_model=list[UnitGroupOut])
def api_low_stock_units(
    facility_id: str,
    threshold: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
):
    return _groups_out(list_low_stock(db, facility_id, threshold))


@router.get("/prefix", response_model=PrefixOut)
def api_product_prefix(facility_id: str, name: str, db: Session = Depends(get_db)):
    prefix = get_or_create_prefix(db, name, facility_id)
    return PrefixOut(product_name=name.strip(), prefix=prefix)


@router.get("/suggestions", response_model=list[ProductSuggestion])
def api_product_suggestions(
    facility_id: str,
    q: str = "",
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    return suggest_products(db, facility_id, q, limit=limit)


@router.get("/batches", response_model=list[BatchSummary])
def api_batch_summary(
    facility_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return summarize_batches(db, facility_id, limit=limit)


@router.get("/grouped", response_model=list[ProductGroup])
def api_grouped_products(
    facility_id: str,
    category: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return group_products(db, facility_id, category=category, status=status, search=search)


@router.get("/export")
def api_export_units(facility_id: str, db: Session = Depends(get_db)):
    return Response(
        content=export_units_csv(db, facility_id),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="units-{facility_id}.csv"'},
    )


@router.patch("/batches/{batch_id}", response_model=BatchUpdateResult)
def api_update_batch(
    facility_id: str,
    batch_id: str,
    payload: UnitUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    return update_batch(db, facility_id, batch_id, payload.model_dump(exclude_unset=True), actor)


@router.put("/batches/{batch_id}/price", response_model=BatchUpdateResult)
def api_update_batch_price(
    facility_id: str,
    batch_id: str,
    payload: BatchPriceUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    return update_batch(db, facility_id, batch_id, {"price_per_unit": payload.price_per_unit}, actor)


@router.get("/{sku}", response_model=UnitDetail)
def api_get_unit(facility_id: str, sku: str, db: Session = Depends(get_db)):
    unit = _lookup_unit(db, facility_id, sku)
    return UnitDetail.model_validate(unit, from_attributes=True)


@router.patch("/{sku}", response_model=UnitOut)
def api_update_unit(
    facility_id: str,
    sku: str,
    payload: UnitUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    unit = _lookup_unit(db, facility_id, sku)
    return _unit_out(update_unit(db, unit, payload.model_dump(exclude_unset=True), actor))


@router.post("/{sku}/status", response_model=UnitOut)
def api_change_unit_status(
    facility_id: str,
    sku: str,
    payload: StatusChange,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor_id),
):
    unit = _lookup_unit(db, facility_id, sku)
    return _unit_out(change_status(db, unit, payload.status, actor, note=payload.note))


@router.get("/{sku}/history", response_model=list[HistoryEntryOut])
def api_unit_history(facility_id: str, sku: str, db: Session = Depends(get_db)):
    unit = _lookup_unit(db, facility_id, sku)
    return unit_history_entries(unit)
