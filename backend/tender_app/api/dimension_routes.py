"""
Dimension sheet routes: taking-off rows for one BQ item.

Every create / update / delete recomputes the row's calculated_value and the
owning BQ item's quantity and amount from scratch.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from tender_app.db import get_db
from tender_app.api.deps import get_organization_id, http_error
from tender_app.models.orm_models import BQItem, DimensionSheetRow, Project
from tender_app.services.bq_engine import recompute_item
from tender_app.services.dimension_engine import DimensionRow, engine as _ENGINE
from tender_app.services.errors import ValidationError

router = APIRouter(prefix="/api/dimensions", tags=["Dimensions"])
logger = logging.getLogger("tender-dimensions")


class DimensionCreate(BaseModel):
    bq_item_id: str
    description: Optional[str] = ""
    timesing: Optional[Decimal] = Decimal("1")
    dim_a: Optional[Decimal] = None
    dim_b: Optional[Decimal] = None
    dim_c: Optional[Decimal] = None
    waste: Optional[Decimal] = Decimal("0")
    is_deduction: bool = False
    sort_order: Optional[int] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class DimensionPatch(BaseModel):
    """Partial update. Only fields present in the request body are applied."""
    description: Optional[str] = None
    timesing: Optional[Decimal] = None
    dim_a: Optional[Decimal] = None
    dim_b: Optional[Decimal] = None
    dim_c: Optional[Decimal] = None
    waste: Optional[Decimal] = None
    is_deduction: Optional[bool] = None
    sort_order: Optional[int] = None

    model_config = {"extra": "forbid", "alias_generator": to_camel, "populate_by_name": True}


class MeanGirthRequest(BaseModel):
    perimeter: Any = None
    thickness: Any = None
    corners: Any = Field(4, description="Number of external corners")
    bq_item_id: Optional[str] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def to_domain(row: DimensionSheetRow) -> DimensionRow:
    return DimensionRow(
        id=str(row.id) if row.id else None,
        bq_item_id=str(row.bq_item_id) if row.bq_item_id else None,
        description=row.description or "",
        timesing=row.timesing,
        dim_a=row.dim_a,
        dim_b=row.dim_b,
        dim_c=row.dim_c,
        waste=row.waste,
        is_deduction=bool(row.is_deduction),
        sort_order=row.sort_order or 0,
    )


def serialize_row(row: DimensionSheetRow) -> Dict[str, Any]:
    return {
        "id": str(row.id),
        "bq_item_id": str(row.bq_item_id),
        "description": row.description or "",
        "timesing": _num(row.timesing),
        "dim_a": _num(row.dim_a),
        "dim_b": _num(row.dim_b),
        "dim_c": _num(row.dim_c),
        "waste": _num(row.waste),
        "is_deduction": bool(row.is_deduction),
        "calculated_value": _num(row.calculated_value),
        "sort_order": row.sort_order,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def _write_domain(row: DimensionSheetRow, dim: DimensionRow) -> None:
    row.description = dim.description
    row.timesing = dim.timesing
    row.dim_a = dim.dim_a
    row.dim_b = dim.dim_b
    row.dim_c = dim.dim_c
    row.waste = dim.waste
    row.is_deduction = dim.is_deduction
    row.sort_order = dim.sort_order
    row.calculated_value = _ENGINE.stored_value(dim)


async def _load_item(db: AsyncSession, bq_item_id: str, organization_id: str) -> BQItem:
    result = await db.execute(
        select(BQItem, Project.organization_id)
        .join(Project, BQItem.project_id == Project.id)
        .where(BQItem.id == bq_item_id)
    )
    found = result.first()
    if not found:
        raise HTTPException(status_code=404, detail="BQ item not found")
    item, item_org = found
    if str(item_org) != str(organization_id):
        raise HTTPException(status_code=403, detail="Unauthorized")
    return item


async def _sheet_rows(db: AsyncSession, bq_item_id: str) -> List[DimensionSheetRow]:
    result = await db.execute(
        select(DimensionSheetRow)
        .where(DimensionSheetRow.bq_item_id == bq_item_id)
        .order_by(DimensionSheetRow.sort_order, DimensionSheetRow.created_at)
    )
    return list(result.scalars().all())


async def recompute_bq_item(db: AsyncSession, item: BQItem) -> None:
    """Quantity = Σ signed rows (when any); amount = quantity × rate."""
    await db.flush()
    rows = await _sheet_rows(db, item.id)
    totals = recompute_item([to_domain(r) for r in rows], item.rate, item.quantity)
    item.quantity = totals.quantity
    item.amount = totals.amount
    logger.debug(
        "BQ item %s recomputed: qty=%s amount=%s (%d rows)",
        item.id, totals.quantity, totals.amount, len(rows),
        extra={"bq_item_id": str(item.id)},
    )


@router.get("")
async def list_dimensions(
    bq_item_id: str = Query(..., alias="bqItemId"),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    await _load_item(db, bq_item_id, organization_id)
    rows = await _sheet_rows(db, bq_item_id)
    return {"dimensions": [serialize_row(r) for r in rows]}


@router.get("/sheet")
async def sheet_summary(
    bq_item_id: str = Query(..., alias="bqItemId"),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    """Rows plus the signed total that feeds the BQ item quantity."""
    item = await _load_item(db, bq_item_id, organization_id)
    rows = await _sheet_rows(db, bq_item_id)
    summary = _ENGINE.summarize([to_domain(r) for r in rows])
    return {
        "bq_item_id": str(item.id),
        "dimensions": [serialize_row(r) for r in rows],
        "summary": summary.to_dict(),
        "unit": item.unit,
    }


@router.post("", status_code=201)
async def create_dimension(
    req: DimensionCreate,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    item = await _load_item(db, req.bq_item_id, organization_id)
    data = req.model_dump()
    if data["sort_order"] is None:
        data["sort_order"] = len(await _sheet_rows(db, item.id)) + 1
    try:
        dim = DimensionRow.from_mapping(data)
    except ValidationError as e:
        raise http_error(e)

    row = DimensionSheetRow(bq_item_id=item.id)
    _write_domain(row, dim)
    db.add(row)
    await recompute_bq_item(db, item)
    await db.commit()
    await db.refresh(row)
    return {"dimension": serialize_row(row), "bq_item": {"quantity": _num(item.quantity), "amount": _num(item.amount)}}


@router.post("/mean-girth")
async def mean_girth(req: MeanGirthRequest):
    """
    Centre-line girth = perimeter − corners × thickness.
    Non-numeric input yields ``{"result": null}`` rather than an error.
    """
    girth = _ENGINE.mean_girth(req.perimeter, req.thickness, req.corners)
    if girth is None:
        return {"result": None, "row": None}
    try:
        row = _ENGINE.mean_girth_row(req.bq_item_id, girth)
    except ValidationError:
        # Negative girth cannot become a linear dimension
        return {"result": _num(girth), "row": None}
    payload = row.to_dict()
    payload.pop("id")
    payload = {k: (_num(v) if isinstance(v, Decimal) else v) for k, v in payload.items()}
    return {"result": _num(girth), "row": payload}


@router.patch("/{dimension_id}")
async def update_dimension(
    dimension_id: str,
    req: DimensionPatch,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(DimensionSheetRow).where(DimensionSheetRow.id == dimension_id))
    row = result.scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Dimension row not found")
    item = await _load_item(db, row.bq_item_id, organization_id)

    patch = req.model_dump(exclude_unset=True)
    try:
        updated, changed = _ENGINE.apply_patch(to_domain(row), patch)
    except ValidationError as e:
        raise http_error(e)

    _write_domain(row, updated)
    await recompute_bq_item(db, item)
    await db.commit()
    await db.refresh(row)
    logger.info(
        "Dimension %s updated: %s", dimension_id, changed or "no changes",
        extra={"bq_item_id": str(item.id)},
    )
    return {"dimension": serialize_row(row), "bq_item": {"quantity": _num(item.quantity), "amount": _num(item.amount)}}


@router.delete("/{dimension_id}")
async def delete_dimension(
    dimension_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    """Idempotent: deleting a row that is already gone still succeeds."""
    result = await db.execute(select(DimensionSheetRow).where(DimensionSheetRow.id == dimension_id))
    row = result.scalar_one_or_none()
    if not row:
        return {"success": True, "deleted": False}
    item = await _load_item(db, row.bq_item_id, organization_id)
    await db.delete(row)
    await recompute_bq_item(db, item)
    await db.commit()
    return {"success": True, "deleted": True, "bq_item": {"quantity": _num(item.quantity), "amount": _num(item.amount)}}
