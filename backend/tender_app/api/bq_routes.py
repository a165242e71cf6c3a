"""Bill of Quantities item routes."""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from tender_app.db import get_db
from tender_app.api.deps import get_current_user, http_error, load_project_for_org
from tender_app.api.dimension_routes import recompute_bq_item
from tender_app.models.orm_models import BQItem, DimensionSheetRow, NrmRule, ProjectSection, User
from tender_app.services.bq_engine import compute_amount, normalize_rate, normalize_unit
from tender_app.services.dimension_engine import to_decimal
from tender_app.services.errors import TakingOffError, ValidationError

router = APIRouter(prefix="/api/bq-items", tags=["BQ Items"])
logger = logging.getLogger("tender-bq")


class BQItemCreate(BaseModel):
    project_id: str
    nrm_rule_id: Optional[str] = None
    section_id: Optional[str] = None
    quantity: Optional[Decimal] = Decimal("0")
    unit: Optional[str] = None
    rate: Optional[Decimal] = None
    description_custom: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class BQItemPatch(BaseModel):
    section_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    rate: Optional[Decimal] = None
    description_custom: Optional[str] = None
    notes: Optional[str] = None
    sort_order: Optional[int] = None

    model_config = {"extra": "forbid", "alias_generator": to_camel, "populate_by_name": True}


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_item(item: BQItem, rule: Optional[NrmRule] = None, row_count: int = 0) -> Dict[str, Any]:
    data = {
        "id": str(item.id),
        "project_id": str(item.project_id),
        "section_id": str(item.section_id) if item.section_id else None,
        "nrm_rule_id": str(item.nrm_rule_id) if item.nrm_rule_id else None,
        "quantity": _num(item.quantity),
        "unit": item.unit,
        "rate": _num(item.rate),
        "amount": _num(item.amount),
        "description_custom": item.description_custom,
        "notes": item.notes,
        "sort_order": item.sort_order,
        "dimension_count": row_count,
        "quantity_from_dimensions": row_count > 0,
    }
    if rule is not None:
        data["rule"] = {"id": str(rule.id), "path": str(rule.path), "content": rule.content, "unit": rule.unit}
    return data


async def _check_section(db: AsyncSession, section_id: Optional[str], project_id: str) -> None:
    if not section_id:
        return
    result = await db.execute(select(ProjectSection).where(ProjectSection.id == section_id))
    section = result.scalar_one_or_none()
    if not section or str(section.project_id) != str(project_id):
        raise HTTPException(status_code=400, detail="Section does not belong to this project")


async def _row_count(db: AsyncSession, bq_item_id: str) -> int:
    result = await db.execute(
        select(func.count(DimensionSheetRow.id)).where(DimensionSheetRow.bq_item_id == bq_item_id)
    )
    return int(result.scalar() or 0)


async def _load_item(db: AsyncSession, item_id: str, user: User) -> BQItem:
    result = await db.execute(select(BQItem).where(BQItem.id == item_id))
    item = result.scalar_one_or_none()
    if not item:
        raise HTTPException(status_code=404, detail="BQ item not found")
    await load_project_for_org(db, item.project_id, str(user.organization_id))
    return item


@router.get("")
async def list_items(
    project_id: str = Query(..., alias="projectId"),
    section_id: Optional[str] = Query(None, alias="sectionId"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await load_project_for_org(db, project_id, str(current_user.organization_id))
    query = select(BQItem, NrmRule).outerjoin(NrmRule, BQItem.nrm_rule_id == NrmRule.id).where(
        BQItem.project_id == project_id
    )
    if section_id:
        query = query.where(BQItem.section_id == section_id)
    result = await db.execute(query.order_by(BQItem.sort_order, BQItem.created_at))
    rows = result.all()

    counts_result = await db.execute(
        select(DimensionSheetRow.bq_item_id, func.count(DimensionSheetRow.id))
        .join(BQItem, DimensionSheetRow.bq_item_id == BQItem.id)
        .where(BQItem.project_id == project_id)
        .group_by(DimensionSheetRow.bq_item_id)
    )
    counts = {str(k): int(v) for k, v in counts_result.all()}
    return {"items": [serialize_item(item, rule, counts.get(str(item.id), 0)) for item, rule in rows]}


@router.post("", status_code=201)
async def create_item(
    req: BQItemCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    project = await load_project_for_org(db, req.project_id, str(current_user.organization_id))
    await _check_section(db, req.section_id, project.id)

    rule = None
    if req.nrm_rule_id:
        result = await db.execute(select(NrmRule).where(NrmRule.id == req.nrm_rule_id))
        rule = result.scalar_one_or_none()
        if not rule:
            raise HTTPException(status_code=404, detail="NRM rule not found")

    try:
        unit = normalize_unit(req.unit if req.unit is not None else (rule.unit if rule else None))
        rate = normalize_rate(req.rate)
        quantity = to_decimal(req.quantity, "quantity") or Decimal("0")
    except ValidationError as e:
        raise http_error(e)

    max_result = await db.execute(
        select(func.max(BQItem.sort_order)).where(BQItem.project_id == project.id)
    )
    next_order = (max_result.scalar() or 0) + 1

    item = BQItem(
        project_id=project.id,
        section_id=req.section_id or None,
        nrm_rule_id=req.nrm_rule_id,
        quantity=quantity,
        unit=unit,
        rate=rate,
        amount=compute_amount(quantity, rate),
        description_custom=req.description_custom,
        notes=req.notes,
        sort_order=next_order,
    )
    db.add(item)
    await db.commit()
    await db.refresh(item)
    logger.info("BQ item %s created in project %s", item.id, project.id, extra={"bq_item_id": str(item.id)})
    return {"item": serialize_item(item, rule)}


@router.patch("/{item_id}")
async def update_item(
    item_id: str,
    req: BQItemPatch,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _load_item(db, item_id, current_user)
    patch = req.model_dump(exclude_unset=True)
    row_count = await _row_count(db, item.id)

    try:
        if "unit" in patch:
            item.unit = normalize_unit(patch["unit"])
        if "rate" in patch:
            item.rate = normalize_rate(patch["rate"])
        if "quantity" in patch:
            if row_count:
                raise ValidationError(
                    "Quantity is derived from the dimension sheet for this item",
                    bq_item_id=str(item.id), dimension_count=row_count,
                )
            item.quantity = to_decimal(patch["quantity"], "quantity") or Decimal("0")
    except TakingOffError as e:
        raise http_error(e)

    if "section_id" in patch:
        await _check_section(db, patch["section_id"], item.project_id)
        item.section_id = patch["section_id"] or None
    for name in ("description_custom", "notes", "sort_order"):
        if name in patch:
            setattr(item, name, patch[name])

    await recompute_bq_item(db, item)
    await db.commit()
    await db.refresh(item)
    return {"item": serialize_item(item, row_count=row_count)}


@router.delete("/{item_id}")
async def delete_item(
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(BQItem).where(BQItem.id == item_id))
    item = result.scalar_one_or_none()
    if not item:
        return {"success": True, "deleted": False}
    await load_project_for_org(db, item.project_id, str(current_user.organization_id))
    await db.delete(item)
    await db.commit()
    logger.info("BQ item %s deleted", item_id, extra={"bq_item_id": item_id})
    return {"success": True, "deleted": True}
