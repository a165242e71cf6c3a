"""
NRM2 rule browser routes: read-only listing for estimators.

Rule rows are loaded per section into a RuleHierarchy; all parent/child
inference happens there, never in SQL.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from tender_app.db import get_db
from tender_app.api.deps import get_current_user, require_admin
from tender_app.models.orm_models import NrmRule, NrmSection, User
from tender_app.services.rule_hierarchy import RuleHierarchy

router = APIRouter(prefix="/api", tags=["NRM Rules"])
logger = logging.getLogger("tender-rules")


class NrmSectionCreate(BaseModel):
    code: str
    title: str
    sort_order: Optional[int] = None


def rule_to_mapping(rule: NrmRule) -> dict:
    return {
        "id": rule.id,
        "section_id": rule.section_id,
        "path": rule.path,
        "level": rule.level,
        "parent_path": rule.parent_path,
        "content": rule.content,
        "unit": rule.unit,
        "measurement_logic": rule.measurement_logic,
        "coverage_rules": rule.coverage_rules,
        "examples": rule.examples,
        "notes": rule.notes,
    }


async def get_section(db: AsyncSession, section_id: str) -> NrmSection:
    result = await db.execute(select(NrmSection).where(NrmSection.id == section_id))
    section = result.scalar_one_or_none()
    if not section:
        raise HTTPException(status_code=404, detail="NRM section not found")
    return section


async def load_hierarchy(db: AsyncSession, section_id: str) -> RuleHierarchy:
    result = await db.execute(
        select(NrmRule).where(NrmRule.section_id == section_id).order_by(NrmRule.path)
    )
    return RuleHierarchy([rule_to_mapping(r) for r in result.scalars().all()], section_id=section_id)


@router.get("/nrm-sections")
async def list_sections(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    counts = dict((await db.execute(
        select(NrmRule.section_id, func.count(NrmRule.id)).group_by(NrmRule.section_id)
    )).all())
    sections = (await db.execute(
        select(NrmSection).order_by(NrmSection.sort_order, NrmSection.code)
    )).scalars().all()
    return {
        "sections": [
            {
                "id": s.id,
                "code": s.code,
                "title": s.title,
                "sort_order": s.sort_order,
                "rule_count": int(counts.get(s.id, 0)),
            }
            for s in sections
        ]
    }


@router.post("/nrm-sections", status_code=201)
async def create_section(
    req: NrmSectionCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    code = req.code.strip()
    title = req.title.strip()
    if not code or not title:
        raise HTTPException(status_code=400, detail="code and title are required")
    existing = await db.execute(select(NrmSection).where(NrmSection.code == code))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f'Section "{code}" already exists')
    if req.sort_order is None:
        max_order = (await db.execute(select(func.max(NrmSection.sort_order)))).scalar() or 0
        sort_order = max_order + 1
    else:
        sort_order = req.sort_order
    section = NrmSection(code=code, title=title, sort_order=sort_order)
    db.add(section)
    await db.commit()
    await db.refresh(section)
    logger.info("NRM section %s created by %s", code, admin.email)
    return {"section": {"id": section.id, "code": section.code, "title": section.title, "sort_order": section.sort_order}}


@router.get("/nrm-rules")
async def list_rules(
    section_id: str = Query(..., alias="sectionId"),
    parent_path: Optional[str] = Query(None, alias="parentPath"),
    level: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    parentPath given → immediate children (with diagnostics on fallback);
    otherwise rules at ``level`` (or all), ordered by path.
    """
    await get_section(db, section_id)
    hierarchy = await load_hierarchy(db, section_id)
    resolution = hierarchy.list_rules(parent_path=parent_path, level=level)
    return {
        "rules": [n.to_dict() for n in resolution.children],
        "diagnostics": resolution.diagnostics(),
    }
