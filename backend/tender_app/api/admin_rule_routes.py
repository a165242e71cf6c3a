"""
Admin rule CMS: create / edit / delete NRM2 rules.

Creation accepts either an explicit path + level, or an anchor rule with
``mode`` child|sibling and a short code from which the path is computed.
Existing rules are never renumbered or re-parented.
"""
import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from tender_app.db import get_db
from tender_app.api.deps import require_admin, http_error
from tender_app.api.rule_routes import get_section, load_hierarchy
from tender_app.models.orm_models import NrmRule, User
from tender_app.services.errors import ConflictError, TakingOffError, ValidationError
from tender_app.services.rule_hierarchy import MODE_CHILD, MODE_SIBLING

router = APIRouter(prefix="/api/admin/nrm-rules", tags=["Admin"])
logger = logging.getLogger("tender-rules")

_CONTENT_FIELDS = ("content", "unit", "measurement_logic", "coverage_rules", "examples", "notes")


class RuleCreate(BaseModel):
    section_id: str
    content: str
    # raw form
    path: Optional[str] = None
    level: Optional[int] = None
    parent_path: Optional[str] = None
    # anchor form
    anchor_rule_id: Optional[str] = None
    mode: Optional[str] = None
    code: Optional[str] = None
    unit: Optional[str] = None
    measurement_logic: Optional[Dict[str, Any]] = None
    coverage_rules: Optional[List[Any]] = None
    examples: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class RulePatch(BaseModel):
    content: Optional[str] = None
    unit: Optional[str] = None
    measurement_logic: Optional[Dict[str, Any]] = None
    coverage_rules: Optional[List[Any]] = None
    examples: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"extra": "forbid", "alias_generator": to_camel, "populate_by_name": True}


@router.get("")
async def list_tree(
    section_id: str = Query(..., alias="sectionId"),
    expanded: Optional[List[str]] = Query(None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Tree view for the CMS. Without ``expanded`` every parent is opened, so
    rules with drifted bookkeeping are visible rather than hidden.
    """
    await get_section(db, section_id)
    hierarchy = await load_hierarchy(db, section_id)
    hierarchy.annotate_child_counts()
    if expanded is not None:
        # ?expanded=1,1.2 and ?expanded=1&expanded=1.2 are equivalent
        open_paths = [p.strip() for value in expanded for p in value.split(",") if p.strip()]
    else:
        open_paths = sorted(hierarchy.auto_expand_paths())
    return {
        "rules": [n.to_dict() for n in hierarchy.visible_rules(open_paths)],
        "expanded": list(open_paths),
        "total": len(hierarchy),
        "drift": hierarchy.drift_report(),
    }


@router.post("", status_code=201)
async def create_rule(
    req: RuleCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not req.content or not req.content.strip():
        raise HTTPException(status_code=400, detail="content is required")
    await get_section(db, req.section_id)
    hierarchy = await load_hierarchy(db, req.section_id)

    try:
        if req.mode or req.anchor_rule_id or req.code:
            if req.mode not in (MODE_CHILD, MODE_SIBLING):
                raise ValidationError("mode must be 'child' or 'sibling'", mode=req.mode)
            anchor = None
            if req.anchor_rule_id:
                anchor = hierarchy.find_by_id(req.anchor_rule_id)
                if anchor is None:
                    raise HTTPException(status_code=404, detail="Anchor rule not found in this section")
            plan = hierarchy.plan_insertion(anchor, req.mode, req.code)
        else:
            if not req.path or req.level is None:
                raise ValidationError(
                    "Missing required fields: sectionId, path, level, content",
                    path=req.path, level=req.level,
                )
            plan = hierarchy.plan_explicit(req.path, req.level, req.parent_path)
    except TakingOffError as e:
        raise http_error(e)

    content = {name: getattr(req, name) for name in _CONTENT_FIELDS}
    content["content"] = req.content.strip()
    rule = NrmRule(
        section_id=req.section_id,
        path=plan.path,
        level=plan.level,
        parent_path=plan.parent_path,
        content=content["content"],
        unit=content["unit"],
        measurement_logic=content["measurement_logic"] or {},
        coverage_rules=content["coverage_rules"] or [],
        examples=content["examples"],
        notes=content["notes"],
    )
    db.add(rule)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent insert of the same path
        await db.rollback()
        raise http_error(ConflictError(
            f'A rule with path "{plan.path}" already exists in this section',
            path=plan.path, section_id=req.section_id, level=plan.level,
        ))
    await db.refresh(rule)
    logger.info(
        "Rule %s (level %s) created by %s", plan.path, plan.level, admin.email,
        extra={"section_id": req.section_id, "match_strategy": plan.mode or "explicit"},
    )
    return {
        "rule": {
            "id": rule.id,
            "section_id": rule.section_id,
            "path": rule.path,
            "level": rule.level,
            "parent_path": rule.parent_path,
            "content": rule.content,
            "unit": rule.unit,
        },
        "warnings": plan.warnings,
    }


@router.patch("/{rule_id}")
async def update_rule(
    rule_id: str,
    req: RulePatch,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Content fields only; path, level and parent are immutable here."""
    result = await db.execute(select(NrmRule).where(NrmRule.id == rule_id))
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    patch = req.model_dump(exclude_unset=True)
    if "content" in patch and not (patch["content"] or "").strip():
        raise HTTPException(status_code=400, detail="content cannot be empty")
    for name, value in patch.items():
        if name in ("measurement_logic", "coverage_rules") and value is None:
            value = {} if name == "measurement_logic" else []
        setattr(rule, name, value)
    await db.commit()
    logger.info("Rule %s updated by %s: %s", rule.path, admin.email, sorted(patch))
    return {"success": True, "updated": sorted(patch)}


@router.delete("/{rule_id}")
async def delete_rule(
    rule_id: str,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deletes the rule and every rule beneath it by path prefix."""
    result = await db.execute(select(NrmRule).where(NrmRule.id == rule_id))
    rule = result.scalar_one_or_none()
    if not rule:
        return {"success": True, "deleted": []}
    hierarchy = await load_hierarchy(db, rule.section_id)
    doomed = [n.id for n in hierarchy.descendants(rule.path)] + [rule.id]
    await db.execute(delete(NrmRule).where(NrmRule.id.in_(doomed)))
    await db.commit()
    logger.info(
        "Rule %s deleted by %s with %d descendant(s)", rule.path, admin.email, len(doomed) - 1,
        extra={"section_id": str(rule.section_id)},
    )
    return {"success": True, "deleted": [str(i) for i in doomed]}
