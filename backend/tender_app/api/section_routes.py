"""Project section roll-ups."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from tender_app.db import get_db
from tender_app.api.deps import get_organization_id, load_project_for_org
from tender_app.models.orm_models import BQItem, ProjectSection
from tender_app.services.bq_engine import summarize_sections

router = APIRouter(prefix="/api/sections", tags=["Sections"])


@router.get("/summaries")
async def section_summaries(
    project_id: str = Query(..., alias="projectId"),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    """Per-section totals, an unsectioned bucket and the project grand total."""
    await load_project_for_org(db, project_id, organization_id)

    sections = (await db.execute(
        select(ProjectSection).where(ProjectSection.project_id == project_id)
    )).scalars().all()
    items = (await db.execute(
        select(BQItem.id, BQItem.section_id, BQItem.amount).where(BQItem.project_id == project_id)
    )).all()

    summary = summarize_sections(
        [{"id": s.id, "name": s.name, "code": s.code, "sort_order": s.sort_order} for s in sections],
        [{"id": i.id, "section_id": i.section_id, "amount": i.amount} for i in items],
    )
    return summary.to_dict()
