"""ORM Models for the tender backend: SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Numeric, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from tender_app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── ORGANIZATIONS / USERS ─────────────────────────────────────────────────────
# Identity is issued by the external auth provider; these rows only carry
# organization scoping and the admin flag.
class Organization(Base):
    __tablename__ = "organizations"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    users: Mapped[list["User"]] = relationship("User", back_populates="organization")
    projects: Mapped[list["Project"]] = relationship("Project", back_populates="organization")


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    organization_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("organizations.id"))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    organization: Mapped[Optional["Organization"]] = relationship("Organization", back_populates="users")


# ── PROJECTS ──────────────────────────────────────────────────────────────────
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    organization_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("organizations.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="Draft")
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    organization: Mapped["Organization"] = relationship("Organization", back_populates="projects")
    sections: Mapped[list["ProjectSection"]] = relationship(
        "ProjectSection", back_populates="project", cascade="all, delete-orphan"
    )
    bq_items: Mapped[list["BQItem"]] = relationship(
        "BQItem", back_populates="project", cascade="all, delete-orphan"
    )


class ProjectSection(Base):
    __tablename__ = "project_sections"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    code: Mapped[Optional[str]] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color_hex: Mapped[Optional[str]] = mapped_column(String(10))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    project: Mapped["Project"] = relationship("Project", back_populates="sections")


# ── NRM2 CLASSIFICATION ───────────────────────────────────────────────────────
class NrmSection(Base):
    __tablename__ = "nrm_sections"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    rules: Mapped[list["NrmRule"]] = relationship(
        "NrmRule", back_populates="section", cascade="all, delete-orphan"
    )


class NrmRule(Base):
    """
    One classification entry. ``path`` is a dot-delimited materialized path
    (text, never a native tree type); ``level`` and ``parent_path`` are
    redundant bookkeeping that may have drifted on legacy rows.
    """
    __tablename__ = "nrm_rules"
    __table_args__ = (
        UniqueConstraint("section_id", "path", name="uq_nrm_rule_section_path"),
        Index("ix_nrm_rules_section_level", "section_id", "level"),
    )
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    section_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("nrm_sections.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(String(255), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_path: Mapped[Optional[str]] = mapped_column(String(255))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    measurement_logic: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    coverage_rules: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    examples: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    section: Mapped["NrmSection"] = relationship("NrmSection", back_populates="rules")


# ── BILL OF QUANTITIES ────────────────────────────────────────────────────────
class BQItem(Base):
    __tablename__ = "bill_of_quantities"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    section_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("project_sections.id", ondelete="SET NULL")
    )
    nrm_rule_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("nrm_rules.id"))
    # Derived from dimension rows when any exist, otherwise entered directly
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=Decimal("0"))
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    description_custom: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="bq_items")
    rule: Mapped[Optional["NrmRule"]] = relationship("NrmRule")
    dimensions: Mapped[list["DimensionSheetRow"]] = relationship(
        "DimensionSheetRow",
        back_populates="bq_item",
        cascade="all, delete-orphan",
        order_by="DimensionSheetRow.sort_order",
    )


class DimensionSheetRow(Base):
    __tablename__ = "dimension_sheets"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    bq_item_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("bill_of_quantities.id", ondelete="CASCADE"), index=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, default="")
    timesing: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), default=Decimal("1"))
    dim_a: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4))
    dim_b: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4))
    dim_c: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4))
    waste: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4), default=Decimal("0"))
    is_deduction: Mapped[bool] = mapped_column(Boolean, default=False)
    # Server-computed, authoritative over any client echo
    calculated_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=Decimal("0"))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    bq_item: Mapped["BQItem"] = relationship("BQItem", back_populates="dimensions")
