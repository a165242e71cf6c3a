"""taking_off_schema

Revision ID: 001_taking_off
Revises:
Create Date: 2026-10-19

Creates the taking-off tables:
- organizations, users, projects, project_sections
- nrm_sections, nrm_rules (unique path per section)
- bill_of_quantities
- dimension_sheets

All DDL is guarded by existence checks so the migration is idempotent:
safe to run even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects import postgresql

revision = '001_taking_off'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

UUID = postgresql.UUID(as_uuid=False)


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _index_exists(conn, index_name: str) -> bool:
    result = conn.execute(
        text("SELECT EXISTS(SELECT 1 FROM pg_indexes WHERE indexname = :iname)"),
        {"iname": index_name},
    )
    return bool(result.scalar())


def _create(conn, name: str, *columns) -> None:
    if not _table_exists(conn, name):
        op.create_table(name, *columns)
        logger.info(f"Created table: {name}")
    else:
        logger.info(f"Table {name} already exists, skipping create")


def upgrade() -> None:
    conn = op.get_bind()

    # ── organizations / users ─────────────────────────────────────────────────
    _create(
        conn, 'organizations',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'users',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('organization_id', UUID, sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_admin', sa.Boolean, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── projects ──────────────────────────────────────────────────────────────
    _create(
        conn, 'projects',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('organization_id', UUID, sa.ForeignKey('organizations.id')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), server_default='Draft'),
        sa.Column('created_by', UUID, sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'project_sections',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('project_id', UUID, sa.ForeignKey('projects.id', ondelete='CASCADE'), index=True),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('color_hex', sa.String(10), nullable=True),
        sa.Column('sort_order', sa.Integer, server_default='0'),
    )

    # ── NRM2 classification ───────────────────────────────────────────────────
    _create(
        conn, 'nrm_sections',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('code', sa.String(20), nullable=False, unique=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('sort_order', sa.Integer, server_default='0'),
    )
    _create(
        conn, 'nrm_rules',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('section_id', UUID, sa.ForeignKey('nrm_sections.id', ondelete='CASCADE'), nullable=False),
        sa.Column('path', sa.String(255), nullable=False),
        sa.Column('level', sa.Integer, nullable=False),
        sa.Column('parent_path', sa.String(255), nullable=True),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('unit', sa.String(20), nullable=True),
        sa.Column('measurement_logic', postgresql.JSONB, nullable=True),
        sa.Column('coverage_rules', postgresql.JSONB, nullable=True),
        sa.Column('examples', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('section_id', 'path', name='uq_nrm_rule_section_path'),
    )
    if not _index_exists(conn, 'ix_nrm_rules_section_level'):
        op.create_index('ix_nrm_rules_section_level', 'nrm_rules', ['section_id', 'level'])

    # ── bill of quantities ────────────────────────────────────────────────────
    _create(
        conn, 'bill_of_quantities',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('project_id', UUID, sa.ForeignKey('projects.id', ondelete='CASCADE'), index=True),
        sa.Column('section_id', UUID, sa.ForeignKey('project_sections.id', ondelete='SET NULL'), nullable=True),
        sa.Column('nrm_rule_id', UUID, sa.ForeignKey('nrm_rules.id'), nullable=True),
        sa.Column('quantity', sa.Numeric(18, 4), server_default='0'),
        sa.Column('unit', sa.String(20), nullable=False),
        sa.Column('rate', sa.Numeric(14, 2), nullable=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('description_custom', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('sort_order', sa.Integer, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── dimension sheets ──────────────────────────────────────────────────────
    _create(
        conn, 'dimension_sheets',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('bq_item_id', UUID, sa.ForeignKey('bill_of_quantities.id', ondelete='CASCADE'), index=True),
        sa.Column('description', sa.Text, server_default=''),
        sa.Column('timesing', sa.Numeric(14, 4), server_default='1'),
        sa.Column('dim_a', sa.Numeric(14, 4), nullable=True),
        sa.Column('dim_b', sa.Numeric(14, 4), nullable=True),
        sa.Column('dim_c', sa.Numeric(14, 4), nullable=True),
        sa.Column('waste', sa.Numeric(8, 4), server_default='0'),
        sa.Column('is_deduction', sa.Boolean, server_default=sa.false()),
        sa.Column('calculated_value', sa.Numeric(18, 4), server_default='0'),
        sa.Column('sort_order', sa.Integer, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    conn = op.get_bind()
    for table in [
        'dimension_sheets', 'bill_of_quantities', 'nrm_rules', 'nrm_sections',
        'project_sections', 'projects', 'users', 'organizations',
    ]:
        if _table_exists(conn, table):
            op.drop_table(table)
            logger.info(f"Dropped table: {table}")
