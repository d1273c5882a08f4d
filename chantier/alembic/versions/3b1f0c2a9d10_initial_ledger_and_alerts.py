"""initial schema: materials, operation ledger, stock levels, alert rules/states

Revision ID: 3b1f0c2a9d10
Revises:
Create Date: 2026-09-14
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f0c2a9d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Les Enum SQLAlchemy stockent le NOM du membre
operation_type = sa.Enum("reception", "consumption", "return_", name="operation_type")
alert_type = sa.Enum("low_stock", "out_of_stock", "expiring", name="alert_type")
alert_status = sa.Enum("inactive", "triggered", "acknowledged", name="alert_status")
material_status = sa.Enum("active", "inactive", "archived", name="material_status")


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "materials",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("dimension", sa.String(64)),
        sa.Column("unit", sa.String(32), nullable=False, server_default="unit"),
        sa.Column("category", sa.String(64)),
        sa.Column("manufacturer", sa.String(128)),
        sa.Column("cost_per_unit", sa.Numeric(14, 2)),
        sa.Column("min_stock_level", sa.Numeric(14, 3)),
        sa.Column("max_stock_level", sa.Numeric(14, 3)),
        sa.Column("expires_on", sa.Date()),
        sa.Column("barcode", sa.String(64), unique=True),
        sa.Column("status", material_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("cost_per_unit IS NULL OR cost_per_unit >= 0", name="ck_material_cost_nonneg"),
    )

    op.create_table(
        "material_operations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("material_id", sa.BigInteger(), sa.ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("project_id", sa.BigInteger(), sa.ForeignKey("projects.id", ondelete="RESTRICT")),
        sa.Column("operation_type", operation_type, nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2)),
        sa.Column("location", sa.String(128)),
        sa.Column("notes", sa.Text()),
        sa.Column("qr_code", sa.String(128)),
        sa.Column(
            "supersedes_id",
            sa.BigInteger(),
            sa.ForeignKey("material_operations.id", ondelete="RESTRICT"),
            unique=True,
        ),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("quantity > 0", name="ck_material_operation_qty_pos"),
        sa.CheckConstraint("unit_price IS NULL OR unit_price >= 0", name="ck_material_operation_price_nonneg"),
    )
    op.create_index("ix_material_operations_material_id", "material_operations", ["material_id"])
    op.create_index(
        "ix_material_operations_scope_time",
        "material_operations",
        ["material_id", "project_id", "occurred_at"],
    )

    # Pas de CHECK quantity >= 0 : le backorder (allow_negative) est une politique appelante
    op.create_table(
        "stock_levels",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("scope_key", sa.String(64), nullable=False, unique=True),
        sa.Column("material_id", sa.BigInteger(), sa.ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("project_id", sa.BigInteger(), sa.ForeignKey("projects.id", ondelete="RESTRICT")),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("last_operation_id", sa.BigInteger()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_recomputed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "stock_alert_rules",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("material_id", sa.BigInteger(), sa.ForeignKey("materials.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.BigInteger(), sa.ForeignKey("projects.id", ondelete="CASCADE")),
        sa.Column("alert_type", alert_type, nullable=False),
        sa.Column("threshold", sa.Numeric(14, 3)),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("threshold IS NULL OR threshold >= 0", name="ck_alert_rule_threshold_nonneg"),
    )
    op.create_index("ix_stock_alert_rules_material_id", "stock_alert_rules", ["material_id"])

    op.create_table(
        "stock_alert_states",
        sa.Column(
            "rule_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_alert_rules.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("status", alert_status, nullable=False, server_default="inactive"),
        sa.Column("triggered_at", sa.DateTime(timezone=True)),
        sa.Column("cleared_at", sa.DateTime(timezone=True)),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("actor_id", sa.BigInteger()),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("stock_alert_states")
    op.drop_index("ix_stock_alert_rules_material_id", table_name="stock_alert_rules")
    op.drop_table("stock_alert_rules")
    op.drop_table("stock_levels")
    op.drop_index("ix_material_operations_scope_time", table_name="material_operations")
    op.drop_index("ix_material_operations_material_id", table_name="material_operations")
    op.drop_table("material_operations")
    op.drop_table("materials")
    op.drop_table("projects")

    bind = op.get_bind()
    for enum in (alert_status, alert_type, operation_type, material_status):
        enum.drop(bind, checkfirst=True)
