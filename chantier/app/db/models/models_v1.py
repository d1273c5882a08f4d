from __future__ import annotations

from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chantier.app.db.base import Base
from chantier.app.db.models.core_types import (
    AlertStatus,
    AlertType,
    MaterialStatus,
    OperationType,
)

# SQLite n'autorise l'autoincrement que sur INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- MASTER DATA ----------
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Material(Base):
    __tablename__ = "materials"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    dimension: Mapped[str | None] = mapped_column(String(64))
    unit: Mapped[str] = mapped_column(String(32), default="unit", nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    manufacturer: Mapped[str | None] = mapped_column(String(128))
    cost_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    min_stock_level: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    max_stock_level: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    # Date de péremption connue (ciment, adjuvants, mastics...)
    expires_on: Mapped[date | None] = mapped_column(Date)
    barcode: Mapped[str | None] = mapped_column(String(64), unique=True)
    status: Mapped[MaterialStatus] = mapped_column(
        Enum(MaterialStatus, name="material_status"),
        default=MaterialStatus.active,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("cost_per_unit IS NULL OR cost_per_unit >= 0", name="ck_material_cost_nonneg"),
    )


# ---------- LEDGER ----------
class MaterialOperation(Base):
    """Fait immuable : jamais modifié, une édition = nouvelle opération (supersedes_id)."""

    __tablename__ = "material_operations"
    id: Mapped[int] = mapped_column(PK, primary_key=True)

    material_id: Mapped[int] = mapped_column(
        ForeignKey("materials.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # NULL = stock entrepôt
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="RESTRICT"))

    operation_type: Mapped[OperationType] = mapped_column(
        Enum(OperationType, name="operation_type"),
        nullable=False,
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    location: Mapped[str | None] = mapped_column(String(128))
    notes: Mapped[str | None] = mapped_column(Text)
    qr_code: Mapped[str | None] = mapped_column(String(128))

    supersedes_id: Mapped[int | None] = mapped_column(
        ForeignKey("material_operations.id", ondelete="RESTRICT"),
        unique=True,
    )

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[int | None] = mapped_column(BigInteger)

    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    material: Mapped[Material] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_material_operation_qty_pos"),
        CheckConstraint("unit_price IS NULL OR unit_price >= 0", name="ck_material_operation_price_nonneg"),
        Index("ix_material_operations_scope_time", "material_id", "project_id", "occurred_at"),
    )


class StockLevel(Base):
    """
    Cache de l'état dérivé par scope (material_id, project_id).
    last_operation_id sert de jeton de concurrence (compare-and-set).
    """

    __tablename__ = "stock_levels"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    # "<material_id>:<project_id|wh>" : project_id NULL ne passe pas dans un UNIQUE
    scope_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    material_id: Mapped[int] = mapped_column(ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="RESTRICT"))

    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    last_operation_id: Mapped[int | None] = mapped_column(BigInteger)
    # incrémentée à chaque écriture (append / delete) : jeton compare-and-set
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_recomputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


# ---------- ALERTS ----------
class StockAlertRule(Base):
    __tablename__ = "stock_alert_rules"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    material_id: Mapped[int] = mapped_column(
        ForeignKey("materials.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"))
    alert_type: Mapped[AlertType] = mapped_column(Enum(AlertType, name="alert_type"), nullable=False)
    # quantité (low_stock) ou jours avant péremption (expiring)
    threshold: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    state: Mapped[StockAlertState | None] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        uselist=False,
    )

    __table_args__ = (
        CheckConstraint("threshold IS NULL OR threshold >= 0", name="ck_alert_rule_threshold_nonneg"),
    )


class StockAlertState(Base):
    __tablename__ = "stock_alert_states"
    rule_id: Mapped[int] = mapped_column(
        ForeignKey("stock_alert_rules.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, name="alert_status"),
        default=AlertStatus.inactive,
        nullable=False,
    )
    triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    rule: Mapped[StockAlertRule] = relationship(back_populates="state")


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
