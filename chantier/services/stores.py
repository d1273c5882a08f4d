"""
Collaborateurs de persistance.

Le noyau (ledger / validator / alerts / reconciler) ne voit que les protocoles.
Les implémentations SQLAlchemy ci-dessous font flush() mais jamais commit() :
la transaction appartient à l'appelant (endpoint).
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.db.models import models_v1 as m
from chantier.app.db.models.core_types import AlertStatus, AlertType, OperationType
from chantier.services.alerts import validate_rule
from chantier.services.domain import (
    LedgerSnapshot,
    MaterialOperation,
    MaterialStockState,
    NewMaterialOperation,
    StockAlertRule,
    StockAlertState,
)
from chantier.services.errors import ConfigurationError, ConflictError, InvalidTransitionError, NotFoundError


# ---------- Protocols ----------
class OperationStore(Protocol):
    def list_operations(self, material_id: int, project_id: int | None = None) -> list[MaterialOperation]: ...

    def snapshot(self, material_id: int, project_id: int | None = None) -> LedgerSnapshot: ...

    def get_operation(self, operation_id: int) -> MaterialOperation: ...

    def find_by_idempotency_key(self, key: str) -> MaterialOperation | None: ...

    def append_operation(
        self,
        candidate: NewMaterialOperation,
        *,
        expected_revision: int,
        idempotency_key: str | None = None,
    ) -> int: ...

    def delete_operation(self, operation_id: int, *, expected_revision: int, actor_id: int | None, reason: str | None) -> None: ...

    def get_expiry(self, material_id: int) -> date | None: ...

    def save_stock_state(self, state: MaterialStockState) -> None: ...


class AlertRuleStore(Protocol):
    def list_rules(self, material_id: int, project_id: int | None = None) -> list[StockAlertRule]: ...

    def get_rule(self, rule_id: int) -> StockAlertRule: ...

    def get_alert_state(self, rule_id: int) -> StockAlertState: ...

    def save_alert_state(self, state: StockAlertState) -> None: ...


# ---------- Helpers ----------
def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite rend des datetimes naïfs : on les considère UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def scope_key(material_id: int, project_id: int | None) -> str:
    return f"{int(material_id)}:{'wh' if project_id is None else int(project_id)}"


def _to_operation(row: m.MaterialOperation) -> MaterialOperation:
    return MaterialOperation(
        id=int(row.id),
        material_id=int(row.material_id),
        project_id=None if row.project_id is None else int(row.project_id),
        type=OperationType(row.operation_type),
        quantity=Decimal(row.quantity),
        occurred_at=as_utc(row.occurred_at),
        created_by=row.created_by,
        unit_price=row.unit_price,
        location=row.location,
        notes=row.notes,
        qr_code=row.qr_code,
        supersedes_id=row.supersedes_id,
    )


def _to_rule(row: m.StockAlertRule) -> StockAlertRule:
    return StockAlertRule(
        id=int(row.id),
        material_id=int(row.material_id),
        project_id=row.project_id,
        alert_type=AlertType(row.alert_type),
        threshold=None if row.threshold is None else Decimal(row.threshold),
        enabled=bool(row.enabled),
    )


def _to_state(row: m.StockAlertState) -> StockAlertState:
    return StockAlertState(
        rule_id=int(row.rule_id),
        status=AlertStatus(row.status),
        triggered_at=as_utc(row.triggered_at),
        cleared_at=as_utc(row.cleared_at),
        acknowledged_at=as_utc(row.acknowledged_at),
    )


# ---------- SQLAlchemy ----------
class SqlOperationStore:
    def __init__(self, db: Session):
        self.db = db

    def _scope_stmt(self, material_id: int, project_id: int | None):
        stmt = select(m.MaterialOperation).where(m.MaterialOperation.material_id == material_id)
        if project_id is None:
            return stmt.where(m.MaterialOperation.project_id.is_(None))
        return stmt.where(m.MaterialOperation.project_id == project_id)

    def _stock_level(self, material_id: int, project_id: int | None, *, lock: bool = False) -> m.StockLevel | None:
        stmt = select(m.StockLevel).where(m.StockLevel.scope_key == scope_key(material_id, project_id))
        if lock:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def _get_or_create_stock_level(self, material_id: int, project_id: int | None) -> m.StockLevel:
        sl = self._stock_level(material_id, project_id, lock=True)
        if sl:
            return sl

        sl = m.StockLevel(
            scope_key=scope_key(material_id, project_id),
            material_id=material_id,
            project_id=project_id,
            quantity=Decimal(0),
            revision=0,
        )
        self.db.add(sl)
        self.db.flush()
        return sl

    def list_operations(self, material_id: int, project_id: int | None = None) -> list[MaterialOperation]:
        rows = (
            self.db.execute(
                self._scope_stmt(material_id, project_id).order_by(
                    m.MaterialOperation.occurred_at.asc(),
                    m.MaterialOperation.id.asc(),
                )
            )
            .scalars()
            .all()
        )
        return [_to_operation(r) for r in rows]

    def snapshot(self, material_id: int, project_id: int | None = None) -> LedgerSnapshot:
        sl = self._stock_level(material_id, project_id)
        return LedgerSnapshot(
            operations=tuple(self.list_operations(material_id, project_id)),
            last_operation_id=None if sl is None else sl.last_operation_id,
            revision=0 if sl is None else int(sl.revision),
        )

    def get_operation(self, operation_id: int) -> MaterialOperation:
        row = self.db.get(m.MaterialOperation, operation_id)
        if not row:
            raise NotFoundError(f"Operation {operation_id} not found")
        return _to_operation(row)

    def find_by_idempotency_key(self, key: str) -> MaterialOperation | None:
        row = self.db.execute(
            select(m.MaterialOperation).where(m.MaterialOperation.idempotency_key == key)
        ).scalar_one_or_none()
        return None if row is None else _to_operation(row)

    def get_expiry(self, material_id: int) -> date | None:
        material = self.db.get(m.Material, material_id)
        if not material:
            raise NotFoundError(f"Material {material_id} not found")
        return material.expires_on

    def append_operation(
        self,
        candidate: NewMaterialOperation,
        *,
        expected_revision: int,
        idempotency_key: str | None = None,
    ) -> int:
        # verrou + compare-and-set sur la révision du scope
        sl = self._get_or_create_stock_level(candidate.material_id, candidate.project_id)
        if int(sl.revision) != int(expected_revision):
            raise ConflictError(expected=expected_revision, actual=int(sl.revision))

        op = m.MaterialOperation(
            material_id=candidate.material_id,
            project_id=candidate.project_id,
            operation_type=OperationType(candidate.type),
            quantity=Decimal(candidate.quantity),
            unit_price=candidate.unit_price,
            location=candidate.location,
            notes=candidate.notes,
            qr_code=candidate.qr_code,
            supersedes_id=candidate.supersedes_id,
            occurred_at=as_utc(candidate.occurred_at),
            created_by=candidate.created_by,
            idempotency_key=idempotency_key,
        )
        self.db.add(op)
        self.db.flush()

        sl.last_operation_id = int(op.id)
        sl.revision = int(sl.revision) + 1
        return int(op.id)

    def delete_operation(
        self,
        operation_id: int,
        *,
        expected_revision: int,
        actor_id: int | None,
        reason: str | None,
    ) -> None:
        row = self.db.get(m.MaterialOperation, operation_id)
        if not row:
            raise NotFoundError(f"Operation {operation_id} not found")

        superseded_by = self.db.execute(
            select(m.MaterialOperation.id).where(m.MaterialOperation.supersedes_id == operation_id)
        ).scalar_one_or_none()
        if superseded_by is not None:
            raise InvalidTransitionError(
                f"Operation {operation_id} is superseded by {superseded_by}; delete the latest revision instead"
            )

        sl = self._get_or_create_stock_level(row.material_id, row.project_id)
        if int(sl.revision) != int(expected_revision):
            raise ConflictError(expected=expected_revision, actual=int(sl.revision))

        self.db.add(
            m.AuditLog(
                actor_id=actor_id,
                action="DELETE",
                entity_type="material_operation",
                entity_id=str(operation_id),
                meta=json.dumps(
                    {
                        "material_id": row.material_id,
                        "project_id": row.project_id,
                        "operation_type": OperationType(row.operation_type).value,
                        "quantity": str(row.quantity),
                        "occurred_at": as_utc(row.occurred_at).isoformat(),
                        "reason": reason,
                    }
                ),
            )
        )
        self.db.delete(row)
        sl.revision = int(sl.revision) + 1
        self.db.flush()

    def save_stock_state(self, state: MaterialStockState) -> None:
        sl = self._get_or_create_stock_level(state.material_id, state.project_id)
        sl.quantity = state.quantity
        sl.last_recomputed_at = state.last_recomputed_at
        self.db.flush()


class SqlAlertRuleStore:
    def __init__(self, db: Session):
        self.db = db

    def _row(self, rule_id: int) -> m.StockAlertRule:
        row = self.db.get(m.StockAlertRule, rule_id)
        if not row:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        return row

    def list_rules(self, material_id: int, project_id: int | None = None) -> list[StockAlertRule]:
        stmt = select(m.StockAlertRule).where(m.StockAlertRule.material_id == material_id)
        if project_id is None:
            stmt = stmt.where(m.StockAlertRule.project_id.is_(None))
        else:
            stmt = stmt.where(m.StockAlertRule.project_id == project_id)
        rows = self.db.execute(stmt.order_by(m.StockAlertRule.id)).scalars().all()
        return [_to_rule(r) for r in rows]

    def get_rule(self, rule_id: int) -> StockAlertRule:
        return _to_rule(self._row(rule_id))

    def create_rule(
        self,
        *,
        material_id: int,
        alert_type: AlertType | str,
        threshold,
        project_id: int | None = None,
        enabled: bool = True,
    ) -> StockAlertRule:
        kind, value = validate_rule(alert_type, threshold)
        if not self.db.get(m.Material, material_id):
            raise NotFoundError(f"Material {material_id} not found")
        if project_id is not None and not self.db.get(m.Project, project_id):
            raise NotFoundError(f"Project {project_id} not found")

        row = m.StockAlertRule(
            material_id=material_id,
            project_id=project_id,
            alert_type=kind,
            threshold=value,
            enabled=enabled,
        )
        self.db.add(row)
        self.db.flush()
        return _to_rule(row)

    def create_rules_for_project(self, project_id: int, *, percent=20) -> list[StockAlertRule]:
        """
        Règles low_stock pour chaque matériau ayant un max_stock_level :
        seuil = round(max_stock_level * percent / 100).
        Les matériaux qui ont déjà une règle low_stock sur ce projet sont ignorés.
        """
        try:
            pct = Decimal(str(percent))
        except InvalidOperation:
            raise ConfigurationError(f"Invalid percent {percent!r}") from None
        if not pct.is_finite() or pct <= 0 or pct > 100:
            raise ConfigurationError(f"Percent must be in ]0, 100] (got {percent})")
        if not self.db.get(m.Project, project_id):
            raise NotFoundError(f"Project {project_id} not found")

        covered = set(
            self.db.execute(
                select(m.StockAlertRule.material_id)
                .where(m.StockAlertRule.project_id == project_id)
                .where(m.StockAlertRule.alert_type == AlertType.low_stock)
            )
            .scalars()
            .all()
        )
        materials = (
            self.db.execute(
                select(m.Material).where(m.Material.max_stock_level.is_not(None)).order_by(m.Material.id)
            )
            .scalars()
            .all()
        )

        created = []
        for material in materials:
            if material.id in covered:
                continue
            threshold = (Decimal(material.max_stock_level) * pct / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
            created.append(
                self.create_rule(
                    material_id=material.id,
                    project_id=project_id,
                    alert_type=AlertType.low_stock,
                    threshold=threshold,
                )
            )
        return created

    def update_rule(self, rule_id: int, *, threshold=None, enabled: bool | None = None) -> StockAlertRule:
        row = self._row(rule_id)
        if threshold is not None:
            _, value = validate_rule(row.alert_type, threshold)
            row.threshold = value
        if enabled is not None:
            row.enabled = enabled
        self.db.flush()
        return _to_rule(row)

    def delete_rule(self, rule_id: int) -> None:
        self.db.delete(self._row(rule_id))
        self.db.flush()

    def get_alert_state(self, rule_id: int) -> StockAlertState:
        row = self.db.get(m.StockAlertState, rule_id)
        if row is None:
            return StockAlertState(rule_id=rule_id)
        return _to_state(row)

    def save_alert_state(self, state: StockAlertState) -> None:
        row = self.db.get(m.StockAlertState, state.rule_id)
        if row is None:
            row = m.StockAlertState(rule_id=state.rule_id)
            self.db.add(row)

        row.status = state.status
        row.triggered_at = state.triggered_at
        row.cleared_at = state.cleared_at
        row.acknowledged_at = state.acknowledged_at
        self.db.flush()
