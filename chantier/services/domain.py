"""
Types du domaine (purs, immuables).

Les modèles SQLAlchemy vivent dans chantier.app.db.models ; ici on ne manipule
que des snapshots déjà chargés en mémoire. Aucune I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from chantier.app.db.models.core_types import AlertStatus, AlertType, OperationType, TransitionKind
from chantier.services.errors import NegativeBalanceError, ValidationError

Scope = tuple[int, int | None]


@dataclass(frozen=True)
class MaterialOperation:
    id: int
    material_id: int
    project_id: int | None
    type: OperationType
    quantity: Decimal
    occurred_at: datetime
    created_by: int | None = None
    unit_price: Decimal | None = None
    location: str | None = None
    notes: str | None = None
    qr_code: str | None = None
    supersedes_id: int | None = None

    @property
    def scope(self) -> Scope:
        return (self.material_id, self.project_id)


@dataclass(frozen=True)
class NewMaterialOperation:
    material_id: int
    project_id: int | None
    type: OperationType | str
    quantity: Decimal
    occurred_at: datetime
    created_by: int | None = None
    unit_price: Decimal | None = None
    location: str | None = None
    notes: str | None = None
    qr_code: str | None = None
    supersedes_id: int | None = None

    # Pas encore d'id : le ledger le trie après les opérations persistées
    id = None

    @property
    def scope(self) -> Scope:
        return (self.material_id, self.project_id)


@dataclass(frozen=True)
class RunningBalance:
    operation_id: int | None
    type: OperationType
    occurred_at: datetime
    delta: Decimal
    balance: Decimal


@dataclass(frozen=True)
class Ledger:
    quantity: Decimal
    history: tuple[RunningBalance, ...] = ()
    last_operation_id: int | None = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Opérations d'un scope + jeton de concurrence vu au moment du fetch."""

    operations: tuple[MaterialOperation, ...] = ()
    last_operation_id: int | None = None
    revision: int = 0


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    operation: NewMaterialOperation | None = None
    balance_after: Decimal | None = None
    quantity: Decimal | None = None
    errors: tuple[ValidationError | NegativeBalanceError, ...] = ()

    @property
    def reason(self) -> str | None:
        return self.errors[0].reason if self.errors else None


@dataclass(frozen=True)
class MaterialStockState:
    material_id: int
    project_id: int | None
    quantity: Decimal
    last_operation_id: int | None = None
    last_recomputed_at: datetime | None = None
    expires_on: date | None = None


@dataclass(frozen=True)
class StockAlertRule:
    id: int
    material_id: int
    alert_type: AlertType
    threshold: Decimal | None
    enabled: bool = True
    project_id: int | None = None


@dataclass(frozen=True)
class StockAlertState:
    rule_id: int
    status: AlertStatus = AlertStatus.inactive
    triggered_at: datetime | None = None
    cleared_at: datetime | None = None
    acknowledged_at: datetime | None = None


@dataclass(frozen=True)
class TriggeredAlert:
    rule_id: int
    material_id: int
    project_id: int | None
    alert_type: AlertType
    threshold: Decimal | None
    quantity: Decimal
    days_to_expiry: int | None = None


@dataclass(frozen=True)
class AlertTransition:
    rule_id: int
    kind: TransitionKind
    previous_status: AlertStatus
    state: StockAlertState
    alert: TriggeredAlert | None = None


@dataclass(frozen=True)
class RecordResult:
    accepted: bool
    operation_id: int | None = None
    balance: Decimal | None = None
    reason: str | None = None
    errors: tuple[ValidationError | NegativeBalanceError, ...] = ()
    transitions: list[AlertTransition] = field(default_factory=list)
