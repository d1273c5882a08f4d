from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from chantier.app.db.models.core_types import AlertStatus, AlertType, TransitionKind


class AlertRuleRead(BaseModel):
    id: int
    material_id: int
    project_id: int | None
    alert_type: AlertType
    threshold: float | None
    enabled: bool

    class Config:
        from_attributes = True


class AlertStateRead(BaseModel):
    rule_id: int
    status: AlertStatus
    triggered_at: datetime | None
    cleared_at: datetime | None
    acknowledged_at: datetime | None

    class Config:
        from_attributes = True


class TriggeredAlertRead(BaseModel):
    rule_id: int
    alert_type: AlertType
    threshold: float | None
    quantity: float
    days_to_expiry: int | None = None

    class Config:
        from_attributes = True


class AlertTransitionRead(BaseModel):
    rule_id: int
    kind: TransitionKind
    previous_status: AlertStatus
    state: AlertStateRead
    alert: TriggeredAlertRead | None = None

    class Config:
        from_attributes = True
