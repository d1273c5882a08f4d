from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.api.deps import get_clock, get_db, require_manager
from chantier.app.core.clock import Clock
from chantier.app.db.models.core_types import AlertStatus, AlertType
from chantier.app.db.models.models_v1 import Material, StockAlertRule, StockAlertState
from chantier.app.schemas.alerts import AlertRuleRead, AlertTransitionRead
from chantier.services import inventory
from chantier.services.errors import ConfigurationError, InvalidTransitionError, NotFoundError
from chantier.services.stores import SqlAlertRuleStore, SqlOperationStore, as_utc

router = APIRouter(prefix="/stock-alerts")


# ---------- Schemas ----------
class RuleCreate(BaseModel):
    material_id: int
    project_id: int | None = None
    # validé côté domaine (ConfigurationError), pas par pydantic
    alert_type: str
    threshold: Decimal | None = None
    enabled: bool = True


class ProjectRulesCreate(BaseModel):
    percent: Decimal = Decimal(20)


class RuleUpdate(BaseModel):
    threshold: Decimal | None = None
    enabled: bool | None = None


class AlertCheck(BaseModel):
    material_id: int
    project_id: int | None = None


# ---------- Rules ----------
@router.get("/rules")
def list_rules(
    material_id: int | None = None,
    project_id: int | None = None,
    enabled: bool | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(StockAlertRule, StockAlertState).outerjoin(
        StockAlertState, StockAlertState.rule_id == StockAlertRule.id
    )
    if material_id is not None:
        stmt = stmt.where(StockAlertRule.material_id == material_id)
    if project_id is not None:
        stmt = stmt.where(StockAlertRule.project_id == project_id)
    if enabled is not None:
        stmt = stmt.where(StockAlertRule.enabled == enabled)

    rows = db.execute(stmt.order_by(StockAlertRule.id)).all()
    return [
        {
            **AlertRuleRead.model_validate(rule).model_dump(mode="json"),
            "status": (state.status if state else AlertStatus.inactive).value,
            "triggered_at": as_utc(state.triggered_at) if state else None,
        }
        for rule, state in rows
    ]


@router.post("/rules", status_code=201)
def create_rule(
    payload: RuleCreate,
    db: Session = Depends(get_db),
    _role=Depends(require_manager),
):
    store = SqlAlertRuleStore(db)
    try:
        rule = store.create_rule(
            material_id=payload.material_id,
            project_id=payload.project_id,
            alert_type=payload.alert_type,
            threshold=payload.threshold,
            enabled=payload.enabled,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except NotFoundError as exc:
        # "Material … not found" ou "Project … not found"
        raise HTTPException(status_code=404, detail=str(exc)) from None

    db.commit()
    return AlertRuleRead.model_validate(rule).model_dump(mode="json")


@router.post("/rules/project/{project_id}", status_code=201)
def create_rules_for_project(
    project_id: int,
    payload: ProjectRulesCreate | None = None,
    db: Session = Depends(get_db),
    _role=Depends(require_manager),
):
    """Une règle low_stock par matériau ayant un stock max (seuil = percent % du max)."""
    percent = payload.percent if payload else Decimal(20)
    try:
        rules = SqlAlertRuleStore(db).create_rules_for_project(project_id, percent=percent)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None

    db.commit()
    return [AlertRuleRead.model_validate(r).model_dump(mode="json") for r in rules]


@router.patch("/rules/{rule_id}")
def update_rule(
    rule_id: int,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    _role=Depends(require_manager),
):
    store = SqlAlertRuleStore(db)
    try:
        rule = store.update_rule(rule_id, threshold=payload.threshold, enabled=payload.enabled)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found") from None

    db.commit()
    return AlertRuleRead.model_validate(rule).model_dump(mode="json")


@router.delete("/rules/{rule_id}")
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    _role=Depends(require_manager),
):
    try:
        SqlAlertRuleStore(db).delete_rule(rule_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found") from None
    db.commit()
    return {"id": rule_id, "deleted": True}


# ---------- Check / acknowledge ----------
@router.post("/check")
def check_alerts(
    payload: AlertCheck,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Polling : évalue les règles du scope et ne renvoie que les transitions
    (fire / clear). Un second appel sans mouvement de stock renvoie [].
    """
    if not db.get(Material, payload.material_id):
        raise HTTPException(status_code=404, detail="Material not found")

    transitions = inventory.check_alerts(
        SqlOperationStore(db),
        SqlAlertRuleStore(db),
        payload.material_id,
        payload.project_id,
        clock=clock,
    )
    db.commit()
    return [AlertTransitionRead.model_validate(t).model_dump(mode="json") for t in transitions]


@router.post("/{rule_id}/acknowledge")
def acknowledge_alert(
    rule_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    try:
        transition = inventory.acknowledge_alert(SqlAlertRuleStore(db), rule_id, clock=clock)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found") from None
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None

    db.commit()
    return AlertTransitionRead.model_validate(transition).model_dump(mode="json")


@router.get("/types")
def list_alert_types():
    return [t.value for t in AlertType]
