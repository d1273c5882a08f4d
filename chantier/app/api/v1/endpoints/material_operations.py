from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chantier.app.api.deps import (
    get_app_settings,
    get_clock,
    get_db,
    get_user_id,
    require_manager,
)
from chantier.app.core.clock import Clock
from chantier.app.core.config import Settings
from chantier.app.core.logging import get_logger
from chantier.app.db.models.core_types import OperationType
from chantier.app.db.models.models_v1 import Material, MaterialOperation, Project
from chantier.app.schemas.alerts import AlertTransitionRead
from chantier.services import inventory
from chantier.services.domain import NewMaterialOperation, RecordResult
from chantier.services.errors import ConflictError, InvalidTransitionError, NegativeBalanceError, NotFoundError
from chantier.services.ledger import totals_by_type
from chantier.services.stores import SqlAlertRuleStore, SqlOperationStore, as_utc

router = APIRouter(prefix="/material-operations")
logger = get_logger(__name__)


# ---------- Schemas ----------
class OperationCreate(BaseModel):
    material_id: int
    project_id: int | None = None
    type: OperationType
    quantity: Decimal = Field(gt=0)
    occurred_at: datetime
    unit_price: Decimal | None = Field(default=None, ge=0)
    location: str | None = Field(default=None, max_length=128)
    notes: str | None = None
    qr_code: str | None = Field(default=None, max_length=128)
    allow_negative: bool = False


class OperationEdit(BaseModel):
    type: OperationType | None = None
    quantity: Decimal | None = Field(default=None, gt=0)
    occurred_at: datetime | None = None
    unit_price: Decimal | None = Field(default=None, ge=0)
    location: str | None = Field(default=None, max_length=128)
    notes: str | None = None
    qr_code: str | None = Field(default=None, max_length=128)
    allow_negative: bool = False


# ---------- Helpers ----------
def _clean_idempotency_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key or len(key) > 64:
        raise HTTPException(status_code=400, detail="Invalid Idempotency-Key header")
    return key


def _ensure_scope(db: Session, material_id: int, project_id: int | None) -> None:
    if not db.get(Material, material_id):
        raise HTTPException(status_code=404, detail="Material not found")
    if project_id is not None and not db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")


def _rejection_detail(result: RecordResult) -> dict:
    errors = []
    for err in result.errors:
        if isinstance(err, NegativeBalanceError):
            errors.append(
                {
                    "code": err.code,
                    "message": err.message,
                    "operation_id": err.operation_id,
                    "balance": float(err.balance),
                }
            )
        else:
            errors.append({"code": err.code, "message": err.message, "field": err.field})
    return {"accepted": False, "reason": result.reason, "errors": errors}


def _accepted_body(result: RecordResult) -> dict:
    return {
        "accepted": True,
        "operation_id": result.operation_id,
        "balance": None if result.balance is None else float(result.balance),
        "transitions": [
            AlertTransitionRead.model_validate(t).model_dump(mode="json") for t in result.transitions
        ],
    }


def _write_with_retry(db: Session, settings: Settings, write) -> RecordResult:
    """
    Rejoue fetch + validate + append tant que le store signale un conflit.
    """
    for attempt in range(settings.conflict_retries + 1):
        try:
            result = write()
            if result.accepted:
                db.commit()
            else:
                db.rollback()
            return result
        except (ConflictError, IntegrityError) as exc:
            db.rollback()
            logger.warning("write conflict (attempt %s/%s): %s", attempt + 1, settings.conflict_retries + 1, exc)

    raise HTTPException(status_code=409, detail="Concurrent update, please retry")


def _operation_out(op: MaterialOperation) -> dict:
    return {
        "id": op.id,
        "material_id": op.material_id,
        "project_id": op.project_id,
        "type": OperationType(op.operation_type).value,
        "quantity": float(op.quantity),
        "unit_price": None if op.unit_price is None else float(op.unit_price),
        "location": op.location,
        "notes": op.notes,
        "qr_code": op.qr_code,
        "supersedes_id": op.supersedes_id,
        "occurred_at": as_utc(op.occurred_at),
        "created_by": op.created_by,
        "created_at": as_utc(op.created_at),
    }


# ---------- Endpoints ----------
@router.get("")
def list_operations(
    material_id: int | None = None,
    project_id: int | None = None,
    operation_type: OperationType | None = Query(default=None, alias="type"),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    stmt = select(MaterialOperation).order_by(MaterialOperation.occurred_at.desc(), MaterialOperation.id.desc())

    if material_id is not None:
        stmt = stmt.where(MaterialOperation.material_id == material_id)
    if project_id is not None:
        stmt = stmt.where(MaterialOperation.project_id == project_id)
    if operation_type is not None:
        stmt = stmt.where(MaterialOperation.operation_type == operation_type)
    if date_from is not None:
        stmt = stmt.where(MaterialOperation.occurred_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(MaterialOperation.occurred_at <= date_to)

    stmt = stmt.offset((page - 1) * page_size).limit(page_size)
    rows = db.execute(stmt).scalars().all()
    return [_operation_out(op) for op in rows]


@router.get("/stats")
def operation_stats(
    project_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Totaux par type et par matériau (opérations effectives uniquement).
    """
    stmt = select(MaterialOperation.material_id).distinct()
    if project_id is not None:
        stmt = stmt.where(MaterialOperation.project_id == project_id)
    else:
        stmt = stmt.where(MaterialOperation.project_id.is_(None))
    material_ids = sorted(db.execute(stmt).scalars().all())

    store = SqlOperationStore(db)
    per_material = []
    grand = {t: Decimal(0) for t in OperationType}
    for mid in material_ids:
        totals = totals_by_type(store.list_operations(mid, project_id))
        for t, qty in totals.items():
            grand[t] += qty
        per_material.append(
            {
                "material_id": mid,
                **{t.value: float(q) for t, q in totals.items()},
                "net": float(totals[OperationType.reception] + totals[OperationType.return_] - totals[OperationType.consumption]),
            }
        )

    count = db.execute(
        select(func.count(MaterialOperation.id)).where(
            MaterialOperation.project_id == project_id
            if project_id is not None
            else MaterialOperation.project_id.is_(None)
        )
    ).scalar_one()

    return {
        "project_id": project_id,
        "operation_count": int(count),
        "totals": {t.value: float(q) for t, q in grand.items()},
        "materials": per_material,
    }


@router.get("/{operation_id}")
def get_operation(operation_id: int, db: Session = Depends(get_db)):
    op = db.get(MaterialOperation, operation_id)
    if not op:
        raise HTTPException(status_code=404, detail="Operation not found")
    return _operation_out(op)


@router.post("", status_code=201)
def record_operation(
    payload: OperationCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
    user_id: int | None = Depends(get_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    idem = _clean_idempotency_key(idempotency_key)
    _ensure_scope(db, payload.material_id, payload.project_id)

    candidate = NewMaterialOperation(
        material_id=payload.material_id,
        project_id=payload.project_id,
        type=payload.type,
        quantity=payload.quantity,
        occurred_at=payload.occurred_at,
        created_by=user_id,
        unit_price=payload.unit_price,
        location=payload.location,
        notes=payload.notes,
        qr_code=payload.qr_code,
    )

    def write() -> RecordResult:
        return inventory.record_operation(
            SqlOperationStore(db),
            candidate,
            clock=clock,
            allow_negative=payload.allow_negative or settings.allow_negative_stock,
            skew_tolerance=settings.skew_tolerance,
            idempotency_key=idem,
            rules=SqlAlertRuleStore(db),
        )

    result = _write_with_retry(db, settings, write)
    if not result.accepted:
        raise HTTPException(status_code=400, detail=_rejection_detail(result))
    return _accepted_body(result)


@router.post("/{operation_id}/supersede", status_code=201)
def supersede_operation(
    operation_id: int,
    payload: OperationEdit,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
    user_id: int | None = Depends(get_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    idem = _clean_idempotency_key(idempotency_key)
    changes = payload.model_dump(exclude={"allow_negative"}, exclude_none=True)

    def write() -> RecordResult:
        return inventory.supersede_operation(
            SqlOperationStore(db),
            operation_id,
            clock=clock,
            changes=changes,
            created_by=user_id,
            allow_negative=payload.allow_negative or settings.allow_negative_stock,
            skew_tolerance=settings.skew_tolerance,
            idempotency_key=idem,
            rules=SqlAlertRuleStore(db),
        )

    try:
        result = _write_with_retry(db, settings, write)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Operation not found") from None
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None

    if not result.accepted:
        raise HTTPException(status_code=400, detail=_rejection_detail(result))
    return _accepted_body(result)


@router.delete("/{operation_id}")
def delete_operation(
    operation_id: int,
    reason: str | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
    user_id: int | None = Depends(get_user_id),
    _role=Depends(require_manager),
):
    for attempt in range(settings.conflict_retries + 1):
        try:
            result = inventory.delete_operation(
                SqlOperationStore(db),
                operation_id,
                clock=clock,
                actor_id=user_id,
                reason=reason,
                allow_negative=settings.allow_negative_stock,
            )
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Operation not found") from None
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from None
        except ConflictError as exc:
            db.rollback()
            logger.warning("delete conflict (attempt %s): %s", attempt + 1, exc)
            continue

        if isinstance(result, NegativeBalanceError):
            db.rollback()
            raise HTTPException(
                status_code=400,
                detail={
                    "code": result.code,
                    "message": result.message,
                    "operation_id": result.operation_id,
                    "balance": float(result.balance),
                },
            )

        db.commit()
        return {"id": operation_id, "deleted": True, "quantity": float(result.quantity)}

    raise HTTPException(status_code=409, detail="Concurrent update, please retry")
