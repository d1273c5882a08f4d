from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.api.deps import get_clock, get_db
from chantier.app.core.clock import Clock
from chantier.app.db.models.models_v1 import Material, StockLevel
from chantier.app.schemas.stock_level import StockLevelRead
from chantier.services.inventory import stock_state
from chantier.services.stores import SqlOperationStore, as_utc

router = APIRouter(prefix="/stock")


@router.get("")
def list_stock(
    material_id: int | None = None,
    project_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Cache stock_levels (READ ONLY)
    - quantity est recalculée à chaque écriture, jamais saisie
    """
    stmt = select(StockLevel).order_by(StockLevel.material_id, StockLevel.project_id)

    if material_id is not None:
        stmt = stmt.where(StockLevel.material_id == material_id)

    if project_id is not None:
        stmt = stmt.where(StockLevel.project_id == project_id)

    rows = db.execute(stmt).scalars().all()
    return [
        {
            "material_id": sl.material_id,
            "project_id": sl.project_id,
            "quantity": float(sl.quantity),
            "last_operation_id": sl.last_operation_id,
            "last_recomputed_at": as_utc(sl.last_recomputed_at),
        }
        for sl in rows
    ]


@router.get("/{material_id}", response_model=StockLevelRead)
def get_material_stock(
    material_id: int,
    project_id: int | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Quantité dérivée du ledger + historique des soldes (audit)."""
    if not db.get(Material, material_id):
        raise HTTPException(status_code=404, detail="Material not found")

    state, ledger = stock_state(SqlOperationStore(db), material_id, project_id, clock=clock)
    return StockLevelRead(
        material_id=state.material_id,
        project_id=state.project_id,
        quantity=state.quantity,
        last_operation_id=state.last_operation_id,
        last_recomputed_at=state.last_recomputed_at,
        expires_on=state.expires_on,
        history=[asdict(h) for h in ledger.history],
    )
