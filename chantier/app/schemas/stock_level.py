from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel

from chantier.app.db.models.core_types import OperationType


class RunningBalanceRead(BaseModel):
    operation_id: int | None
    type: OperationType
    occurred_at: datetime
    delta: float
    balance: float

    class Config:
        from_attributes = True


class StockLevelRead(BaseModel):
    material_id: int
    project_id: int | None

    quantity: float  # lecture seule : dérivée du ledger
    last_operation_id: int | None
    last_recomputed_at: datetime | None
    expires_on: date | None = None

    history: list[RunningBalanceRead] = []

    class Config:
        from_attributes = True
