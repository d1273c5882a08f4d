"""
Ledger de quantité.

Règle métier :
    quantity =
        SUM(reception) + SUM(return) - SUM(consumption)
    sur les opérations effectives d'un scope (material_id, project_id),
    restreintes à occurred_at <= as_of.

Propriétés :
- pure (aucune I/O, aucune horloge globale)
- déterministe : tri (occurred_at, id), une opération sans id passe en dernier
- idempotente
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from chantier.app.db.models.core_types import OperationType
from chantier.services.domain import Ledger, MaterialOperation, NewMaterialOperation, RunningBalance
from chantier.services.errors import NegativeBalanceError

AnyOperation = MaterialOperation | NewMaterialOperation

# Sens de chaque type sur le stock
SIGNS = {
    OperationType.reception: 1,
    OperationType.return_: 1,
    OperationType.consumption: -1,
}


def signed_quantity(op: AnyOperation) -> Decimal:
    return Decimal(op.quantity) * SIGNS[OperationType(op.type)]


def sort_key(op: AnyOperation) -> tuple:
    # id None (candidat) => après toutes les opérations persistées au même instant
    return (op.occurred_at, op.id is None, op.id or 0)


def effective_operations(operations: Iterable[AnyOperation]) -> list[AnyOperation]:
    """Retire les opérations remplacées par une édition (supersedes_id)."""
    ops = list(operations)
    superseded = {op.supersedes_id for op in ops if op.supersedes_id is not None}
    return [op for op in ops if op.id is None or op.id not in superseded]


def _check_single_scope(ops: Sequence[AnyOperation]) -> None:
    scopes = {op.scope for op in ops}
    if len(scopes) > 1:
        raise ValueError(f"Operations span several scopes: {sorted(scopes, key=str)}")


def compute_quantity(
    operations: Iterable[AnyOperation],
    *,
    as_of: datetime | None = None,
    allow_negative: bool = False,
) -> Ledger | NegativeBalanceError:
    ops = effective_operations(operations)
    _check_single_scope(ops)

    if as_of is not None:
        ops = [op for op in ops if op.occurred_at <= as_of]

    balance = Decimal(0)
    history: list[RunningBalance] = []
    last_id: int | None = None

    for op in sorted(ops, key=sort_key):
        delta = signed_quantity(op)
        balance += delta
        if balance < 0 and not allow_negative:
            return NegativeBalanceError(operation_id=op.id, balance=balance)

        history.append(
            RunningBalance(
                operation_id=op.id,
                type=OperationType(op.type),
                occurred_at=op.occurred_at,
                delta=delta,
                balance=balance,
            )
        )
        if op.id is not None:
            last_id = op.id

    return Ledger(quantity=balance, history=tuple(history), last_operation_id=last_id)


def new_deficit(
    baseline: Iterable[AnyOperation],
    changed: Iterable[AnyOperation],
) -> NegativeBalanceError | None:
    """
    Premier solde négatif introduit ou aggravé par `changed` par rapport à `baseline`.

    Un solde déjà négatif dans `baseline` (backorder autorisé) et qui ne baisse pas
    n'est pas une erreur : une réception après un backorder reste acceptée.
    """
    before = {
        rb.operation_id: rb.balance
        for rb in compute_quantity(baseline, allow_negative=True).history
        if rb.operation_id is not None
    }

    previous = Decimal(0)
    for rb in compute_quantity(changed, allow_negative=True).history:
        # candidat (pas d'id) : comparé au solde juste avant lui
        reference = before.get(rb.operation_id, previous)
        if rb.balance < 0 and rb.balance < reference:
            return NegativeBalanceError(operation_id=rb.operation_id, balance=rb.balance)
        previous = rb.balance
    return None


def totals_by_type(operations: Iterable[AnyOperation]) -> dict[OperationType, Decimal]:
    totals = {t: Decimal(0) for t in OperationType}
    for op in effective_operations(operations):
        totals[OperationType(op.type)] += Decimal(op.quantity)
    return totals
