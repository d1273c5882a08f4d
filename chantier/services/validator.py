"""
Validation d'une opération candidate.

Purement consultative : aucune écriture. L'appelant écrit ensuite via le store
en repassant snapshot.revision (compare-and-set).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from chantier.app.db.models.core_types import OperationType
from chantier.services.domain import LedgerSnapshot, NewMaterialOperation, ValidationResult
from chantier.services.errors import ValidationError
from chantier.services.ledger import compute_quantity, new_deficit

DEFAULT_SKEW_TOLERANCE = timedelta(minutes=5)


def _shape_errors(candidate: NewMaterialOperation, now: datetime, skew_tolerance: timedelta) -> list[ValidationError]:
    errors: list[ValidationError] = []

    try:
        OperationType(candidate.type)
    except ValueError:
        errors.append(
            ValidationError(
                code="invalid_type",
                message=f"Unknown operation type {candidate.type!r}",
                field="type",
            )
        )

    try:
        qty = Decimal(candidate.quantity)
    except (InvalidOperation, TypeError, ValueError):
        qty = None
    if qty is None or not qty.is_finite() or qty <= 0:
        errors.append(ValidationError(code="invalid_quantity", message="Quantity must be > 0", field="quantity"))

    if candidate.occurred_at.tzinfo is None:
        errors.append(
            ValidationError(code="naive_timestamp", message="occurred_at must be timezone-aware", field="occurred_at")
        )
    elif candidate.occurred_at > now + skew_tolerance:
        errors.append(
            ValidationError(
                code="future_timestamp",
                message=f"occurred_at is beyond the allowed clock skew ({skew_tolerance})",
                field="occurred_at",
            )
        )

    return errors


def validate(
    candidate: NewMaterialOperation,
    ledger: LedgerSnapshot,
    *,
    now: datetime,
    allow_negative: bool = False,
    skew_tolerance: timedelta = DEFAULT_SKEW_TOLERANCE,
) -> ValidationResult:
    errors = _shape_errors(candidate, now, skew_tolerance)
    if errors:
        return ValidationResult(accepted=False, errors=tuple(errors))

    foreign = [op for op in ledger.operations if op.scope != candidate.scope]
    if foreign:
        raise ValueError("Ledger snapshot does not match the candidate scope")

    # On rejoue tout l'historique : une consommation antidatée peut faire
    # passer en négatif une opération postérieure.
    operations = [*ledger.operations, candidate]
    if not allow_negative:
        deficit = new_deficit(ledger.operations, operations)
        if deficit is not None:
            return ValidationResult(accepted=False, errors=(deficit,))

    result = compute_quantity(operations, allow_negative=True)

    balance_after = next(rb.balance for rb in result.history if rb.operation_id is None)
    return ValidationResult(
        accepted=True,
        operation=candidate,
        balance_after=balance_after,
        quantity=result.quantity,
    )
