"""
Orchestration stock : relie le noyau pur aux stores.

Flux :
    candidat -> validate -> append (CAS) -> recalcul ledger -> evaluate -> reconcile

Aucune de ces fonctions ne fait commit() : l'appelant possède la transaction,
et c'est lui qui rejoue validation + écriture sur ConflictError.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from chantier.app.core.clock import Clock
from chantier.app.core.logging import get_logger
from chantier.services.alerts import evaluate
from chantier.services.domain import (
    AlertTransition,
    Ledger,
    MaterialOperation,
    MaterialStockState,
    NewMaterialOperation,
    RecordResult,
)
from chantier.services.errors import InvalidTransitionError, NegativeBalanceError
from chantier.services.ledger import compute_quantity, new_deficit
from chantier.services.reconciler import acknowledge, reconcile
from chantier.services.stores import AlertRuleStore, OperationStore
from chantier.services.validator import DEFAULT_SKEW_TOLERANCE, validate

logger = get_logger(__name__)


def stock_state(
    ops: OperationStore,
    material_id: int,
    project_id: int | None = None,
    *,
    clock: Clock,
) -> tuple[MaterialStockState, Ledger]:
    """
    État courant d'un scope (opérations occurred_at <= now).
    Lecture seule : un négatif déjà en base (backorder autorisé) est rapporté tel quel.
    """
    now = clock.now()
    snapshot = ops.snapshot(material_id, project_id)
    ledger = compute_quantity(snapshot.operations, as_of=now, allow_negative=True)

    state = MaterialStockState(
        material_id=material_id,
        project_id=project_id,
        quantity=ledger.quantity,
        last_operation_id=ledger.last_operation_id,
        last_recomputed_at=now,
        expires_on=ops.get_expiry(material_id),
    )
    return state, ledger


def _balance_after(ops: OperationStore, operation: MaterialOperation) -> Decimal | None:
    """Solde juste après `operation` dans le ledger de son scope (réponse rejouée à l'identique)."""
    snapshot = ops.snapshot(operation.material_id, operation.project_id)
    ledger = compute_quantity(snapshot.operations, allow_negative=True)
    for rb in ledger.history:
        if rb.operation_id == operation.id:
            return rb.balance
    # remplacée ou supprimée depuis : plus de solde propre
    return None


def record_operation(
    ops: OperationStore,
    candidate: NewMaterialOperation,
    *,
    clock: Clock,
    allow_negative: bool = False,
    skew_tolerance: timedelta = DEFAULT_SKEW_TOLERANCE,
    idempotency_key: str | None = None,
    rules: AlertRuleStore | None = None,
) -> RecordResult:
    # idempotent replay
    if idempotency_key:
        existing = ops.find_by_idempotency_key(idempotency_key)
        if existing:
            return RecordResult(accepted=True, operation_id=existing.id, balance=_balance_after(ops, existing))

    now = clock.now()
    snapshot = ops.snapshot(candidate.material_id, candidate.project_id)
    result = validate(
        candidate,
        snapshot,
        now=now,
        allow_negative=allow_negative,
        skew_tolerance=skew_tolerance,
    )

    if not result.accepted:
        logger.info(
            "operation rejected material=%s project=%s type=%s qty=%s reason=%s",
            candidate.material_id,
            candidate.project_id,
            candidate.type,
            candidate.quantity,
            result.reason,
        )
        return RecordResult(accepted=False, reason=result.reason, errors=result.errors)

    # ConflictError remonte tel quel : l'appelant refait fetch + validate
    op_id = ops.append_operation(
        candidate,
        expected_revision=snapshot.revision,
        idempotency_key=idempotency_key,
    )

    state, _ = stock_state(ops, candidate.material_id, candidate.project_id, clock=clock)
    ops.save_stock_state(state)
    logger.info(
        "operation %s recorded material=%s project=%s type=%s qty=%s balance=%s",
        op_id,
        candidate.material_id,
        candidate.project_id,
        candidate.type,
        candidate.quantity,
        result.balance_after,
    )

    transitions: list[AlertTransition] = []
    if rules is not None:
        transitions = check_alerts(ops, rules, candidate.material_id, candidate.project_id, clock=clock)

    return RecordResult(
        accepted=True,
        operation_id=op_id,
        balance=result.balance_after,
        transitions=transitions,
    )


def supersede_operation(
    ops: OperationStore,
    operation_id: int,
    *,
    clock: Clock,
    changes: dict,
    created_by: int | None = None,
    **kwargs,
) -> RecordResult:
    """
    Édition = nouvelle opération qui remplace l'ancienne (append-only).
    Le scope (material_id, project_id) ne peut pas changer.
    """
    original = ops.get_operation(operation_id)
    snapshot = ops.snapshot(original.material_id, original.project_id)
    if any(op.supersedes_id == operation_id for op in snapshot.operations):
        raise InvalidTransitionError(f"Operation {operation_id} has already been superseded")

    allowed = {"type", "quantity", "unit_price", "location", "notes", "qr_code", "occurred_at"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot change {sorted(unknown)} on an operation")

    candidate = NewMaterialOperation(
        material_id=original.material_id,
        project_id=original.project_id,
        type=original.type,
        quantity=original.quantity,
        occurred_at=original.occurred_at,
        created_by=created_by if created_by is not None else original.created_by,
        unit_price=original.unit_price,
        location=original.location,
        notes=original.notes,
        qr_code=original.qr_code,
        supersedes_id=operation_id,
    )
    candidate = replace(candidate, **{k: v for k, v in changes.items() if v is not None})
    return record_operation(ops, candidate, clock=clock, **kwargs)


def delete_operation(
    ops: OperationStore,
    operation_id: int,
    *,
    clock: Clock,
    actor_id: int | None,
    reason: str | None = None,
    allow_negative: bool = False,
) -> Ledger | NegativeBalanceError:
    """Suppression privilégiée : refusée si elle crée ou aggrave un solde négatif."""
    target = ops.get_operation(operation_id)
    snapshot = ops.snapshot(target.material_id, target.project_id)

    remaining = [op for op in snapshot.operations if op.id != operation_id]
    result = None if allow_negative else new_deficit(snapshot.operations, remaining)
    if result is not None:
        logger.warning(
            "delete of operation %s refused: balance would reach %s at operation %s",
            operation_id,
            result.balance,
            result.operation_id,
        )
        return result

    ops.delete_operation(
        operation_id,
        expected_revision=snapshot.revision,
        actor_id=actor_id,
        reason=reason,
    )
    state, ledger = stock_state(ops, target.material_id, target.project_id, clock=clock)
    ops.save_stock_state(state)
    logger.warning("operation %s deleted by actor=%s reason=%s", operation_id, actor_id, reason)
    return ledger


def check_alerts(
    ops: OperationStore,
    rules: AlertRuleStore,
    material_id: int,
    project_id: int | None = None,
    *,
    clock: Clock,
) -> list[AlertTransition]:
    """
    Évalue les règles du scope et persiste les transitions.
    Idempotent : un second appel sans changement de stock ne produit rien.
    """
    now = clock.now()
    state, _ = stock_state(ops, material_id, project_id, clock=clock)
    scope_rules = rules.list_rules(material_id, project_id)

    triggered = evaluate(state, scope_rules, now)
    previous = [rules.get_alert_state(r.id) for r in scope_rules]
    transitions = reconcile(previous, triggered, now=now)

    for t in transitions:
        rules.save_alert_state(t.state)
        logger.info(
            "alert %s rule=%s material=%s project=%s qty=%s",
            t.kind.value,
            t.rule_id,
            material_id,
            project_id,
            state.quantity,
        )
    return transitions


def acknowledge_alert(rules: AlertRuleStore, rule_id: int, *, clock: Clock) -> AlertTransition:
    rules.get_rule(rule_id)
    transition = acknowledge(rules.get_alert_state(rule_id), now=clock.now())
    rules.save_alert_state(transition.state)
    logger.info("alert acknowledged rule=%s", rule_id)
    return transition
