"""
Réconciliation de l'état des alertes.

Machine à états par règle :
    inactive     -> triggered     : FIRE
    triggered    -> triggered     : rien (pas de double notification)
    triggered    -> inactive      : CLEAR
    acknowledged -> acknowledged  : rien tant que la condition tient
    acknowledged -> inactive      : CLEAR (condition résolue)
    triggered    -> acknowledged  : ACKNOWLEDGE (action utilisateur)

Seul endroit où l'on décide "nouvelle alerte" vs "déjà connue".
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable

from chantier.app.db.models.core_types import AlertStatus, TransitionKind
from chantier.services.domain import AlertTransition, StockAlertState, TriggeredAlert
from chantier.services.errors import InvalidTransitionError

ACTIVE_STATUSES = {AlertStatus.triggered, AlertStatus.acknowledged}


def reconcile(
    previous: Iterable[StockAlertState],
    triggered_now: Iterable[TriggeredAlert],
    *,
    now: datetime,
) -> list[AlertTransition]:
    states = {s.rule_id: s for s in previous}
    hits = {a.rule_id: a for a in triggered_now}

    transitions: list[AlertTransition] = []
    for rule_id in sorted(states.keys() | hits.keys()):
        state = states.get(rule_id) or StockAlertState(rule_id=rule_id)
        alert = hits.get(rule_id)

        if alert is not None and state.status == AlertStatus.inactive:
            transitions.append(
                AlertTransition(
                    rule_id=rule_id,
                    kind=TransitionKind.fire,
                    previous_status=state.status,
                    state=replace(
                        state,
                        status=AlertStatus.triggered,
                        triggered_at=now,
                        cleared_at=None,
                        acknowledged_at=None,
                    ),
                    alert=alert,
                )
            )
        elif alert is None and state.status in ACTIVE_STATUSES:
            transitions.append(
                AlertTransition(
                    rule_id=rule_id,
                    kind=TransitionKind.clear,
                    previous_status=state.status,
                    state=replace(state, status=AlertStatus.inactive, cleared_at=now),
                )
            )

    return transitions


def acknowledge(state: StockAlertState, *, now: datetime) -> AlertTransition:
    if state.status != AlertStatus.triggered:
        raise InvalidTransitionError(f"Alert for rule {state.rule_id} is {state.status.value}, not triggered")

    return AlertTransition(
        rule_id=state.rule_id,
        kind=TransitionKind.acknowledge,
        previous_status=state.status,
        state=replace(state, status=AlertStatus.acknowledged, acknowledged_at=now),
    )
