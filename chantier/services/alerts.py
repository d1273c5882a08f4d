"""
Évaluation des règles d'alerte de stock.

- low_stock    : 0 < quantity <= threshold
- out_of_stock : quantity <= 0
- expiring     : (expires_on - today) <= threshold jours ; sans date => jamais

Pas de suppression low/out : les deux peuvent être déclenchées ensemble,
c'est la présentation qui choisit.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

from chantier.app.db.models.core_types import AlertType
from chantier.services.domain import MaterialStockState, StockAlertRule, TriggeredAlert
from chantier.services.errors import ConfigurationError


def validate_rule(alert_type: AlertType | str, threshold) -> tuple[AlertType, Decimal | None]:
    """
    Contrôle appelé à l'enregistrement d'une règle (jamais à l'évaluation).
    Retourne (alert_type, threshold) normalisés.
    """
    try:
        kind = AlertType(alert_type)
    except ValueError:
        raise ConfigurationError(f"Unknown alert type {alert_type!r}") from None

    if threshold is None:
        if kind == AlertType.out_of_stock:
            return kind, None
        raise ConfigurationError(f"{kind.value} rule requires a threshold")

    try:
        value = Decimal(str(threshold))
    except InvalidOperation:
        raise ConfigurationError(f"Invalid threshold {threshold!r}") from None

    if not value.is_finite() or value < 0:
        raise ConfigurationError(f"Threshold must be >= 0 (got {threshold})")
    if kind == AlertType.expiring and value != value.to_integral_value():
        raise ConfigurationError("Expiring threshold is a whole number of days")

    return kind, value


def _applies(rule: StockAlertRule, material: MaterialStockState) -> bool:
    return (
        rule.enabled
        and rule.material_id == material.material_id
        and rule.project_id == material.project_id
    )


def evaluate(
    material: MaterialStockState,
    rules: Iterable[StockAlertRule],
    now: datetime,
) -> list[TriggeredAlert]:
    qty = material.quantity
    triggered: list[TriggeredAlert] = []

    for rule in sorted(rules, key=lambda r: r.id):
        if not _applies(rule, material):
            continue

        days_left = None
        if rule.alert_type == AlertType.low_stock:
            hit = 0 < qty <= rule.threshold
        elif rule.alert_type == AlertType.out_of_stock:
            hit = qty <= 0
        elif rule.alert_type == AlertType.expiring:
            if material.expires_on is None:
                continue
            days_left = (material.expires_on - now.date()).days
            hit = days_left <= rule.threshold
        else:
            continue

        if hit:
            triggered.append(
                TriggeredAlert(
                    rule_id=rule.id,
                    material_id=material.material_id,
                    project_id=material.project_id,
                    alert_type=rule.alert_type,
                    threshold=rule.threshold,
                    quantity=qty,
                    days_to_expiry=days_left,
                )
            )

    return triggered
