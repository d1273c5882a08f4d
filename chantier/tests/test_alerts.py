from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from chantier.app.db.models.core_types import AlertType
from chantier.services.alerts import evaluate, validate_rule
from chantier.services.domain import MaterialStockState, StockAlertRule
from chantier.services.errors import ConfigurationError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 2)


def state(qty, expires_on=None, project_id=None):
    return MaterialStockState(material_id=1, project_id=project_id, quantity=Decimal(qty), expires_on=expires_on)


def rule(rule_id, kind, threshold=None, enabled=True, project_id=None, material_id=1):
    return StockAlertRule(
        id=rule_id,
        material_id=material_id,
        project_id=project_id,
        alert_type=AlertType(kind),
        threshold=None if threshold is None else Decimal(threshold),
        enabled=enabled,
    )


def test_low_stock_triggers_under_threshold():
    alerts = evaluate(state(5), [rule(1, "low_stock", 10)], NOW)

    assert [a.rule_id for a in alerts] == [1]
    assert alerts[0].alert_type == AlertType.low_stock
    assert alerts[0].quantity == Decimal(5)


def test_low_stock_threshold_is_inclusive():
    assert len(evaluate(state(10), [rule(1, "low_stock", 10)], NOW)) == 1
    assert evaluate(state(25), [rule(1, "low_stock", 10)], NOW) == []


@pytest.mark.parametrize("low_threshold", ["0", "10", "1000"])
def test_zero_quantity_is_out_of_stock_whatever_low_threshold(low_threshold):
    rules = [rule(1, "low_stock", low_threshold), rule(2, "out_of_stock")]

    alerts = evaluate(state(0), rules, NOW)

    assert AlertType.out_of_stock in {a.alert_type for a in alerts}
    # 0 n'est pas "low" : low_stock exige quantity > 0
    assert AlertType.low_stock not in {a.alert_type for a in alerts}


def test_negative_quantity_is_out_of_stock():
    alerts = evaluate(state(-3), [rule(2, "out_of_stock")], NOW)

    assert [a.alert_type for a in alerts] == [AlertType.out_of_stock]


def test_low_and_out_of_stock_are_independent():
    rules = [rule(1, "low_stock", 10), rule(2, "out_of_stock")]

    assert [a.rule_id for a in evaluate(state(4), rules, NOW)] == [1]
    assert [a.rule_id for a in evaluate(state(0), rules, NOW)] == [2]


def test_disabled_rule_never_triggers():
    assert evaluate(state(0), [rule(2, "out_of_stock", enabled=False)], NOW) == []


def test_rules_from_another_scope_are_ignored():
    rules = [
        rule(1, "out_of_stock", project_id=7),
        rule(2, "out_of_stock", material_id=2),
    ]

    assert evaluate(state(0), rules, NOW) == []


def test_expiring_within_threshold_triggers():
    alerts = evaluate(state(50, expires_on=TODAY + timedelta(days=3)), [rule(3, "expiring", 7)], NOW)

    assert [a.rule_id for a in alerts] == [3]
    assert alerts[0].days_to_expiry == 3


def test_expiring_beyond_threshold_does_not_trigger():
    assert evaluate(state(50, expires_on=TODAY + timedelta(days=10)), [rule(3, "expiring", 7)], NOW) == []


def test_already_expired_material_triggers():
    alerts = evaluate(state(50, expires_on=TODAY - timedelta(days=1)), [rule(3, "expiring", 7)], NOW)

    assert alerts[0].days_to_expiry == -1


def test_expiring_without_expiry_date_is_not_an_error():
    assert evaluate(state(50), [rule(3, "expiring", 7)], NOW) == []


def test_evaluate_is_deterministic_and_sorted():
    rules = [rule(9, "out_of_stock"), rule(4, "expiring", 30), rule(1, "low_stock", 5)]
    snapshot = state(0, expires_on=TODAY)

    first = evaluate(snapshot, rules, NOW)

    assert first == evaluate(snapshot, list(reversed(rules)), NOW)
    assert [a.rule_id for a in first] == [4, 9]


# ---------- validate_rule ----------
def test_validate_rule_normalizes_threshold():
    kind, threshold = validate_rule("low_stock", 12.5)

    assert kind == AlertType.low_stock
    assert threshold == Decimal("12.5")


def test_out_of_stock_needs_no_threshold():
    assert validate_rule("out_of_stock", None) == (AlertType.out_of_stock, None)


@pytest.mark.parametrize(
    "alert_type, threshold",
    [
        ("low_stock", -1),
        ("low_stock", None),
        ("expiring", None),
        ("expiring", "2.5"),
        ("overstock", 10),
        ("low_stock", "abc"),
    ],
)
def test_malformed_rules_are_refused_at_save_time(alert_type, threshold):
    with pytest.raises(ConfigurationError):
        validate_rule(alert_type, threshold)
