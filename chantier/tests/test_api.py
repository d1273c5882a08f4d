from datetime import datetime, timedelta, timezone

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

MANAGER = {"X-Role": "manager", "X-User-Id": "7"}


def iso(minutes_ago=0):
    return (NOW - timedelta(minutes=minutes_ago)).isoformat()


def post_op(client, material_id, kind, qty, minutes_ago=0, **extra):
    body = {
        "material_id": material_id,
        "type": kind,
        "quantity": qty,
        "occurred_at": iso(minutes_ago),
        **extra,
    }
    return client.post("/v1/material-operations", json=body)


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_create_material_and_project(client):
    r = client.post("/v1/materials", json={"name": "Parpaing 20x20x50", "unit": "u", "barcode": "376000"})
    assert r.status_code == 201
    assert r.json()["status"] == "active"

    dup = client.post("/v1/materials", json={"name": "Autre", "barcode": "376000"})
    assert dup.status_code == 409

    p = client.post("/v1/projects", json={"name": "Gymnase"})
    assert p.status_code == 201
    assert client.post("/v1/projects", json={"name": "Gymnase"}).status_code == 409


def test_record_operations_and_read_history(client, material):
    assert post_op(client, material.id, "reception", 100, minutes_ago=30).status_code == 201
    r = post_op(client, material.id, "consumption", 30, minutes_ago=20, notes="dalle R+1")
    assert r.status_code == 201
    assert r.json()["balance"] == 70

    stock = client.get(f"/v1/stock/{material.id}").json()
    assert stock["quantity"] == 70
    assert [h["balance"] for h in stock["history"]] == [100, 70]
    assert [h["type"] for h in stock["history"]] == ["reception", "consumption"]

    listing = client.get("/v1/material-operations", params={"material_id": material.id, "type": "consumption"})
    assert [op["notes"] for op in listing.json()] == ["dalle R+1"]


def test_overdraw_returns_400_with_typed_error(client, material):
    post_op(client, material.id, "reception", 100, minutes_ago=30)
    post_op(client, material.id, "consumption", 30, minutes_ago=20)

    r = post_op(client, material.id, "consumption", 80)

    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["reason"] == "negative_balance"
    assert detail["errors"][0]["operation_id"] is None
    assert detail["errors"][0]["balance"] == -10
    assert client.get(f"/v1/stock/{material.id}").json()["quantity"] == 70


def test_allow_negative_records_backorder(client, material):
    r = post_op(client, material.id, "consumption", 5, allow_negative=True)

    assert r.status_code == 201
    assert r.json()["balance"] == -5


def test_reception_after_an_allowed_backorder_is_accepted(client, material):
    post_op(client, material.id, "reception", 10, minutes_ago=30)
    post_op(client, material.id, "consumption", 30, minutes_ago=20, allow_negative=True)

    r = post_op(client, material.id, "reception", 50, minutes_ago=10)

    assert r.status_code == 201
    assert r.json()["balance"] == 30
    assert client.get(f"/v1/stock/{material.id}").json()["quantity"] == 30


def test_future_timestamp_is_rejected(client, material):
    r = post_op(client, material.id, "reception", 5, minutes_ago=-60)

    assert r.status_code == 400
    assert r.json()["detail"]["reason"] == "future_timestamp"


def test_pydantic_rejects_non_positive_quantity(client, material):
    assert post_op(client, material.id, "reception", 0).status_code == 422


def test_unknown_material_is_404(client):
    assert post_op(client, 999, "reception", 1).status_code == 404


def test_idempotency_key_header(client, material):
    headers = {"Idempotency-Key": "tablette-3:0017"}
    body = {"material_id": material.id, "type": "reception", "quantity": 8, "occurred_at": iso()}

    first = client.post("/v1/material-operations", json=body, headers=headers)
    again = client.post("/v1/material-operations", json=body, headers=headers)

    assert first.json()["operation_id"] == again.json()["operation_id"]
    assert len(client.get("/v1/material-operations").json()) == 1


def test_supersede_endpoint(client, material):
    post_op(client, material.id, "reception", 100, minutes_ago=30)
    wrong = post_op(client, material.id, "consumption", 30, minutes_ago=20).json()["operation_id"]

    r = client.post(f"/v1/material-operations/{wrong}/supersede", json={"quantity": 25})
    assert r.status_code == 201
    assert r.json()["balance"] == 75

    again = client.post(f"/v1/material-operations/{wrong}/supersede", json={"quantity": 20})
    assert again.status_code == 409

    assert client.post("/v1/material-operations/999/supersede", json={"quantity": 1}).status_code == 404


def test_delete_requires_manager(client, material):
    post_op(client, material.id, "reception", 100, minutes_ago=30)
    op_id = post_op(client, material.id, "consumption", 30, minutes_ago=20).json()["operation_id"]

    assert client.delete(f"/v1/material-operations/{op_id}").status_code == 403

    r = client.delete(f"/v1/material-operations/{op_id}", params={"reason": "doublon"}, headers=MANAGER)
    assert r.status_code == 200
    assert r.json()["quantity"] == 100
    assert client.get(f"/v1/material-operations/{op_id}").status_code == 404


def test_delete_refused_when_balance_would_go_negative(client, material):
    reception = post_op(client, material.id, "reception", 100, minutes_ago=30).json()["operation_id"]
    post_op(client, material.id, "consumption", 30, minutes_ago=20)

    r = client.delete(f"/v1/material-operations/{reception}", headers=MANAGER)

    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "negative_balance"


def test_stats(client, material):
    post_op(client, material.id, "reception", 100, minutes_ago=30)
    post_op(client, material.id, "consumption", 30, minutes_ago=20)
    post_op(client, material.id, "return", 4, minutes_ago=10)

    stats = client.get("/v1/material-operations/stats").json()

    assert stats["operation_count"] == 3
    assert stats["totals"] == {"reception": 100, "consumption": 30, "return": 4}
    assert stats["materials"][0]["net"] == 74


# ---------- Alertes ----------
def test_rule_management_requires_manager(client, material):
    body = {"material_id": material.id, "alert_type": "low_stock", "threshold": 10}

    assert client.post("/v1/stock-alerts/rules", json=body).status_code == 403
    assert client.post("/v1/stock-alerts/rules", json=body, headers={"X-Role": "field"}).status_code == 403
    assert client.post("/v1/stock-alerts/rules", json=body, headers={"X-Role": "intrus"}).status_code == 400
    assert client.post("/v1/stock-alerts/rules", json=body, headers=MANAGER).status_code == 201


def test_malformed_rule_is_422(client, material):
    r = client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "alert_type": "low_stock", "threshold": -1},
        headers=MANAGER,
    )
    assert r.status_code == 422

    r = client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "alert_type": "overstock", "threshold": 5},
        headers=MANAGER,
    )
    assert r.status_code == 422


def test_rule_on_unknown_project_is_404(client, material):
    r = client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "project_id": 9999, "alert_type": "low_stock", "threshold": 5},
        headers=MANAGER,
    )

    assert r.status_code == 404
    assert "Project 9999" in r.json()["detail"]


def test_project_rules_endpoint(client, db_session, material, project):
    material.max_stock_level = 40
    db_session.commit()
    url = f"/v1/stock-alerts/rules/project/{project.id}"

    assert client.post(url).status_code == 403
    assert client.post("/v1/stock-alerts/rules/project/9999", headers=MANAGER).status_code == 404
    assert client.post(url, json={"percent": 0}, headers=MANAGER).status_code == 422

    r = client.post(url, json={"percent": 25}, headers=MANAGER)
    assert r.status_code == 201
    (rule,) = r.json()
    assert rule["material_id"] == material.id
    assert rule["project_id"] == project.id
    assert rule["alert_type"] == "low_stock"
    assert float(rule["threshold"]) == 10

    assert client.post(url, headers=MANAGER).json() == []


def test_check_fires_once_and_acknowledge(client, material):
    rule = client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "alert_type": "low_stock", "threshold": 10},
        headers=MANAGER,
    ).json()
    post_op(client, material.id, "reception", 5)

    # l'écriture a déjà évalué les règles : le polling ne renvoie rien de neuf
    assert client.post("/v1/stock-alerts/check", json={"material_id": material.id}).json() == []

    rules = client.get("/v1/stock-alerts/rules", params={"material_id": material.id}).json()
    assert rules[0]["status"] == "triggered"

    ack = client.post(f"/v1/stock-alerts/{rule['id']}/acknowledge")
    assert ack.status_code == 200
    assert ack.json()["state"]["status"] == "acknowledged"
    assert client.post(f"/v1/stock-alerts/{rule['id']}/acknowledge").status_code == 409

    cleared = post_op(client, material.id, "reception", 20).json()
    assert [t["kind"] for t in cleared["transitions"]] == ["clear"]


def test_check_reports_fire_then_nothing(client, material):
    client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "alert_type": "out_of_stock"},
        headers=MANAGER,
    )

    first = client.post("/v1/stock-alerts/check", json={"material_id": material.id}).json()
    assert [t["kind"] for t in first] == ["fire"]
    assert first[0]["alert"]["alert_type"] == "out_of_stock"

    assert client.post("/v1/stock-alerts/check", json={"material_id": material.id}).json() == []


def test_toggle_and_delete_rule(client, material):
    rule = client.post(
        "/v1/stock-alerts/rules",
        json={"material_id": material.id, "alert_type": "out_of_stock"},
        headers=MANAGER,
    ).json()

    r = client.patch(f"/v1/stock-alerts/rules/{rule['id']}", json={"enabled": False}, headers=MANAGER)
    assert r.json()["enabled"] is False
    assert client.post("/v1/stock-alerts/check", json={"material_id": material.id}).json() == []

    assert client.delete(f"/v1/stock-alerts/rules/{rule['id']}", headers=MANAGER).status_code == 200
    assert client.get("/v1/stock-alerts/rules").json() == []


def test_alert_types(client):
    assert client.get("/v1/stock-alerts/types").json() == ["low_stock", "out_of_stock", "expiring"]
