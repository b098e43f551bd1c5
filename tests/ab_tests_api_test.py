from fastapi import status
from unittest.mock import patch

from data.database import ABTest, Assignment, AuditEvent

HEADERS = {"Authorization": "Bearer fake-client-token", "X-User-Id": "admin-1"}


def checkout_payload(**overrides):
    payload = {
        "name": "checkout_button_color",
        "display_name": "Checkout button color",
        "hypothesis": "A red checkout button converts better.",
        "success_metrics": {"primary": "conversion"},
        "variants": [
            {"name": "control", "display_name": "Blue button", "is_control": True,
             "traffic_weight": 50, "configuration": {"color": "blue"}},
            {"name": "red_button", "display_name": "Red button",
             "traffic_weight": 50, "configuration": {"color": "red"}},
        ],
    }
    payload.update(overrides)
    return payload

def create_active_test(client):
    assert client.post("/tests", json=checkout_payload(), headers=HEADERS).status_code == status.HTTP_201_CREATED
    response = client.post("/tests/checkout_button_color/activate", headers=HEADERS)
    assert response.status_code == status.HTTP_200_OK
    return response.json()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "healthy", "database": "connected", "cache": "connected"}
    assert response.headers["X-Request-ID"]

def test_request_id_is_propagated(client):
    response = client.get("/health", headers={"X-Request-ID": "page-view-42"})
    assert response.headers["X-Request-ID"] == "page-view-42"

def test_bearer_token_required(client):
    missing = client.get("/tests/active")
    wrong = client.get("/tests/active", headers={"Authorization": "Bearer not-a-token"})

    assert missing.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN)
    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED

def test_create_test(client, db_session):
    response = client.post("/tests", json=checkout_payload(), headers=HEADERS)

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json() == {"test_id": 1, "name": "checkout_button_color", "status": "draft"}

    by_name = client.get("/tests/checkout_button_color", headers=HEADERS).json()
    by_id = client.get("/tests/1", headers=HEADERS).json()
    assert by_name == by_id
    assert by_name["created_by"] == "admin-1"
    assert by_name["success_metrics"] == {"primary": "conversion"}
    assert [(v["name"], v["is_control"], v["configuration"]) for v in by_name["variants"]] == [
        ("control", True, {"color": "blue"}),
        ("red_button", False, {"color": "red"}),
    ]

    audit = db_session.query(AuditEvent).one()
    assert (audit.event_type, audit.actor, audit.resource_id) == ("ab_test_create", "admin-1", "1")

def test_create_test_validation_errors(client, db_session):
    payload = checkout_payload(name="Checkout Button")
    payload["variants"][1]["traffic_weight"] = 40

    response = client.post("/tests", json=payload, headers=HEADERS)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    body = response.json()
    assert body["error"] == "ValidationError"
    assert len(body["errors"]) == 2
    assert db_session.query(ABTest).count() == 0

def test_create_test_rejects_malformed_body(client):
    payload = checkout_payload()
    payload["variants"][0]["traffic_weight"] = 150

    response = client.post("/tests", json=payload, headers=HEADERS)
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

def test_lifecycle_over_http(client):
    client.post("/tests", json=checkout_payload(), headers=HEADERS)
    assert client.get("/tests/active", headers=HEADERS).json() == []

    activated = client.post("/tests/checkout_button_color/activate", headers=HEADERS)
    assert activated.json()["status"] == "active"
    assert [t["name"] for t in client.get("/tests/active", headers=HEADERS).json()] == ["checkout_button_color"]

    again = client.post("/tests/checkout_button_color/activate", headers=HEADERS)
    assert again.status_code == status.HTTP_409_CONFLICT
    assert again.json()["error"] == "InvalidTransition"

    assert client.post("/tests/checkout_button_color/restart", headers=HEADERS).status_code == status.HTTP_400_BAD_REQUEST
    assert client.post("/tests/missing_test/pause", headers=HEADERS).status_code == status.HTTP_404_NOT_FOUND
    assert client.post("/tests/checkout_button_color/pause", headers=HEADERS).json()["status"] == "paused"
    assert client.get("/tests/active", headers=HEADERS).json() == []

def test_update_success_metrics(client):
    create_active_test(client)

    response = client.put("/tests/checkout_button_color/success-metrics",
                          json={"success_metrics": {"primary": "revenue", "secondary": ["conversion"]}},
                          headers=HEADERS)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["success_metrics"]["primary"] == "revenue"

def test_assignment_route(client, db_session):
    client.post("/tests", json=checkout_payload(), headers=HEADERS)

    inactive = client.get("/tests/checkout_button_color/assignment?user_id=u1", headers=HEADERS)
    assert inactive.status_code == status.HTTP_409_CONFLICT
    assert inactive.json()["error"] == "TestNotActive"

    disabled = client.get("/tests/checkout_button_color/assignment?user_id=u1&fail_open=true", headers=HEADERS)
    assert disabled.status_code == status.HTTP_200_OK
    assert disabled.json()["excluded"] is True
    assert disabled.json()["reason"] == "feature_disabled"

    client.post("/tests/checkout_button_color/activate", headers=HEADERS)
    first = client.get("/tests/checkout_button_color/assignment?user_id=u1", headers=HEADERS).json()
    second = client.get("/tests/checkout_button_color/assignment?user_id=u1", headers=HEADERS).json()

    assert first == second
    assert first["variant_name"] == "control"
    assert first["configuration"] == {"color": "blue"}
    assert db_session.query(Assignment).count() == 1

    listed = client.get("/assignments?user_id=u1", headers=HEADERS).json()
    assert [(a["test_name"], a["variant_name"]) for a in listed] == [("checkout_button_color", "control")]

def test_assignment_requires_subject(client):
    create_active_test(client)

    response = client.get("/tests/checkout_button_color/assignment", headers=HEADERS)
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error"] == "InvalidSubject"

    # invalid input is a caller bug, fail_open does not hide it
    fail_open = client.get("/tests/checkout_button_color/assignment?fail_open=true", headers=HEADERS)
    assert fail_open.status_code == status.HTTP_400_BAD_REQUEST

def test_unknown_test_assignment(client):
    response = client.get("/tests/missing_test/assignment?session_id=s1", headers=HEADERS)
    assert response.status_code == status.HTTP_404_NOT_FOUND

def test_record_result_route(client):
    create_active_test(client)

    created = client.post("/results", json={
        "test_name": "checkout_button_color", "variant_name": "red_button",
        "session_id": "s1", "metric_name": "revenue", "metric_value": 19.99, "metric_type": "revenue",
    }, headers=HEADERS)
    assert created.status_code == status.HTTP_201_CREATED
    assert created.json()["metric_value"] == 19.99

    recent = client.get("/tests/checkout_button_color/results/recent?variant=red_button&metric=revenue",
                        headers=HEADERS).json()
    assert [(r["value"], r["subject_id"]) for r in recent] == [(19.99, "s1")]

    unknown = client.post("/results", json={
        "test_name": "checkout_button_color", "variant_name": "green_button", "metric_value": 1,
    }, headers=HEADERS)
    assert unknown.status_code == status.HTTP_404_NOT_FOUND
    assert unknown.json()["error"] == "VariantNotFound"

def test_record_result_async_route(client):
    with patch("api.results_routes.insert_result_to_db") as mock_task:
        mock_task.delay.return_value.id = "task-123"

        response = client.post("/results/async", json={
            "test_name": "checkout_button_color", "variant_name": "control", "user_id": "u1", "metric_value": 1,
        }, headers=HEADERS)

    assert response.status_code == status.HTTP_202_ACCEPTED
    assert response.json() == {"status": "queued", "task_id": "task-123"}
    payload = mock_task.delay.call_args.args[0]
    assert payload["test_name"] == "checkout_button_color"
    assert payload["metric_name"] == "conversion"
    assert payload["user_id"] == "u1"

def test_results_and_significance_routes(client):
    create_active_test(client)

    too_early = client.get("/tests/checkout_button_color/significance", headers=HEADERS)
    assert too_early.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert too_early.json()["error"] == "InsufficientData"

    for subject in ("u1", "u2", "u3", "u4"):
        variant = client.get(f"/tests/checkout_button_color/assignment?user_id={subject}",
                             headers=HEADERS).json()["variant_name"]
        client.post("/results", json={
            "test_name": "checkout_button_color", "variant_name": variant, "user_id": subject,
            "metric_value": 1 if subject in ("u1", "u3") else 0,
        }, headers=HEADERS)

    report = client.get("/tests/checkout_button_color/results?last_days=7", headers=HEADERS).json()
    sizes = {r["variant_name"]: r["metrics"]["conversion"]["sample_size"] for r in report["results"]}
    assert sizes == {"control": 1, "red_button": 3}
    assert report["date_range"]["start"] is not None

    significance = client.get("/tests/checkout_button_color/significance?metric=conversion", headers=HEADERS).json()
    assert significance["alpha"] == 0.05
    assert significance["control_variant"] == "control"
    (treatment,) = significance["statistical_analysis"]
    assert 0.0 <= treatment["p_value"] <= 1.0
    assert treatment["is_significant"] is False
