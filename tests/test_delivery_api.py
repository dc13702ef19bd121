"""Tests: Delivery API endpoints."""

from datetime import datetime, timedelta, timezone

import pytest

from deedflow.models.form import STAGE_KEYS

OWNER = {"X-Actor-Id": "user-1", "X-Actor-Role": "user"}
STAFF4 = {"X-Actor-Id": "s4-deniz", "X-Actor-Role": "staff4"}


def _staff(stage):
    return {"X-Actor-Id": f"{stage}-clerk", "X-Actor-Role": stage}


def _make_locked_form(client):
    res = client.post("/api/v1/forms", json={
        "service_type": "power-of-attorney",
        "fields": {"firstPartyName": "Ravi", "secondPartyName": "Meera", "stampDuty": 100},
    }, headers=OWNER)
    assert res.status_code == 201
    form_id = res.get_json()["id"]
    for stage in STAGE_KEYS:
        res = client.post(f"/api/v1/forms/{form_id}/stages/{stage}/approve", json={},
                          headers=_staff(stage))
        assert res.status_code == 200, res.get_json()
    return form_id


@pytest.fixture()
def form_id(client):
    return _make_locked_form(client)


def test_delivery_before_lock_is_409(client):
    res = client.post("/api/v1/forms", json={
        "service_type": "will-deed", "fields": {"testatorName": "A"},
    }, headers=OWNER)
    form_id = res.get_json()["id"]
    assert client.get(f"/api/v1/forms/{form_id}/delivery").status_code == 409


def test_get_delivery_reports_escalation(client, form_id):
    body = client.get(f"/api/v1/forms/{form_id}/delivery").get_json()
    assert body["status"] == "pending_user_selection"
    assert body["escalation_due"] is False

    later = (datetime.now(timezone.utc) + timedelta(days=8)).isoformat()
    body = client.get(f"/api/v1/forms/{form_id}/delivery", query_string={"now": later}).get_json()
    assert body["escalation_due"] is True


def test_bad_now_parameter(client, form_id):
    res = client.get(f"/api/v1/forms/{form_id}/delivery?now=yesterday")
    assert res.status_code == 422


def test_owner_preference_flow(client, form_id):
    url = f"/api/v1/forms/{form_id}/delivery"
    res = client.put(f"{url}/preference", json={
        "method": "Courier", "delivery_address": "12 Lake Road", "contact_phone": "555-0101",
    }, headers=OWNER)
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "user_selected"
    assert body["user_preference"]["delivery_address"] == "12 Lake Road"

    res = client.put(f"{url}/dispatch", json={}, headers=STAFF4)
    assert res.status_code == 422

    res = client.put(f"{url}/dispatch", json={"tracking_number": "TRK-9"}, headers=STAFF4)
    assert res.status_code == 200
    assert res.get_json()["status"] == "dispatched"

    res = client.put(f"{url}/delivered", json={"notes": "signed"}, headers=STAFF4)
    assert res.status_code == 200
    assert res.get_json()["status"] == "delivered"


def test_preference_requires_method(client, form_id):
    res = client.put(f"/api/v1/forms/{form_id}/delivery/preference",
                     json={"contact_phone": "1"}, headers=OWNER)
    assert res.status_code == 400


def test_preference_conditional_fields(client, form_id):
    res = client.put(f"/api/v1/forms/{form_id}/delivery/preference",
                     json={"method": "email", "contact_phone": "1"}, headers=OWNER)
    assert res.status_code == 422
    assert "email" in res.get_json()["details"]


def test_other_user_cannot_set_preference(client, form_id):
    res = client.put(
        f"/api/v1/forms/{form_id}/delivery/preference",
        json={"method": "pickup", "contact_phone": "1"},
        headers={"X-Actor-Id": "user-2", "X-Actor-Role": "user"},
    )
    assert res.status_code == 403


def test_staff4_decision_waits_for_window(client, app, form_id):
    url = f"/api/v1/forms/{form_id}/delivery/decision"
    res = client.put(url, json={"method": "pickup"}, headers=STAFF4)
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    original = app.config["DELIVERY_ESCALATION_DAYS"]
    app.config["DELIVERY_ESCALATION_DAYS"] = 0
    try:
        res = client.put(url, json={"method": "pickup", "notes": "no reply"}, headers=STAFF4)
    finally:
        app.config["DELIVERY_ESCALATION_DAYS"] = original
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "staff4_decided"
    assert body["staff4_decision"]["decided_by"] == "s4-deniz"


def test_escalations_endpoint(client, form_id):
    assert client.get("/api/v1/delivery/escalations").get_json()["total"] == 0

    later = (datetime.now(timezone.utc) + timedelta(days=8)).isoformat()
    body = client.get("/api/v1/delivery/escalations", query_string={"now": later}).get_json()
    assert body["total"] == 1
    assert body["items"][0]["form_id"] == form_id
    assert body["items"][0]["delivery"]["status"] == "pending_user_selection"
