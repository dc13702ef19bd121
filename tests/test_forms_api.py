"""
Tests: Forms API — HTTP surface over the workflow engine.

Covers status-code mapping of the service errors, actor headers,
and the read-only query endpoints.
"""

import pytest

from deedflow.models.form import STAGE_KEYS

ROLES = {
    "owner": ("user-1", "user"),
    "staff1": ("s1-anna", "staff1"),
    "staff2": ("s2-bora", "staff2"),
    "staff3": ("s3-cem", "staff3"),
    "staff4": ("s4-deniz", "staff4"),
    "staff5": ("s5-efe", "staff5"),
}


def _h(who):
    actor_id, role = ROLES[who]
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


def _make_form(client, **overrides):
    payload = {
        "service_type": "sale-deed",
        "fields": {
            "sellerName": "Ravi Kumar",
            "buyerName": "Meera Shah",
            "propertyValue": 40000,
            "stampDuty": 2400,
        },
    }
    payload.update(overrides)
    res = client.post("/api/v1/forms", json=payload, headers=_h("owner"))
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _act(client, form_id, stage, action="approve", who=None, **body):
    return client.post(
        f"/api/v1/forms/{form_id}/stages/{stage}/{action}",
        json=body,
        headers=_h(who or stage),
    )


@pytest.fixture()
def form(client):
    return _make_form(client)


# ── Submission ───────────────────────────────────────────────────────────────


def test_submit_form(form):
    assert form["status"] == "submitted"
    assert form["current_stage"] == "staff1"
    assert form["submitted_by"] == "user-1"
    assert set(form["approvals"]) == set(STAGE_KEYS)
    assert form["admin_notes"] == []


def test_submit_requires_actor_headers(client):
    res = client.post("/api/v1/forms", json={"service_type": "sale-deed", "fields": {}})
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


def test_submit_rejects_unknown_role(client):
    res = client.post(
        "/api/v1/forms", json={"service_type": "sale-deed", "fields": {}},
        headers={"X-Actor-Id": "x", "X-Actor-Role": "superuser"},
    )
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


def test_submit_validation_errors(client):
    res = client.post("/api/v1/forms", json={"fields": {}}, headers=_h("owner"))
    assert res.status_code == 400

    res = client.post(
        "/api/v1/forms", json={"service_type": "sale-deed", "fields": {"sellerName": "Ravi"}},
        headers=_h("owner"),
    )
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
    assert body["details"]["buyerName"] == "required"


def test_submit_requires_json_content_type(client):
    res = client.post("/api/v1/forms", data="service_type=sale-deed", headers={
        **_h("owner"), "Content-Type": "text/plain",
    })
    assert res.status_code == 415


def test_user_cannot_submit_for_someone_else(client):
    res = client.post(
        "/api/v1/forms",
        json={"service_type": "will-deed", "fields": {"testatorName": "A"}, "submitted_by": "user-7"},
        headers=_h("owner"),
    )
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


# ── Transitions ──────────────────────────────────────────────────────────────


def test_full_pipeline_over_http(client, form):
    for stage in STAGE_KEYS:
        res = _act(client, form["id"], stage, notes=f"{stage} ok")
        assert res.status_code == 200, res.get_json()
    body = res.get_json()
    assert body["status"] == "locked_by_staff5"
    assert body["document_ready"] is True
    assert body["delivery"]["status"] == "pending_user_selection"
    assert body["approvals"]["staff3"]["verification_aspect"] == "land"


def test_lock_alias(client, form):
    for stage in STAGE_KEYS[:4]:
        _act(client, form["id"], stage)
    res = _act(client, form["id"], "staff5", "lock")
    assert res.status_code == 200
    assert res.get_json()["status"] == "locked_by_staff5"


def test_out_of_order_is_409(client, form):
    res = _act(client, form["id"], "staff3")
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_OUT_OF_ORDER"
    assert body["details"]["stage"] == "staff3"


def test_wrong_role_is_403(client, form):
    res = _act(client, form["id"], "staff1", who="staff2")
    assert res.status_code == 403
    assert res.get_json()["details"]["capability"] == "form_review"


def test_locked_form_is_409(client, form):
    for stage in STAGE_KEYS:
        _act(client, form["id"], stage)
    res = _act(client, form["id"], "staff4", "reject")
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_FORM_LOCKED"
    assert body["details"]["status"] == "locked_by_staff5"


def test_unknown_form_is_404(client):
    res = _act(client, "missing", "staff1")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"
    assert client.get("/api/v1/forms/missing").status_code == 404


def test_unknown_action_is_422(client, form):
    res = _act(client, form["id"], "staff1", "escalate")
    assert res.status_code == 422


def test_missing_stamp_duty_is_incomplete_data(client):
    created = _make_form(client, fields={
        "sellerName": "Ravi", "buyerName": "Meera", "propertyValue": 1000,
    })
    res = _act(client, created["id"], "staff1")
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_INCOMPLETE_DATA"
    assert res.get_json()["details"] == {"stampDuty": "required"}


def test_field_patches_must_be_object(client, form):
    res = _act(client, form["id"], "staff1", "correct", field_patches=["buyerName"])
    assert res.status_code == 400


def test_verification_aspect_must_be_string(client, form):
    _act(client, form["id"], "staff1")
    res = _act(client, form["id"], "staff2", verification_aspect=["amount"])
    assert res.status_code == 422
    body = res.get_json()
    assert body["details"] == {"verification_aspect": "must be a string"}
    assert client.get(f"/api/v1/forms/{form['id']}").get_json()["approvals"]["staff2"]["approved"] is False


def test_request_correction_must_be_boolean(client, form):
    for stage in ("staff1", "staff2", "staff3"):
        _act(client, form["id"], stage)
    res = _act(client, form["id"], "staff4", "reject", notes="plot", request_correction="false")
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
    assert client.get(f"/api/v1/forms/{form['id']}").get_json()["status"] == "pending_cross_verification"


def test_correction_request_over_http(client, form):
    for stage in ("staff1", "staff2", "staff3"):
        _act(client, form["id"], stage)
    res = _act(
        client, form["id"], "staff4", "reject",
        notes="re-measure plot", request_correction=True, reopen_stage="staff3",
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "needs_correction"
    assert body["current_stage"] == "staff3"
    assert body["approvals"]["staff3"]["approved"] is False
    assert body["approvals"]["staff2"]["approved"] is True


# ── Drafts ───────────────────────────────────────────────────────────────────


def test_draft_endpoints(client):
    draft = _make_form(client, fields={"sellerName": "Ravi"}, as_draft=True)
    assert draft["status"] == "draft"

    res = client.put(
        f"/api/v1/forms/{draft['id']}/draft",
        json={"fields": {"buyerName": "Meera", "propertyValue": 5000}},
        headers=_h("owner"),
    )
    assert res.status_code == 200
    assert res.get_json()["status"] == "in-progress"

    res = client.post(f"/api/v1/forms/{draft['id']}/submit", headers=_h("owner"))
    assert res.status_code == 200
    assert res.get_json()["status"] == "submitted"


def test_save_draft_requires_fields_object(client):
    draft = _make_form(client, fields={}, as_draft=True)
    res = client.put(f"/api/v1/forms/{draft['id']}/draft", json={}, headers=_h("owner"))
    assert res.status_code == 400


@pytest.mark.parametrize("flag", ["false", 0, "yes"])
def test_as_draft_must_be_boolean(client, flag):
    res = client.post(
        "/api/v1/forms",
        json={"service_type": "sale-deed", "fields": {"sellerName": "Ravi"}, "as_draft": flag},
        headers=_h("owner"),
    )
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
    assert client.get("/api/v1/forms").get_json()["total"] == 0


# ── Staff helpers ────────────────────────────────────────────────────────────


def test_stamp_duty_endpoint(client):
    created = _make_form(client, fields={
        "sellerName": "Ravi", "buyerName": "Meera", "propertyValue": 40000,
    })
    res = client.post(f"/api/v1/forms/{created['id']}/stamp-duty", json={}, headers=_h("staff1"))
    assert res.status_code == 200
    body = res.get_json()
    assert body["calculation"]["amount"] == 2400.0
    assert body["form"]["fields"]["stampDuty"] == 2400.0


def test_stamp_duty_rejects_out_of_range_value(client, form):
    res = client.post(
        f"/api/v1/forms/{form['id']}/stamp-duty", json={"property_value": 1e30}, headers=_h("staff1"),
    )
    assert res.status_code == 422
    assert "property_value" in res.get_json()["details"]
    assert client.get(f"/api/v1/forms/{form['id']}").get_json()["fields"]["stampDuty"] == 2400


def test_final_done_short_circuit(client):
    created = _make_form(client, service_type="e-stamp", fields={
        "firstPartyName": "Ravi", "amount": 500, "stampDuty": 0,
    })
    res = client.post(f"/api/v1/forms/{created['id']}/final-done", json={}, headers=_h("staff2"))
    assert res.status_code == 409

    for stage in ("staff1", "staff2", "staff3"):
        assert _act(client, created["id"], stage).status_code == 200
    res = client.post(
        f"/api/v1/forms/{created['id']}/final-done", json={"notes": "issued"}, headers=_h("staff2"),
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "completed"
    assert body["final_done_by"] == "s2-bora"
    assert body["delivery"] is None

    assert _act(client, created["id"], "staff4").status_code == 409


def test_final_done_not_for_full_pipeline_types(client, form):
    for stage in ("staff1", "staff2", "staff3"):
        _act(client, form["id"], stage)
    res = client.post(f"/api/v1/forms/{form['id']}/final-done", json={}, headers=_h("staff2"))
    assert res.status_code == 422


# ── Queries ──────────────────────────────────────────────────────────────────


def test_list_and_filter_forms(client, form):
    _make_form(client, service_type="will-deed", fields={"testatorName": "A"})
    _act(client, form["id"], "staff1")

    body = client.get("/api/v1/forms").get_json()
    assert body["total"] == 2
    assert "admin_notes" not in body["items"][0]

    body = client.get("/api/v1/forms?status=verified").get_json()
    assert [item["id"] for item in body["items"]] == [form["id"]]

    body = client.get("/api/v1/forms?service_type=will-deed").get_json()
    assert body["total"] == 1

    assert client.get("/api/v1/forms?status=bogus").status_code == 422


def test_stage_queue(client, form):
    other = _make_form(client)
    _act(client, form["id"], "staff1")

    body = client.get("/api/v1/staff/staff1/queue").get_json()
    assert [item["id"] for item in body["items"]] == [other["id"]]
    body = client.get("/api/v1/staff/staff2/queue").get_json()
    assert [item["id"] for item in body["items"]] == [form["id"]]
    assert client.get("/api/v1/staff/staff9/queue").status_code == 422


def test_ready_for_final(client, form):
    url = f"/api/v1/forms/{form['id']}/ready-for-final"
    assert client.get(url).get_json()["ready_for_final"] is False
    for stage in ("staff1", "staff2", "staff3"):
        _act(client, form["id"], stage)
    assert client.get(url).get_json()["ready_for_final"] is True


def test_history(client, form):
    _act(client, form["id"], "staff1", notes="looks fine")
    _act(client, form["id"], "staff3")
    body = client.get(f"/api/v1/forms/{form['id']}/history").get_json()
    assert [item["action"] for item in body["items"]] == ["form.submit", "form.staff1.approve"]
    assert body["items"][1]["actor"] == "s1-anna"


def test_completeness(client):
    created = _make_form(client, fields={
        "sellerName": "Ravi", "buyerName": "Meera", "propertyValue": 1000,
    })
    body = client.get(f"/api/v1/forms/{created['id']}/completeness").get_json()
    assert body["missing_required"] == []
    assert body["stage_requirements"]["staff1"] == ["stampDuty"]
    assert body["complete"] is False
    assert body["ready_for_final"] is False


def test_request_id_header(client, form):
    res = client.get(f"/api/v1/forms/{form['id']}", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
