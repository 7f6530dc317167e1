import asyncio
import threading

import pytest
from fastapi.testclient import TestClient

from conftest import stage
from hrflow.core.database import get_db
from hrflow.core.security import create_access_token
from hrflow.utils.runtime_config import get_notify_webhook, set_notify_webhook
import main
from main import app


@pytest.fixture
def client(session_factory, gateway):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id, role="employee", employee_id=None, company_id=1):
    token = create_access_token(user_id, role, employee_id=employee_id, company_id=company_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def people(org):
    return {
        "emp": auth(100, employee_id=org.emp.id),
        "mgr": auth(600, role="manager", employee_id=org.mgr.id),
        "peer": auth(610, employee_id=org.peer.id),
        "hr": auth(900, role="hr_admin", employee_id=org.hr.id),
        "root": auth(1, role="admin", company_id=None),
    }


def test_health_and_metrics(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    m = client.get("/metrics")
    assert m.status_code == 200
    assert "workflow_requests_submitted_total" in m.text


def test_requires_bearer_token(client):
    assert client.get("/api/approvals/pending").status_code == 401
    bad = client.get("/api/approvals/pending", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401


def test_submit_approve_flow(client, people, org, make_definition):
    make_definition(stage(1, "RM"))

    r = client.post("/api/requests", json={"workflow_code": "LEAVE", "request_data": {"duration": 2}},
                    headers=people["emp"])
    assert r.status_code == 201
    req = r.json()
    assert req["request_status"] == "pending"
    assert req["request_number"].startswith("WFR-LEAVE-")

    queue = client.get("/api/approvals/pending", headers=people["mgr"]).json()
    assert [q["request"]["id"] for q in queue] == [req["id"]]

    done = client.post(f"/api/requests/{req['id']}/approve", json={"remarks": "enjoy"}, headers=people["mgr"])
    assert done.status_code == 200
    assert done.json()["request_status"] == "approved"

    details = client.get(f"/api/requests/{req['id']}", headers=people["emp"]).json()
    assert [a["action_type"] for a in details["actions"]] == ["submit", "approve"]
    assert details["actions"][1]["remarks"] == "enjoy"
    assert client.get(f"/api/requests/{req['id']}", headers=people["peer"]).status_code == 403

    mine = client.get(f"/api/employees/{org.emp.id}/requests", params={"status": "approved"},
                      headers=people["emp"]).json()
    assert [m["id"] for m in mine] == [req["id"]]
    assert client.get(f"/api/employees/{org.emp.id}/requests", headers=people["peer"]).status_code == 403


def test_workflow_errors_map_to_status_codes(client, people, org, make_definition):
    make_definition(stage(1, "RM"))
    req = client.post("/api/requests", json={"workflow_code": "LEAVE"}, headers=people["emp"]).json()

    r = client.post(f"/api/requests/{req['id']}/approve", json={}, headers=people["peer"])
    assert r.status_code == 409
    assert r.json()["error"] == "no_pending_assignment"

    r = client.post("/api/requests", json={"workflow_code": "WFH"}, headers=people["emp"])
    assert r.status_code == 422
    assert r.json()["error"] == "no_definition_configured"

    r = client.post("/api/requests/999/withdraw", json={}, headers=people["emp"])
    assert r.status_code == 404

    r = client.post("/api/requests", json={"workflow_code": "PAYROLL"}, headers=people["emp"])
    assert r.status_code == 422


def test_submit_on_behalf_needs_admin(client, people, org, make_definition):
    make_definition(stage(1, "RM"))
    body = {"workflow_code": "LEAVE", "employee_id": org.emp2.id}

    assert client.post("/api/requests", json=body, headers=people["emp"]).status_code == 403
    r = client.post("/api/requests", json=body, headers=people["hr"])
    assert r.status_code == 201
    assert (r.json()["employee_id"], r.json()["submitted_by"]) == (org.emp2.id, 900)


def test_withdraw_and_delegate(client, people, org, make_definition):
    make_definition(stage(1, {"approver_type": "RM", "allow_delegation": True}))
    first = client.post("/api/requests", json={"workflow_code": "LEAVE"}, headers=people["emp"]).json()
    second = client.post("/api/requests", json={"workflow_code": "LEAVE"}, headers=people["emp"]).json()

    r = client.post(f"/api/requests/{first['id']}/withdraw", json={"remarks": "oops"}, headers=people["emp"])
    assert r.json()["request_status"] == "withdrawn"

    r = client.post(f"/api/requests/{second['id']}/delegate", json={"to_user_id": 610}, headers=people["mgr"])
    assert r.status_code == 200
    assert [q["request"]["id"] for q in client.get("/api/approvals/pending", headers=people["peer"]).json()] \
        == [second["id"]]


def _definition_body(**kw):
    body = {
        "workflow_code": "LEAVE",
        "name": "Leave",
        "stages": [stage(1, "RM", sla_days=2), stage(2, "HR_ADMIN")],
        "applicability": [{"dimension": "company"}],
    }
    body.update(kw)
    return body


def test_admin_definition_lifecycle(client, people, org):
    assert client.post("/api/admin/definitions", json=_definition_body(), headers=people["emp"]).status_code == 403

    r = client.post("/api/admin/definitions", json=_definition_body(), headers=people["hr"])
    assert r.status_code == 201
    d = r.json()
    assert d["company_id"] == 1
    assert [s["stage_order"] for s in d["stages"]] == [1, 2]
    assert d["stages"][0]["next_stage_on_approve_id"] == d["stages"][1]["id"]

    listed = client.get("/api/admin/definitions", params={"workflow_code": "LEAVE"}, headers=people["hr"]).json()
    assert [x["id"] for x in listed] == [d["id"]]
    assert client.get("/api/admin/definitions", params={"company_id": 2}, headers=people["hr"]).status_code == 403

    r = client.patch(f"/api/admin/definitions/{d['id']}",
                     json={"allow_withdrawal": False, "new_version": True, "change_summary": "lock"},
                     headers=people["hr"])
    assert r.json()["version"] == 2
    assert r.json()["allow_withdrawal"] is False

    versions = client.get(f"/api/admin/definitions/{d['id']}/versions", headers=people["hr"]).json()
    assert [(v["version_number"], v["change_summary"]) for v in versions] == [(1, "Initial version"), (2, "lock")]

    clone = client.post(f"/api/admin/definitions/{d['id']}/clone", json={}, headers=people["hr"])
    assert clone.status_code == 201
    assert clone.json()["cloned_from_id"] == d["id"]
    assert clone.json()["name"] == "Leave (Copy)"

    assert client.get("/api/admin/definitions/999", headers=people["hr"]).json()["error"] == "definition_not_found"


def test_admin_rejects_invalid_definition(client, people, org):
    r = client.post("/api/admin/definitions", json=_definition_body(stages=[stage(1)]), headers=people["hr"])
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_configuration"


def test_seed_defaults_and_sweep(client, people, org):
    r = client.post("/api/admin/companies/1/defaults", headers=people["hr"])
    assert r.status_code == 200
    assert len(r.json()) == 7
    assert client.post("/api/admin/companies/2/defaults", headers=people["hr"]).status_code == 403

    assert client.post("/api/admin/sla/sweep", json={}, headers=people["hr"]).status_code == 403
    sweep = client.post("/api/admin/sla/sweep", json={"now": "2030-01-01T00:00:00Z"}, headers=people["root"])
    assert sweep.status_code == 200
    assert sweep.json()["errors"] == []
    warn = client.post("/api/admin/sla/warnings", json={"hours": 2}, headers=people["root"])
    assert warn.json()["warned"] == 0


def test_webhook_config(client, people):
    previous = get_notify_webhook()
    try:
        r = client.put("/api/admin/notify/webhook", json={"url": " https://hooks.example.com/hr "},
                       headers=people["root"])
        assert r.json() == {"configured": True}
        assert client.get("/api/admin/notify/webhook", headers=people["root"]).json()["url"] == \
            "https://hooks.example.com/hr"
        assert client.get("/api/admin/notify/webhook", headers=people["hr"]).status_code == 403
    finally:
        set_notify_webhook(previous)


def test_background_pass_runs_off_the_event_loop():
    threads = []

    async def drive():
        task = asyncio.create_task(main._loop("sweep", lambda: threads.append(threading.get_ident()), 3600))
        while not threads:
            await asyncio.sleep(0.01)
        task.cancel()

    asyncio.run(drive())

    assert threads and threads[0] != threading.get_ident()
