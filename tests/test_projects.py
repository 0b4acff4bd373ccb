"""Project lifecycle, assignment-scoped visibility, tasks and the team view."""

from __future__ import annotations

import uuid

from conftest import notification_count

from portal.db import SessionLocal
from portal.models.models import (
    AuditLog,
    ProjectAssignment,
    ProjectChangeRequest,
    ProjectEstimateItem,
    ProjectImage,
    ProjectInvitation,
    ProjectTask,
    ProjectUpdate,
)
from portal.services.access import Role
from portal.storage.local_provider import LocalStorageProvider


def _create_project(admin, **fields):
    body = {"name": "Tower B"}
    body.update(fields)
    res = admin.post("/projects", json=body)
    assert res.status_code == 200, res.text
    return res.json()["project"]


def _assign(admin, project_id, user_id):
    res = admin.post(f"/projects/{project_id}/assignments", json={"userId": user_id})
    assert res.status_code == 200, res.text
    return res.json()


def test_create_defaults_to_planning(login_as):
    admin, _ = login_as(Role.ADMIN)
    project = _create_project(admin)
    assert project["status"] == "planning"
    assert project["on_hold_reason"] is None

    assert admin.post("/projects", json={"name": "  "}).status_code == 400
    assert admin.post("/projects", json={"name": "X", "status": "paused"}).status_code == 400


def test_on_hold_requires_reason_and_is_cleared_on_resume(login_as):
    admin, _ = login_as(Role.ADMIN)
    pid = _create_project(admin)["id"]

    res = admin.patch(f"/projects/{pid}", json={"status": "on_hold"})
    assert res.status_code == 400
    assert res.json()["detail"] == "On hold reason is required"

    res = admin.patch(f"/projects/{pid}", json={
        "status": "on_hold", "on_hold_reason": "Permit delay", "expected_resume_date": "2024-09-01",
    })
    assert res.status_code == 200
    held = res.json()["project"]
    assert held["status"] == "on_hold"
    assert held["on_hold_reason"] == "Permit delay"
    assert held["expected_resume_date"] == "2024-09-01"

    # Other edits while on hold keep the reason
    res = admin.patch(f"/projects/{pid}", json={"description": "Waiting on city"})
    assert res.json()["project"]["on_hold_reason"] == "Permit delay"

    res = admin.patch(f"/projects/{pid}", json={"status": "active", "on_hold_reason": "ignored"})
    resumed = res.json()["project"]
    assert resumed["status"] == "active"
    assert resumed["on_hold_reason"] is None
    assert resumed["expected_resume_date"] is None

    with SessionLocal() as db:
        actions = [a.action for a in db.query(AuditLog).filter(AuditLog.entity_id == uuid.UUID(pid)).all()]
    assert actions.count("UPDATE") == 3
    assert "CREATE" in actions


def test_client_sees_only_assigned_projects(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    mine = _create_project(admin, name="Mine")
    other = _create_project(admin, name="Other")
    _assign(admin, mine["id"], client_id)

    listed = client.get("/projects").json()["projects"]
    assert [p["id"] for p in listed] == [mine["id"]]

    assert client.get(f"/projects/{mine['id']}").status_code == 200
    assert client.get(f"/projects/{other['id']}").status_code == 403
    assert client.patch(f"/projects/{mine['id']}", json={"name": "Renamed"}).status_code == 403
    assert client.delete(f"/projects/{mine['id']}").status_code == 403


def test_missing_project_does_not_leak_existence(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, _ = login_as(Role.EMPLOYEE)
    missing = str(uuid.uuid4())

    assert employee.get(f"/projects/{missing}").status_code == 403
    assert admin.get(f"/projects/{missing}").status_code == 404
    assert admin.get("/projects/not-a-uuid").status_code == 404


def test_assigned_employee_can_update_but_not_delete(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, employee_id = login_as(Role.EMPLOYEE)
    pid = _create_project(admin)["id"]

    assert employee.patch(f"/projects/{pid}", json={"status": "active"}).status_code == 403
    _assign(admin, pid, employee_id)
    assert employee.patch(f"/projects/{pid}", json={"status": "active"}).status_code == 200
    assert employee.delete(f"/projects/{pid}").status_code == 403
    assert employee.post(f"/projects/{pid}/assignments", json={"userId": employee_id}).status_code == 403

    assert admin.delete(f"/projects/{pid}").json() == {"success": True}
    assert admin.get(f"/projects/{pid}").status_code == 404


def test_assignment_is_unique_and_removable(login_as):
    admin, _ = login_as(Role.ADMIN)
    _, worker_id = login_as(Role.WORKER)
    pid = _create_project(admin)["id"]

    assert _assign(admin, pid, worker_id)["created"] is True
    assert _assign(admin, pid, worker_id)["created"] is False
    assert len(admin.get(f"/projects/{pid}/assignments").json()["assignments"]) == 1

    res = admin.request("DELETE", f"/projects/{pid}/assignments", json={"userId": worker_id})
    assert res.status_code == 200
    assert admin.get(f"/projects/{pid}/assignments").json()["assignments"] == []

    res = admin.post(f"/projects/{pid}/assignments", json={"userId": str(uuid.uuid4())})
    assert res.status_code == 404


def test_team_hides_admins_from_non_admins(login_as):
    admin, admin_id = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    _, worker_id = login_as(Role.WORKER)
    pid = _create_project(admin)["id"]
    for uid in (admin_id, client_id, worker_id):
        _assign(admin, pid, uid)

    seen_by_admin = {m["user_id"] for m in admin.get(f"/projects/{pid}/team").json()["team"]}
    seen_by_client = {m["user_id"] for m in client.get(f"/projects/{pid}/team").json()["team"]}
    assert seen_by_admin == {admin_id, client_id, worker_id}
    assert seen_by_client == {client_id, worker_id}


def test_tasks_track_completion_and_notify_admins(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, employee_id = login_as(Role.EMPLOYEE)
    pid = _create_project(admin)["id"]
    _assign(admin, pid, employee_id)

    first = employee.post(f"/projects/{pid}/tasks", json={"title": "Order drywall"}).json()["task"]
    second = employee.post(f"/projects/{pid}/tasks", json={"title": "Schedule crew"}).json()["task"]
    assert (first["sort_order"], second["sort_order"]) == (0, 1)
    assert notification_count("task.created") == 2

    res = employee.patch(f"/projects/{pid}/tasks", json={"taskId": first["id"], "is_completed": True})
    assert res.status_code == 200
    done = res.json()["task"]
    assert done["is_completed"] is True
    assert done["completed_by"] == employee_id
    assert done["completed_at"] is not None
    assert res.json()["stats"] == {"total": 2, "completed": 1}

    # Saving a completed task again is not a new completion
    employee.patch(f"/projects/{pid}/tasks", json={"taskId": first["id"], "is_completed": True})
    assert notification_count("task.completed") == 1

    reopened = employee.patch(f"/projects/{pid}/tasks", json={"taskId": first["id"], "is_completed": False}).json()
    assert reopened["task"]["completed_at"] is None
    assert reopened["task"]["completed_by"] is None

    assert employee.request("DELETE", f"/projects/{pid}/tasks", json={"taskId": second["id"]}).status_code == 403
    res = admin.delete(f"/projects/{pid}/tasks", params={"task_id": second["id"]})
    assert res.json()["stats"] == {"total": 1, "completed": 0}


def test_progress_updates(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _create_project(admin)["id"]
    _assign(admin, pid, client_id)

    assert admin.post(f"/projects/{pid}/updates", json={"content": "no title"}).status_code == 400
    res = admin.post(f"/projects/{pid}/updates", json={"title": "Framing done", "content": "Level 2"})
    assert res.status_code == 200
    assert client.post(f"/projects/{pid}/updates", json={"title": "Hi"}).status_code == 403
    updates = client.get(f"/projects/{pid}/updates").json()["updates"]
    assert [u["title"] for u in updates] == ["Framing done"]


def test_invitation_accept_by_signed_in_user(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _create_project(admin)["id"]

    assert admin.post(f"/projects/{pid}/invitations", json={"email": "not-an-email"}).status_code == 400
    inv = admin.post(f"/projects/{pid}/invitations", json={"email": "someone@example.com"}).json()["invitation"]
    assert notification_count("project.invitation") == 1

    res = client.post(f"/projects/invitations/{inv['token']}/accept")
    assert res.status_code == 200
    assert res.json()["project_id"] == pid
    assert client.get(f"/projects/{pid}").status_code == 200

    assert client.post(f"/projects/invitations/{inv['token']}/accept").status_code == 404


def test_audit_trail_is_admin_only_and_verifiable(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, _ = login_as(Role.EMPLOYEE)
    pid = _create_project(admin)["id"]
    admin.patch(f"/projects/{pid}", json={"status": "active"})

    res = admin.get("/audit-logs", params={"entity_type": "project", "entity_id": pid})
    assert res.status_code == 200
    entries = res.json()["auditLogs"]
    assert {e["action"] for e in entries} == {"CREATE", "UPDATE"}
    assert all(e["verified"] for e in entries)
    update = next(e for e in entries if e["action"] == "UPDATE")
    assert update["changes"]["status"] == {"before": "planning", "after": "active"}

    assert employee.get("/audit-logs").status_code == 403


def test_unassigned_employee_cannot_read_tasks_until_assigned(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, employee_id = login_as(Role.EMPLOYEE)
    pid = _create_project(admin)["id"]
    admin.post(f"/projects/{pid}/tasks", json={"title": "Pour footings"})

    assert employee.get(f"/projects/{pid}/tasks").status_code == 403
    _assign(admin, pid, employee_id)
    res = employee.get(f"/projects/{pid}/tasks")
    assert res.status_code == 200
    assert [t["title"] for t in res.json()["tasks"]] == ["Pour footings"]


def test_flags_must_be_json_booleans(login_as):
    admin, _ = login_as(Role.ADMIN)
    pid = _create_project(admin, is_funded=True)["id"]
    task = admin.post(f"/projects/{pid}/tasks", json={"title": "Inspect"}).json()["task"]

    res = admin.patch(f"/projects/{pid}/tasks", json={"taskId": task["id"], "is_completed": "false"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid is_completed"
    listed = admin.get(f"/projects/{pid}/tasks").json()["tasks"]
    assert listed[0]["is_completed"] is False

    assert admin.patch(f"/projects/{pid}", json={"is_funded": "false"}).status_code == 400
    assert admin.get(f"/projects/{pid}").json()["project"]["is_funded"] is True
    assert admin.post("/projects", json={"name": "Y", "is_funded": 1}).status_code == 400

    res = admin.patch(f"/projects/{pid}", json={"is_funded": False})
    assert res.json()["project"]["is_funded"] is False


def test_delete_project_removes_children_and_unlinks_records(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _create_project(admin)["id"]
    _assign(admin, pid, client_id)

    admin.post(f"/projects/{pid}/tasks", json={"title": "Frame walls"})
    admin.post(f"/projects/{pid}/updates", json={"title": "Kickoff"})
    admin.post(f"/projects/{pid}/invitations", json={"email": "later@example.com"})
    admin.post(f"/projects/{pid}/estimate", json={"category": "Labor", "price_rate": 50, "quantity": 8})
    assert client.post(f"/projects/{pid}/change-requests", json={"sections": ["scope"]}).status_code == 200
    image = admin.post(
        f"/projects/{pid}/images/upload", files={"file": ("site.jpg", b"\xff\xd8jpeg", "image/jpeg")}
    ).json()["image"]
    wo = admin.post("/work-orders", json={"description": "Patch drywall", "project_id": pid}).json()["workOrder"]
    doc = admin.post("/documents", json={"filename": "plan.pdf", "display_name": "Plan", "project_id": pid}).json()["document"]
    with SessionLocal() as db:
        image_key = db.query(ProjectImage).filter(ProjectImage.id == uuid.UUID(image["id"])).one().storage_key
    storage = LocalStorageProvider()
    assert storage.exists(image_key)

    assert admin.delete(f"/projects/{pid}").json() == {"success": True}

    project_uuid = uuid.UUID(pid)
    with SessionLocal() as db:
        for model in (
            ProjectAssignment, ProjectTask, ProjectUpdate, ProjectInvitation,
            ProjectChangeRequest, ProjectEstimateItem, ProjectImage,
        ):
            assert db.query(model).filter(model.project_id == project_uuid).count() == 0, model.__name__
    assert not storage.exists(image_key)

    kept = admin.get(f"/work-orders/{wo['id']}")
    assert kept.status_code == 200
    assert kept.json()["workOrder"]["project_id"] is None
    assert admin.get(f"/documents/{doc['id']}").json()["document"]["project_id"] is None
