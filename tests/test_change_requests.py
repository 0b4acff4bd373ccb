"""Client change requests: filing, visibility and one-shot review."""

from __future__ import annotations

import uuid

from conftest import notification_count

from portal.services.access import Role


def _project_with_client(admin, client_id):
    pid = admin.post("/projects", json={"name": "Harbor Plaza"}).json()["project"]["id"]
    admin.post(f"/projects/{pid}/assignments", json={"userId": client_id})
    return pid


def _file(client, pid, sections=("scope", "budget", "timeline"), message="Please revisit"):
    return client.post(f"/projects/{pid}/change-requests", json={"sections": list(sections), "message": message})


def test_client_files_request_and_admins_are_notified(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, client_id)

    res = _file(client, pid)
    assert res.status_code == 200, res.text
    cr = res.json()["changeRequest"]
    assert cr["status"] == "pending"
    assert cr["requested_by"] == client_id
    assert cr["requested_sections"] == ["scope", "budget", "timeline"]
    assert cr["approved_sections"] is None
    assert notification_count("change_request.created") == 1


def test_empty_sections_rejected(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, client_id)

    res = _file(client, pid, sections=())
    assert res.status_code == 400
    assert res.json()["detail"] == "At least one section must be selected"


def test_only_assigned_clients_may_file(login_as):
    admin, _ = login_as(Role.ADMIN)
    outsider, _ = login_as(Role.CLIENT)
    employee, employee_id = login_as(Role.EMPLOYEE)
    pid = admin.post("/projects", json={"name": "Elm St"}).json()["project"]["id"]
    admin.post(f"/projects/{pid}/assignments", json={"userId": employee_id})

    assert _file(outsider, pid).status_code == 403
    assert _file(employee, pid).status_code == 403
    assert _file(admin, pid).status_code == 403
    assert _file(outsider, str(uuid.uuid4())).status_code == 403


def test_approve_records_subset_of_sections(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, client_id)
    cr_id = _file(client, pid).json()["changeRequest"]["id"]

    res = admin.patch(f"/projects/{pid}/change-requests", json={
        "changeRequestId": cr_id, "action": "approve", "approvedSections": ["scope"], "adminNotes": "Scope only",
    })
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "approved"
    assert body["changeRequest"]["approved_sections"] == ["scope"]
    assert body["changeRequest"]["admin_notes"] == "Scope only"
    assert body["changeRequest"]["reviewed_at"] is not None
    assert notification_count("change_request.reviewed") == 1

    again = admin.patch(f"/projects/{pid}/change-requests", json={"changeRequestId": cr_id, "action": "reject"})
    assert again.status_code == 409


def test_reject_discards_approved_sections(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, client_id)
    cr_id = _file(client, pid).json()["changeRequest"]["id"]

    res = admin.patch(f"/projects/{pid}/change-requests", json={
        "changeRequestId": cr_id, "action": "reject", "approvedSections": ["scope"],
    })
    assert res.json()["changeRequest"]["status"] == "rejected"
    assert res.json()["changeRequest"]["approved_sections"] is None


def test_review_validation_and_permissions(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, client_id)
    cr_id = _file(client, pid).json()["changeRequest"]["id"]

    bad = admin.patch(f"/projects/{pid}/change-requests", json={"changeRequestId": cr_id, "action": "maybe"})
    assert bad.status_code == 400
    own = client.patch(f"/projects/{pid}/change-requests", json={"changeRequestId": cr_id, "action": "approve"})
    assert own.status_code == 403
    missing = admin.patch(
        f"/projects/{pid}/change-requests", json={"changeRequestId": str(uuid.uuid4()), "action": "approve"}
    )
    assert missing.status_code == 404


def test_clients_list_only_their_own_requests(login_as):
    admin, _ = login_as(Role.ADMIN)
    alice, alice_id = login_as(Role.CLIENT)
    bob, bob_id = login_as(Role.CLIENT)
    pid = _project_with_client(admin, alice_id)
    admin.post(f"/projects/{pid}/assignments", json={"userId": bob_id})
    _file(alice, pid, sections=["scope"])
    _file(bob, pid, sections=["budget"])

    alice_view = alice.get(f"/projects/{pid}/change-requests").json()["changeRequests"]
    admin_view = admin.get(f"/projects/{pid}/change-requests").json()["changeRequests"]
    assert [cr["requested_by"] for cr in alice_view] == [alice_id]
    assert len(admin_view) == 2
