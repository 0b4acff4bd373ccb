"""Work orders: numbering, visibility, completion notifications, materials and signatures."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from conftest import notification_count

from portal.db import SessionLocal
from portal.models.models import AuditLog
from portal.services import notifications
from portal.services.access import Role
from portal.services.work_orders import generate_work_order_number


def _create(client, **fields):
    body = {"description": "Leaking valve in boiler room", "company": "Acme Towers", "location": "Basement"}
    body.update(fields)
    res = client.post("/work-orders", json=body)
    assert res.status_code == 200, res.text
    return res.json()["workOrder"]


def test_numbers_are_sequential_per_day(login_as):
    admin, _ = login_as(Role.ADMIN)
    prefix = f"WO-{datetime.now(timezone.utc).strftime('%Y%m%d')}-"

    first = _create(admin)
    second = _create(admin)
    assert first["work_order_number"] == f"{prefix}001"
    assert second["work_order_number"] == f"{prefix}002"
    assert admin.get("/work-orders/generate-number").json()["workOrderNumber"] == f"{prefix}003"

    dup = admin.post("/work-orders", json={"description": "x", "work_order_number": first["work_order_number"]})
    assert dup.status_code == 409


def test_number_sequence_restarts_each_day(login_as):
    admin, _ = login_as(Role.ADMIN)
    _create(admin, work_order_number="WO-20240115-007")
    with SessionLocal() as db:
        assert generate_work_order_number(db, now=datetime(2024, 1, 15, 9, tzinfo=timezone.utc)) == "WO-20240115-008"
        assert generate_work_order_number(db, now=datetime(2024, 1, 16, 9, tzinfo=timezone.utc)) == "WO-20240116-001"


def test_number_sequence_passes_three_digits(login_as):
    admin, _ = login_as(Role.ADMIN)
    _create(admin, work_order_number="WO-20240115-999")
    day = datetime(2024, 1, 15, 9, tzinfo=timezone.utc)
    with SessionLocal() as db:
        assert generate_work_order_number(db, now=day) == "WO-20240115-1000"

    _create(admin, work_order_number="WO-20240115-1000")
    with SessionLocal() as db:
        assert generate_work_order_number(db, now=day) == "WO-20240115-1001"


def test_create_defaults_and_validation(login_as):
    admin, _ = login_as(Role.ADMIN)
    wo = _create(admin)
    assert wo["priority"] == "normal"
    assert wo["service_type"] == "maintenance"
    assert wo["work_completed"] == "pending"
    assert wo["date"] == datetime.now(timezone.utc).strftime("%Y-%m-%d")
    assert wo["assigned_to"] is None

    assert admin.post("/work-orders", json={"company": "No description"}).status_code == 400
    assert admin.post("/work-orders", json={"description": "x", "priority": "urgent"}).status_code == 400


def test_completion_notifies_once(login_as):
    admin, _ = login_as(Role.ADMIN)
    _, worker_id = login_as(Role.WORKER)
    wo = _create(admin, assigned_to=worker_id)
    assert notification_count("work_order.created") == 1

    res = admin.patch(f"/work-orders/{wo['id']}", json={"work_completed": "completed"})
    assert res.status_code == 200
    assert res.json()["workOrder"]["work_completed"] == "completed"
    completed = notification_count("work_order.completed")
    assert completed == 1

    admin.patch(f"/work-orders/{wo['id']}", json={"work_completed": "completed"})
    assert notification_count("work_order.completed") == completed
    assert notification_count("work_order.status_changed") == 0

    admin.patch(f"/work-orders/{wo['id']}", json={"work_completed": "in_progress"})
    assert notification_count("work_order.status_changed") == 1


def test_failed_notification_does_not_undo_completion(login_as, monkeypatch):
    admin, _ = login_as(Role.ADMIN)
    _, worker_id = login_as(Role.WORKER)
    wo = _create(admin, assigned_to=worker_id)

    def _unreachable(db, event):
        raise RuntimeError("mail relay unreachable")

    monkeypatch.setattr(notifications, "deliver", _unreachable)

    res = admin.patch(f"/work-orders/{wo['id']}", json={"work_completed": "completed"})
    assert res.status_code == 200
    assert res.json()["workOrder"]["work_completed"] == "completed"
    assert admin.get(f"/work-orders/{wo['id']}").json()["workOrder"]["work_completed"] == "completed"
    assert notification_count("work_order.completed") == 0


def test_workers_only_see_their_own_orders(login_as):
    admin, _ = login_as(Role.ADMIN)
    worker, worker_id = login_as(Role.WORKER)
    _, other_id = login_as(Role.WORKER)
    mine = _create(admin, assigned_to=worker_id)
    theirs = _create(admin, assigned_to=other_id)

    listed = worker.get("/work-orders", params={"assigned_to": other_id}).json()["workOrders"]
    assert [w["id"] for w in listed] == [mine["id"]]
    assert len(admin.get("/work-orders").json()["workOrders"]) == 2

    assert worker.get(f"/work-orders/{mine['id']}").status_code == 200
    assert worker.get(f"/work-orders/{theirs['id']}").status_code == 403
    assert worker.patch(f"/work-orders/{theirs['id']}", json={"unit": "4B"}).status_code == 403
    assert worker.delete(f"/work-orders/{mine['id']}").status_code == 403
    assert worker.get("/work-orders/stats").status_code == 403


def test_worker_creates_for_self(login_as):
    _, admin_id = login_as(Role.ADMIN)
    worker, worker_id = login_as(Role.WORKER)

    wo = _create(worker)
    assert wo["assigned_to"] == worker_id
    assert wo["created_by"] == worker_id
    assert worker.post("/work-orders", json={"description": "x", "assigned_to": admin_id}).status_code == 403


def test_clients_have_no_work_order_access(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    wo = _create(admin)

    assert client.get("/work-orders").status_code == 403
    assert client.get(f"/work-orders/{wo['id']}").status_code == 403
    assert client.post("/work-orders", json={"description": "x"}).status_code == 403
    assert admin.post("/work-orders", json={"description": "x", "assigned_to": client_id}).status_code == 400


def test_search_and_filters(login_as):
    admin, _ = login_as(Role.ADMIN)
    _create(admin, company="Harbor Plaza", priority="emergency")
    _create(admin, description="Replace lobby lights", service_type="replace")

    assert len(admin.get("/work-orders", params={"search": "harbor"}).json()["workOrders"]) == 1
    assert len(admin.get("/work-orders", params={"priority": "emergency"}).json()["workOrders"]) == 1
    assert len(admin.get("/work-orders", params={"service_type": "replace"}).json()["workOrders"]) == 1

    stats = admin.get("/work-orders/stats").json()["stats"]
    assert stats["total"] == 2
    assert stats["pending"] == 2
    assert stats["emergency"] == 1


def test_materials_total_cost(login_as):
    admin, _ = login_as(Role.ADMIN)
    wo = _create(admin)

    a = admin.post(f"/work-orders/{wo['id']}/materials", json={"material_name": "Pipe", "quantity": 3, "unit_cost": 2.5})
    assert a.json()["material"]["total_cost"] == 7.5
    b = admin.post(f"/work-orders/{wo['id']}/materials", json={"material_name": "Sealant", "unit_cost": 4})
    assert b.json()["material"]["quantity"] == 1
    assert admin.post(f"/work-orders/{wo['id']}/materials", json={"quantity": 1}).status_code == 400

    listed = admin.get(f"/work-orders/{wo['id']}/materials").json()
    assert listed["totalCost"] == 11.5

    res = admin.delete(f"/work-orders/{wo['id']}/materials", params={"material_id": a.json()["material"]["id"]})
    assert res.status_code == 200
    assert admin.get(f"/work-orders/{wo['id']}").json()["materialsTotal"] == 4


def test_signatures_capture_forwarded_ip(login_as):
    admin, _ = login_as(Role.ADMIN)
    worker, worker_id = login_as(Role.WORKER)
    wo = _create(admin, assigned_to=worker_id)

    sig = {"signer_type": "building_rep", "signer_name": "Dana Rep", "signature_data": "data:image/png;base64,AAA"}
    res = worker.post(
        f"/work-orders/{wo['id']}/signatures", json=sig, headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    )
    assert res.status_code == 200, res.text
    assert res.json()["signature"]["ip_address"] == "203.0.113.7"
    assert res.json()["signature"]["signed_at"] is not None

    # Signing again appends rather than replacing
    worker.post(f"/work-orders/{wo['id']}/signatures", json=sig)
    assert len(worker.get(f"/work-orders/{wo['id']}/signatures").json()["signatures"]) == 2

    bad = dict(sig, signer_type="tenant")
    assert worker.post(f"/work-orders/{wo['id']}/signatures", json=bad).status_code == 400
    assert worker.post(f"/work-orders/{wo['id']}/signatures", json={"signer_type": "building_rep"}).status_code == 400

    with SessionLocal() as db:
        signs = db.query(AuditLog).filter(AuditLog.action == "SIGN").all()
    assert len(signs) == 2
    assert notification_count("signature.added") >= 1


def test_customer_invitations(login_as):
    admin, _ = login_as(Role.ADMIN)
    worker, worker_id = login_as(Role.WORKER)
    wo = _create(admin, assigned_to=worker_id)

    assert worker.post(f"/work-orders/{wo['id']}/invitations", json={"email": "c@example.com"}).status_code == 400
    res = worker.post(
        f"/work-orders/{wo['id']}/invitations", json={"customer_name": "Carla", "email": "Carla@Example.com"}
    )
    assert res.status_code == 200
    inv = res.json()["invitation"]
    assert inv["email"] == "carla@example.com"
    assert inv["status"] == "pending"
    assert notification_count("work_order.invitation") == 1

    assert worker.delete(f"/work-orders/{wo['id']}/invitations", params={"invitation_id": inv["id"]}).status_code == 403
    assert admin.delete(f"/work-orders/{wo['id']}/invitations", params={"invitation_id": inv["id"]}).status_code == 200
    assert admin.get(f"/work-orders/{wo['id']}/invitations").json()["invitations"] == []


def test_missing_work_order(login_as):
    admin, _ = login_as(Role.ADMIN)
    worker, _ = login_as(Role.WORKER)
    missing = str(uuid.uuid4())
    assert admin.get(f"/work-orders/{missing}").status_code == 404
    assert worker.get(f"/work-orders/{missing}").status_code == 403


def test_delete_work_order(login_as):
    admin, _ = login_as(Role.ADMIN)
    wo = _create(admin)
    assert admin.delete(f"/work-orders/{wo['id']}").json() == {"success": True}
    assert admin.get(f"/work-orders/{wo['id']}").status_code == 404
