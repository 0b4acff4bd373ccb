"""Document library and client sharing: grants, expiry, first-touch stamps and content."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from conftest import notification_count

from portal.db import SessionLocal
from portal.models.models import DocumentShare
from portal.services.access import Role


def _create_doc(client, **fields):
    body = {"filename": "plans.pdf", "display_name": "Floor plans", "storage_url": "https://files.example.com/plans.pdf"}
    body.update(fields)
    res = client.post("/documents", json=body)
    assert res.status_code == 200, res.text
    return res.json()["document"]


def _share(client, doc_id, user_id, **fields):
    body = {"client_user_id": user_id}
    body.update(fields)
    return client.post(f"/documents/{doc_id}/share", json=body)


def _share_row(doc_id, user_id):
    with SessionLocal() as db:
        return (
            db.query(DocumentShare)
            .filter(DocumentShare.document_id == uuid.UUID(doc_id), DocumentShare.client_user_id == uuid.UUID(user_id))
            .all()
        )


def test_share_grants_view_and_download_is_gated(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    doc = _create_doc(admin)
    assert doc["file_type"] == "pdf"
    assert doc["has_content"] is True

    assert client.get(f"/documents/{doc['id']}").status_code == 403

    res = _share(admin, doc["id"], client_id, can_download=False)
    assert res.status_code == 200, res.text
    assert res.json()["share"]["can_download"] is False
    assert notification_count("document.shared") == 1

    assert client.get(f"/documents/{doc['id']}").status_code == 200
    assert client.get(f"/documents/{doc['id']}/download").status_code == 403
    [row] = _share_row(doc["id"], client_id)
    assert row.viewed_at is not None
    assert row.downloaded_at is None

    # Re-sharing updates the existing grant
    assert _share(admin, doc["id"], client_id, can_download=True).status_code == 200
    assert len(_share_row(doc["id"], client_id)) == 1
    assert notification_count("document.shared") == 1

    res = client.get(f"/documents/{doc['id']}/download")
    assert res.status_code == 200
    assert res.json()["downloadUrl"] == "https://files.example.com/plans.pdf"
    assert res.json()["filename"] == "plans.pdf"
    [row] = _share_row(doc["id"], client_id)
    first_download = row.downloaded_at
    assert first_download is not None

    client.get(f"/documents/{doc['id']}/download")
    [row] = _share_row(doc["id"], client_id)
    assert row.downloaded_at == first_download


def test_revoke_removes_access(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    doc = _create_doc(admin)
    _share(admin, doc["id"], client_id)

    res = admin.delete(f"/documents/{doc['id']}/share", params={"client_user_id": client_id})
    assert res.status_code == 200
    assert _share_row(doc["id"], client_id) == []
    assert client.get(f"/documents/{doc['id']}").status_code == 403
    assert client.get("/documents").json()["documents"] == []


def test_expired_share_is_inactive(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    doc = _create_doc(admin)
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

    assert _share(admin, doc["id"], client_id, expires_at=past).status_code == 200
    assert client.get(f"/documents/{doc['id']}").status_code == 403
    assert client.get("/documents").json()["documents"] == []

    future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    _share(admin, doc["id"], client_id, expires_at=future)
    listed = client.get("/documents").json()["documents"]
    assert [d["id"] for d in listed] == [doc["id"]]
    assert listed[0]["can_download"] is True


def test_client_list_shows_only_shared_documents(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)
    shared = _create_doc(admin, display_name="Shared")
    _create_doc(admin, display_name="Private")
    _share(admin, shared["id"], client_id)

    assert [d["display_name"] for d in client.get("/documents").json()["documents"]] == ["Shared"]
    assert len(admin.get("/documents").json()["documents"]) == 2


def test_share_targets_must_be_clients(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, employee_id = login_as(Role.EMPLOYEE)
    client, client_id = login_as(Role.CLIENT)
    doc = _create_doc(admin)

    assert _share(admin, doc["id"], employee_id).status_code == 400
    assert _share(admin, doc["id"], str(uuid.uuid4())).status_code == 404
    assert _share(client, doc["id"], client_id).status_code == 403
    assert _share(employee, doc["id"], client_id).status_code == 200

    clients = admin.get("/documents/clients").json()["clients"]
    assert [c["id"] for c in clients] == [client_id]
    assert client.get("/documents/clients").status_code == 403


def test_create_validation_and_delete(login_as):
    admin, _ = login_as(Role.ADMIN)
    employee, _ = login_as(Role.EMPLOYEE)

    assert admin.post("/documents", json={"display_name": "No file"}).status_code == 400
    assert admin.post("/documents", json={"filename": "a.txt"}).status_code == 400

    doc = _create_doc(employee, storage_url=None)
    assert doc["has_content"] is False
    assert employee.get(f"/documents/{doc['id']}/download").status_code == 404
    assert employee.delete(f"/documents/{doc['id']}").status_code == 403

    res = admin.patch(f"/documents/{doc['id']}", json={"display_name": "Renamed"})
    assert res.json()["document"]["display_name"] == "Renamed"

    res = admin.delete(f"/documents/{doc['id']}")
    assert res.json()["deleted"] is True
    assert admin.get(f"/documents/{doc['id']}").status_code == 404


def test_upload_and_stream_content(login_as):
    admin, _ = login_as(Role.ADMIN)
    client, client_id = login_as(Role.CLIENT)

    res = admin.post(
        "/documents/upload",
        files={"file": ("site report.txt", b"all clear on level 3", "text/plain")},
        data={"display_name": "Site report"},
    )
    assert res.status_code == 200, res.text
    doc = res.json()["document"]
    assert doc["file_size"] == len(b"all clear on level 3")
    assert doc["file_type"] == "text"

    _share(admin, doc["id"], client_id)
    url = client.get(f"/documents/{doc['id']}/download").json()["downloadUrl"]
    assert url.endswith(f"/documents/{doc['id']}/content")

    content = client.get(f"/documents/{doc['id']}/content")
    assert content.status_code == 200
    assert content.content == b"all clear on level 3"
    assert "site%20report.txt" in content.headers["content-disposition"]


def test_links_must_point_at_existing_records(login_as):
    admin, _ = login_as(Role.ADMIN)

    res = admin.post("/documents", json={"filename": "a.pdf", "display_name": "A", "project_id": str(uuid.uuid4())})
    assert res.status_code == 404
    assert res.json()["detail"] == "Project not found"
    res = admin.post("/documents", json={"filename": "a.pdf", "display_name": "A", "work_order_id": str(uuid.uuid4())})
    assert res.json()["detail"] == "Work order not found"
    assert admin.post("/documents", json={"filename": "a.pdf", "display_name": "A", "is_public": "no"}).status_code == 400

    doc = _create_doc(admin)
    assert admin.patch(f"/documents/{doc['id']}", json={"project_id": str(uuid.uuid4())}).status_code == 404
    assert admin.get("/documents").json()["documents"][0]["project_id"] is None
