"""HTTP surface tests through FastAPI's TestClient."""

from __future__ import annotations

import base64
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from complaintdesk_api import Config, app, build_desk, get_desk


def headers(user: str = "user-alice", role: str = "user", verified: bool = True) -> Dict[str, str]:
    return {"X-User-Id": user, "X-User-Role": role, "X-User-Verified": "true" if verified else "false"}


ADMIN = headers("admin-1", role="admin")
ALICE = headers("user-alice")
BOB = headers("user-bob")


@pytest.fixture
def desk(tmp_path):
    cfg = Config()
    cfg.DB_PATH = str(tmp_path / "api.db")
    cfg.UPLOAD_DIR = str(tmp_path / "uploads")
    cfg.RECONCILE_BACKOFF = 0.001
    desk = build_desk(cfg)
    yield desk
    desk.lifecycle.close()


@pytest.fixture
def client(desk):
    app.dependency_overrides[get_desk] = lambda: desk
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def taxonomy_ids(client) -> Dict[str, str]:
    resp = client.post("/v1/categories", json={"name": "Billing", "icon": "💳"}, headers=ADMIN)
    assert resp.status_code == 201
    category_id = resp.json()["category_id"]
    resp = client.post(f"/v1/categories/{category_id}/subcategories", json={"name": "Refund"}, headers=ADMIN)
    assert resp.status_code == 201
    sub_id = resp.json()["sub_categories"][0]["sub_category_id"]
    return {"category": category_id, "sub_category": sub_id}


def new_complaint(ids: Dict[str, str], **extra):
    body = {
        "title": "Double charged",
        "description": "I was charged twice and my refund never arrived.",
        "category": ids["category"],
        "sub_category": ids["sub_category"],
    }
    body.update(extra)
    return body


class TestProbes:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["complaints_stored"] == 0

    def test_ready(self, client):
        assert client.get("/ready").json() == {"ready": True}

    def test_transition_rules(self, client):
        rules = client.get("/v1/transitions").json()["rules"]
        assert rules["pending"] == ["in-progress", "rejected"]
        assert rules["resolved"] == []


class TestComplaintEndpoints:
    def test_missing_identity_is_401(self, client, taxonomy_ids):
        resp = client.post("/v1/complaints", json=new_complaint(taxonomy_ids))
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "UNAUTHORIZED"

    def test_unverified_is_403(self, client, taxonomy_ids):
        resp = client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=headers(verified=False))
        assert resp.status_code == 403

    def test_create_and_read(self, client, taxonomy_ids):
        resp = client.post("/v1/complaints", json=new_complaint(taxonomy_ids, priority="high"), headers=ALICE)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "pending"
        assert body["priority_value"] == 2
        assert body["ai_response"]["category"] == "Billing"

        complaint_id = body["complaint_id"]
        assert client.get(f"/v1/complaints/{complaint_id}", headers=ALICE).status_code == 200
        assert client.get(f"/v1/complaints/{complaint_id}", headers=BOB).status_code == 404
        assert client.get(f"/v1/complaints/{complaint_id}", headers=ADMIN).status_code == 200

    def test_bad_fields_are_400(self, client, taxonomy_ids):
        resp = client.post("/v1/complaints", json=new_complaint(taxonomy_ids, title="Hi"), headers=ALICE)
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "VALIDATION_ERROR"

        resp = client.post("/v1/complaints", json=new_complaint(taxonomy_ids, priority="urgent"), headers=ALICE)
        assert resp.status_code == 400

    def test_attachment_upload(self, client, taxonomy_ids):
        png = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode()
        attachments = [{"filename": "photo.png", "content_type": "image/png", "content_b64": png}]
        resp = client.post(
            "/v1/complaints", json=new_complaint(taxonomy_ids, attachments=attachments), headers=ALICE,
        )
        assert resp.status_code == 201
        assert resp.json()["attachments"][0].startswith("/uploads/")

    def test_bad_attachment_encoding(self, client, taxonomy_ids):
        attachments = [{"filename": "photo.png", "content_type": "image/png", "content_b64": "%%%"}]
        resp = client.post(
            "/v1/complaints", json=new_complaint(taxonomy_ids, attachments=attachments), headers=ALICE,
        )
        assert resp.status_code == 400

    def test_disallowed_attachment_type_is_502(self, client, taxonomy_ids, desk):
        gif = base64.b64encode(b"GIF89a").decode()
        attachments = [{"filename": "anim.gif", "content_type": "image/gif", "content_b64": gif}]
        resp = client.post(
            "/v1/complaints", json=new_complaint(taxonomy_ids, attachments=attachments), headers=ALICE,
        )
        assert resp.status_code == 502
        assert desk.complaints.count_all() == 0

    def test_status_flow(self, client, taxonomy_ids):
        complaint_id = client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE).json()["complaint_id"]
        url = f"/v1/complaints/{complaint_id}/status"

        assert client.patch(url, json={"status": "in-progress"}, headers=ALICE).status_code == 403
        assert client.patch(url, json={"status": "resolved", "resolution": "x"}, headers=ADMIN).status_code == 409
        assert client.patch(url, json={"status": "in-progress"}, headers=ADMIN).status_code == 200
        assert client.patch(url, json={"status": "resolved"}, headers=ADMIN).status_code == 400

        resp = client.patch(url, json={"status": "resolved", "resolution": "Refund issued"}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["resolution"]["text"] == "Refund issued"

        allowed = client.get(f"/v1/complaints/{complaint_id}/transitions", headers=ALICE).json()
        assert allowed["allowed_transitions"] == []

    def test_update_rejects_unlisted_fields(self, client, taxonomy_ids):
        complaint_id = client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE).json()["complaint_id"]
        resp = client.put(f"/v1/complaints/{complaint_id}", json={"status": "resolved"}, headers=ALICE)
        assert resp.status_code == 400

        resp = client.put(f"/v1/complaints/{complaint_id}", json={"priority": "low"}, headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["priority_value"] == 0

    def test_list_stats_and_delete(self, client, taxonomy_ids):
        for _ in range(3):
            client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE)
        client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=BOB)

        listing = client.get("/v1/complaints", params={"limit": 2}, headers=ALICE).json()
        assert listing["total_complaints"] == 3
        assert listing["total_pages"] == 2
        assert client.get("/v1/complaints", headers=ADMIN).json()["total_complaints"] == 4
        assert client.get("/v1/complaints", params={"sort": "sideways"}, headers=ALICE).status_code == 400

        stats = client.get("/v1/complaints/stats", headers=ALICE).json()
        assert stats["stats"]["pending"] == 3

        victim = listing["complaints"][0]["complaint_id"]
        assert client.delete(f"/v1/complaints/{victim}", headers=BOB).status_code == 403
        assert client.delete(f"/v1/complaints/{victim}", headers=ALICE).status_code == 200

        categories = client.get("/v1/categories", headers=ALICE).json()
        assert categories["total_complaints"] == 3
        assert categories["frequent_categories"][0]["category_id"] == taxonomy_ids["category"]

    def test_comment_and_share(self, client, taxonomy_ids):
        complaint_id = client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE).json()["complaint_id"]
        resp = client.post(f"/v1/complaints/{complaint_id}/comments", json={"text": "Any update?"}, headers=ALICE)
        assert resp.status_code == 201
        resp = client.post(f"/v1/complaints/{complaint_id}/share/email", json={"email": "friend@example.com"}, headers=ALICE)
        assert resp.status_code == 200
        resp = client.post(f"/v1/complaints/{complaint_id}/share/social", json={"platform": "myspace"}, headers=ALICE)
        assert resp.status_code == 400


class TestTaxonomyEndpoints:
    def test_users_cannot_write_taxonomy(self, client):
        assert client.post("/v1/categories", json={"name": "Billing"}, headers=ALICE).status_code == 403

    def test_duplicate_category_is_409(self, client, taxonomy_ids):
        assert client.post("/v1/categories", json={"name": "Billing"}, headers=ADMIN).status_code == 409

    def test_delete_guarded_by_count(self, client, taxonomy_ids):
        client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE)
        resp = client.delete(f"/v1/categories/{taxonomy_ids['category']}", headers=ADMIN)
        assert resp.status_code == 412
        assert resp.json()["detail"]["code"] == "PRECONDITION_FAILED"

        resp = client.delete(
            f"/v1/categories/{taxonomy_ids['category']}/subcategories/{taxonomy_ids['sub_category']}",
            headers=ADMIN,
        )
        assert resp.status_code == 412

    def test_get_and_toggle(self, client, taxonomy_ids):
        category_id = taxonomy_ids["category"]
        assert client.get(f"/v1/categories/{category_id}").json()["name"] == "Billing"
        assert client.get("/v1/categories/cat_missing").status_code == 404
        resp = client.patch(f"/v1/categories/{category_id}/frequent", headers=ADMIN)
        assert resp.json()["is_frequently_used"] is True

    def test_delete_empty_category(self, client):
        category_id = client.post("/v1/categories", json={"name": "Misc"}, headers=ADMIN).json()["category_id"]
        assert client.delete(f"/v1/categories/{category_id}", headers=ADMIN).status_code == 204


class TestAdminEndpoints:
    def test_integrity_and_repairs(self, client, taxonomy_ids):
        client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE)

        assert client.get("/v1/admin/integrity", headers=ALICE).status_code == 403
        report = client.get("/v1/admin/integrity", headers=ADMIN).json()
        assert report["status"] == "pass"

        assert client.get("/v1/admin/reconcile/pending", headers=ADMIN).json()["total"] == 0
        assert client.post("/v1/admin/reconcile", headers=ADMIN).json()["processed"] == 0
        assert client.post("/v1/admin/reconcile/all", headers=ADMIN).json()["categories_rebuilt"] == 1
        assert client.post("/v1/admin/backfill-priority", headers=ADMIN).json() == {"corrected": 0}

    def test_event_log(self, client, taxonomy_ids):
        client.post("/v1/complaints", json=new_complaint(taxonomy_ids), headers=ALICE)
        events = client.get("/v1/admin/events", params={"topic": "complaint.created"}, headers=ADMIN).json()
        assert events["count"] == 1
        assert events["events"][0]["payload"]["user"] == "user-alice"
