"""End-to-end tests over HTTP."""

import pytest
from sqlalchemy.exc import OperationalError

from conftest import PASSWORD, auth_headers


NEW_SERVICE = {
    "client_id": 12,
    "appliance_id": 40,
    "description": "Fridge not cooling, compressor clicks",
    "warranty_status": "van garancije",
}


@pytest.fixture
def api_users(db, users):
    """Ids and auth headers per user; ends the setup session's read transaction."""
    result = {name: {"id": user.id, "headers": auth_headers(user)} for name, user in users.items()}
    db.rollback()
    return result


@pytest.fixture
def create_service(client, api_users):
    def _create(by="admin", **overrides):
        response = client.post("/services", json={**NEW_SERVICE, **overrides}, headers=api_users[by]["headers"])
        assert response.status_code == 201, response.text
        return response.json()

    return _create


class TestAuth:
    def test_login_and_me(self, client, api_users):
        response = client.post("/auth/login", json={"username": "tech5", "password": PASSWORD})
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["role"] == "technician"
        assert me.json()["technician_id"] == 5

    def test_bad_password(self, client, api_users, components):
        response = client.post("/auth/login", json={"username": "tech5", "password": "guess"})
        assert response.status_code == 401
        failed = [
            e for e in components.security_audit.get_recent_security_events()
            if e.type == "login_attempt" and e.severity == "medium"
        ]
        assert len(failed) == 1

    def test_unauthenticated(self, client):
        assert client.get("/services").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/services", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestServices:
    def test_create_and_fetch(self, client, api_users, create_service):
        created = create_service(technician_id=5)
        assert created["status"] == "assigned"
        assert created["is_completely_fixed"] is False

        fetched = client.get(f"/services/{created['id']}", headers=api_users["tech5"]["headers"])
        assert fetched.status_code == 200
        assert fetched.json()["description"] == NEW_SERVICE["description"]

    def test_invalid_body_is_400(self, client, api_users):
        response = client.post(
            "/services",
            json={**NEW_SERVICE, "description": "Bad"},
            headers=api_users["admin"]["headers"],
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_technician_scope(self, client, api_users, create_service):
        own = create_service(technician_id=5)
        foreign = create_service(technician_id=7)

        listed = client.get("/services", headers=api_users["tech5"]["headers"]).json()
        assert [s["id"] for s in listed] == [own["id"]]
        response = client.get(f"/services/{foreign['id']}", headers=api_users["tech5"]["headers"])
        assert response.status_code == 403

    def test_partner_edit(self, client, api_users, create_service):
        service = create_service(by="partner")
        response = client.patch(
            f"/services/{service['id']}",
            json={"description": "Fridge freezer icing up"},
            headers=api_users["partner"]["headers"],
        )
        assert response.status_code == 200
        assert response.json()["description"] == "Fridge freezer icing up"

        forbidden = client.patch(
            f"/services/{service['id']}",
            json={"cost": "200"},
            headers=api_users["partner"]["headers"],
        )
        assert forbidden.status_code == 403


class TestStatus:
    def test_transition_flow(self, client, api_users, create_service):
        service = create_service(technician_id=5)
        headers = api_users["tech5"]["headers"]
        url = f"/services/{service['id']}/status"

        assert client.put(url, json={"status": "in_progress"}, headers=headers).status_code == 200
        response = client.put(
            url,
            json={"status": "repair_failed", "repair_failure_reason": "Motor burned out"},
            headers=headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["notification_error"] is None
        assert body["service"]["repair_failed"] is True
        assert body["service"]["repair_failure_date"] is not None

    def test_foreign_technician_403(self, client, api_users, create_service):
        service = create_service(technician_id=7)
        response = client.put(
            f"/services/{service['id']}/status",
            json={"status": "in_progress"},
            headers=api_users["tech5"]["headers"],
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_short_failure_reason_400(self, client, api_users, create_service):
        service = create_service(technician_id=5)
        url = f"/services/{service['id']}/status"
        headers = api_users["tech5"]["headers"]
        client.put(url, json={"status": "in_progress"}, headers=headers)
        response = client.put(url, json={"status": "repair_failed", "repair_failure_reason": "bad"}, headers=headers)
        assert response.status_code == 400

    def test_unknown_status_400(self, client, api_users, create_service):
        service = create_service()
        response = client.put(
            f"/services/{service['id']}/status",
            json={"status": "teleported"},
            headers=api_users["admin"]["headers"],
        )
        assert response.status_code == 400

    def test_missing_service_404(self, client, api_users):
        response = client.put("/services/9999/status", json={"status": "in_progress"}, headers=api_users["admin"]["headers"])
        assert response.status_code == 404

    def test_partner_cannot_complete(self, client, api_users, create_service):
        service = create_service(by="partner")
        response = client.put(
            f"/services/{service['id']}/status",
            json={"status": "completed", "technician_notes": "Done", "work_performed": "Everything"},
            headers=api_users["partner"]["headers"],
        )
        assert response.status_code == 403

    def test_notification_failure_is_reported(self, client, api_users, create_service, dispatcher):
        service = create_service(technician_id=5)
        dispatcher.fail = True
        response = client.put(
            f"/services/{service['id']}/status",
            json={"status": "in_progress"},
            headers=api_users["tech5"]["headers"],
        )
        assert response.status_code == 200
        assert response.json()["service"]["status"] == "in_progress"
        assert "SMTP unreachable" in response.json()["notification_error"]


class TestSoftDeleteAndRestore:
    def test_full_cycle(self, client, api_users, create_service):
        admin = api_users["admin"]["headers"]
        service = create_service()
        original_id = service["id"]

        response = client.request("DELETE", f"/services/{original_id}/safe", json={"reason": "duplicate"}, headers=admin)
        assert response.status_code == 200
        assert response.json()["success"] is True

        deleted = client.get("/admin/deleted-services", headers=admin).json()
        assert [d["service_id"] for d in deleted] == [original_id]
        assert deleted[0]["delete_reason"] == "duplicate"
        assert original_id not in [s["id"] for s in client.get("/services", headers=admin).json()]

        restored = client.post(f"/admin/deleted-services/{original_id}/restore", headers=admin)
        assert restored.status_code == 200
        new_id = restored.json()["service_id"]
        assert new_id != original_id
        assert restored.json()["original_service_id"] == original_id

        fetched = client.get(f"/services/{new_id}", headers=admin).json()
        assert fetched["description"] == service["description"]
        assert fetched["created_at"] is not None

        history = client.get("/admin/audit-logs", params={"service": new_id}, headers=admin).json()["items"]
        assert history[-1]["action"] == "restored"
        assert f"original id: {original_id}" in history[-1]["notes"]

        again = client.post(f"/admin/deleted-services/{original_id}/restore", headers=admin)
        assert again.status_code == 409
        assert client.get("/admin/deleted-services", headers=admin).json() == []

    def test_soft_delete_without_body(self, client, api_users, create_service):
        service = create_service()
        response = client.delete(f"/services/{service['id']}/safe", headers=api_users["admin"]["headers"])
        assert response.status_code == 200

    def test_technician_without_grant_403(self, client, api_users, create_service):
        service = create_service(technician_id=5)
        response = client.delete(f"/services/{service['id']}/safe", headers=api_users["tech5"]["headers"])
        assert response.status_code == 403

    def test_restore_unknown_404(self, client, api_users):
        response = client.post("/admin/deleted-services/777/restore", headers=api_users["admin"]["headers"])
        assert response.status_code == 404

    def test_admin_routes_reject_others(self, client, api_users):
        for name in ("tech5", "partner", "customer"):
            response = client.get("/admin/deleted-services", headers=api_users[name]["headers"])
            assert response.status_code == 403


class TestHardDelete:
    def test_confirmation_flow(self, client, api_users, create_service):
        admin = api_users["admin"]["headers"]
        service = create_service()
        url = f"/services/{service['id']}/safe-delete"

        mismatch = client.request("DELETE", url, json={"confirmation": "wrong"}, headers=admin)
        assert mismatch.status_code == 400
        assert service["description"] not in mismatch.text

        reveal = client.get(f"/services/{service['id']}/delete-confirmation", headers=admin)
        assert reveal.status_code == 200
        expected = reveal.json()["expected_value"]

        response = client.request("DELETE", url, json={"confirmation": expected}, headers=admin)
        assert response.status_code == 200
        assert response.json()["deleted_service"]["id"] == service["id"]
        assert client.get(f"/services/{service['id']}", headers=admin).status_code == 404
        assert client.get("/admin/deleted-services", headers=admin).json() == []

    def test_reveal_is_admin_only(self, client, api_users, create_service):
        service = create_service(technician_id=5)
        response = client.get(f"/services/{service['id']}/delete-confirmation", headers=api_users["tech5"]["headers"])
        assert response.status_code == 403


class TestUserPermissions:
    def test_get_and_update(self, client, api_users):
        admin = api_users["admin"]["headers"]
        tech_id = api_users["tech5"]["id"]

        current = client.get(f"/admin/user-permissions/{tech_id}", headers=admin)
        assert current.status_code == 200
        assert current.json()["can_delete_services"] is False

        updated = client.post(
            f"/admin/user-permissions/{tech_id}",
            json={"can_delete_services": True, "notes": "Cleans up duplicates"},
            headers=admin,
        )
        assert updated.status_code == 200
        assert updated.json()["can_delete_services"] is True
        assert updated.json()["granted_by"] == api_users["admin"]["id"]

        feed = client.get("/admin/audit-logs", headers=admin).json()["items"]
        assert feed[0]["action"] == "user_permissions_updated"
        assert feed[0]["subject_user_id"] == tech_id
        assert feed[0]["service_id"] is None

    def test_granted_technician_can_soft_delete(self, client, api_users, create_service):
        admin = api_users["admin"]["headers"]
        client.post(
            f"/admin/user-permissions/{api_users['tech5']['id']}",
            json={"can_delete_services": True},
            headers=admin,
        )
        service = create_service(technician_id=5)
        response = client.delete(f"/services/{service['id']}/safe", headers=api_users["tech5"]["headers"])
        assert response.status_code == 200

    def test_unknown_field_rejected(self, client, api_users):
        response = client.post(
            f"/admin/user-permissions/{api_users['tech5']['id']}",
            json={"can_launch_rockets": True},
            headers=api_users["admin"]["headers"],
        )
        assert response.status_code == 400

    def test_unknown_user_404(self, client, api_users):
        response = client.get("/admin/user-permissions/5000", headers=api_users["admin"]["headers"])
        assert response.status_code == 404

    def test_non_admin_403(self, client, api_users):
        response = client.post(
            f"/admin/user-permissions/{api_users['tech5']['id']}",
            json={"can_delete_services": True},
            headers=api_users["tech5"]["headers"],
        )
        assert response.status_code == 403


class TestAdminAudit:
    def test_verify_entry(self, client, api_users, create_service):
        admin = api_users["admin"]["headers"]
        service = create_service()
        entry = client.get("/admin/audit-logs", params={"service": service["id"]}, headers=admin).json()["items"][0]

        verified = client.get(f"/admin/audit-logs/{entry['id']}/verify", headers=admin)
        assert verified.json() == {"id": entry["id"], "valid": True}
        assert client.get("/admin/audit-logs/99999/verify", headers=admin).status_code == 404

    def test_pagination(self, client, api_users, create_service):
        admin = api_users["admin"]["headers"]
        for _ in range(3):
            create_service()
        page = client.get("/admin/audit-logs", params={"limit": 2, "offset": 1}, headers=admin).json()
        assert page["limit"] == 2
        assert page["offset"] == 1
        assert len(page["items"]) == 2

    def test_security_endpoints(self, client, api_users):
        admin = api_users["admin"]["headers"]
        report = client.get("/admin/security/report", headers=admin)
        assert report.status_code == 200
        assert "overall_score" in report.json()

        events = client.get("/admin/security/events", params={"hours": 1}, headers=admin).json()
        assert events["total"] >= 1
        assert any(e["type"] == "api_access" for e in events["items"])

        strength = client.post("/admin/security/password-strength", json={"password": "abc"}, headers=admin)
        assert strength.json()["strength"] == "weak"


class TestRequestId:
    def test_echoes_given_id(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_assigns_id(self, client):
        assert client.get("/healthz").headers["X-Request-ID"]


class TestDatastoreErrors:
    def test_database_error_gets_error_body(self, client, api_users, components, monkeypatch):
        def locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(components.lifecycle, "list_services", locked)
        response = client.get("/services", headers=api_users["admin"]["headers"])
        assert response.status_code == 500
        assert response.json() == {"error": "internal_error", "detail": "Datastore failure"}

    def test_component_failure_is_internal_error(self, client, api_users, create_service, components, monkeypatch):
        service = create_service()

        def broken_append(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        # append normally degrades on its own; raising past it exercises the operation wrapper
        monkeypatch.setattr(components.audit, "append", broken_append)
        response = client.delete(f"/services/{service['id']}/safe", headers=api_users["admin"]["headers"])
        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"

        monkeypatch.undo()
        fetched = client.get(f"/services/{service['id']}", headers=api_users["admin"]["headers"])
        assert fetched.status_code == 200
