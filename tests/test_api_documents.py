"""
tests/test_api_documents.py -- Integration tests for /api/v1/documents/*.

Covers:
  - create / get / rename / delete with per-document authorization
  - responses carry the caller's effective role and allowed actions
  - share, change and revoke over HTTP, with the error codes clients see
  - the share table, share candidates and document audit history are
    readable only with the share action
  - a system role change lowers stored share entries

Fixtures used (from conftest.py):
  api_client -- ApiHarness with an admin token and a FakeDispatcher
"""

from __future__ import annotations


def _create(api, token: str, name: str):
    return api.client.post("/api/v1/documents", json={"name": name}, headers=api.headers(token))


def _share(api, token: str, document_id: int, user_id: int, role: str):
    return api.client.put(
        f"/api/v1/documents/{document_id}/share", json={"user_id": user_id, "role": role}, headers=api.headers(token)
    )


def test_create_document(api_client):
    api_client.create_user("maker@example.com", role="designer")
    token = api_client.token_for("maker@example.com")

    resp = _create(api_client, token, "Fall Hoodie")
    assert resp.status_code == 201
    document = resp.json()["data"]["document"]
    assert document["name"] == "Fall Hoodie"
    assert document["effective_role"] == "owner"
    assert document["actions"] == ["delete", "edit", "share", "view"]


def test_viewer_cannot_create(api_client):
    api_client.create_user("lookonly@example.com", role="viewer")
    token = api_client.token_for("lookonly@example.com")
    resp = _create(api_client, token, "Nope")
    assert resp.status_code == 403
    assert resp.json()["errorCode"] == "FORBIDDEN"


def test_documents_require_auth(api_client):
    assert api_client.client.get("/api/v1/documents").status_code == 401


def test_alice_and_bob_over_http(api_client):
    bob = api_client.create_user("bob.http@example.com", role="designer")
    alice = api_client.create_user("alice.http@example.com", role="designer")
    bob_token = api_client.token_for("bob.http@example.com")
    alice_token = api_client.token_for("alice.http@example.com")
    doc_id = _create(api_client, bob_token, "doc1").json()["data"]["document"]["id"]

    resp = api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers(alice_token))
    assert resp.status_code == 403

    resp = _share(api_client, bob_token, doc_id, alice["id"], "editor")
    assert resp.status_code == 200
    assert resp.json()["data"]["share"]["role"] == "editor"
    assert resp.json()["data"]["share"]["shared_by"] == bob["id"]

    resp = api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers(alice_token))
    assert resp.status_code == 200
    document = resp.json()["data"]["document"]
    assert document["effective_role"] == "editor"
    assert document["actions"] == ["edit", "view"]

    resp = api_client.client.patch(
        f"/api/v1/documents/{doc_id}", json={"name": "doc1 v2"}, headers=api_client.headers(alice_token)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["document"]["name"] == "doc1 v2"

    resp = api_client.client.delete(f"/api/v1/documents/{doc_id}", headers=api_client.headers(alice_token))
    assert resp.status_code == 403
    assert resp.json()["data"]["missing_actions"] == ["delete"]

    listed = api_client.client.get("/api/v1/documents", headers=api_client.headers(alice_token))
    assert doc_id in [d["id"] for d in listed.json()["data"]["documents"]]


def test_access_list_and_revoke(api_client):
    api_client.create_user("owner.acl@example.com")
    guest = api_client.create_user("guest.acl@example.com", role="viewer")
    owner_token = api_client.token_for("owner.acl@example.com")
    guest_token = api_client.token_for("guest.acl@example.com")
    doc_id = _create(api_client, owner_token, "acl doc").json()["data"]["document"]["id"]
    _share(api_client, owner_token, doc_id, guest["id"], "factory")

    resp = api_client.client.get(f"/api/v1/documents/{doc_id}/access", headers=api_client.headers(owner_token))
    assert resp.status_code == 200
    roles = {entry["user_id"]: entry["role"] for entry in resp.json()["data"]["access"]}
    assert roles[guest["id"]] == "factory"
    assert "owner" in roles.values()

    # The guest can open the document but not read who else it is shared with.
    assert api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers(guest_token)).status_code == 200
    resp = api_client.client.get(f"/api/v1/documents/{doc_id}/access", headers=api_client.headers(guest_token))
    assert resp.status_code == 403
    assert resp.json()["errorCode"] == "FORBIDDEN"
    assert resp.json()["data"]["missing_actions"] == ["share"]

    resp = api_client.client.delete(
        f"/api/v1/documents/{doc_id}/share/{guest['id']}", headers=api_client.headers(owner_token)
    )
    assert resp.status_code == 200
    resp = api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers(guest_token))
    assert resp.status_code == 403


def test_shareable_users(api_client):
    owner = api_client.create_user("owner.cand@example.com")
    viewer = api_client.create_user("viewer.cand@example.com", role="viewer")
    designer = api_client.create_user("designer.cand@example.com", role="designer")
    token = api_client.token_for("owner.cand@example.com")
    doc_id = _create(api_client, token, "cand doc").json()["data"]["document"]["id"]
    _share(api_client, token, doc_id, designer["id"], "editor")

    resp = api_client.client.get(
        f"/api/v1/documents/{doc_id}/shareable-users", params={"search": ".cand@"}, headers=api_client.headers(token)
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    users = {u["id"]: u for u in data["users"]}
    assert owner["id"] not in users
    assert users[viewer["id"]]["assignable_roles"] == ["viewer", "factory"]
    assert users[viewer["id"]]["current_role"] is None
    assert users[designer["id"]]["assignable_roles"] == ["admin", "editor", "viewer"]
    assert users[designer["id"]]["current_role"] == "editor"
    assert data["pagination"]["total"] == 2

    designer_token = api_client.token_for("designer.cand@example.com")
    resp = api_client.client.get(
        f"/api/v1/documents/{doc_id}/shareable-users", headers=api_client.headers(designer_token)
    )
    assert resp.status_code == 403


def test_document_audit_logs(api_client):
    api_client.create_user("owner.hist@example.com")
    other = api_client.create_user("other.hist@example.com", role="merchandiser")
    token = api_client.token_for("owner.hist@example.com")
    doc_id = _create(api_client, token, "hist doc").json()["data"]["document"]["id"]
    other_doc = _create(api_client, token, "other doc").json()["data"]["document"]["id"]
    _share(api_client, token, doc_id, other["id"], "viewer")
    api_client.client.delete(f"/api/v1/documents/{doc_id}/share/{other['id']}", headers=api_client.headers(token))
    api_client.flush_audit()

    resp = api_client.client.get(f"/api/v1/documents/{doc_id}/audit-logs", headers=api_client.headers(token))
    assert resp.status_code == 200
    logs = resp.json()["data"]["logs"]
    assert [log["action"] for log in logs] == ["REVOKE_SHARE", "SHARE_TECHPACK", "CREATE_TECHPACK"]
    assert all(log["resource_id"] == str(doc_id) for log in logs)
    assert str(other_doc) not in {log["resource_id"] for log in logs}

    _share(api_client, token, doc_id, other["id"], "editor")
    other_token = api_client.token_for("other.hist@example.com")
    resp = api_client.client.get(f"/api/v1/documents/{doc_id}/audit-logs", headers=api_client.headers(other_token))
    assert resp.status_code == 403


def test_share_error_codes(api_client):
    owner = api_client.create_user("owner.err@example.com")
    viewer = api_client.create_user("viewer.err@example.com", role="viewer")
    token = api_client.token_for("owner.err@example.com")
    doc_id = _create(api_client, token, "err doc").json()["data"]["document"]["id"]

    # Capped by system role.
    resp = _share(api_client, token, doc_id, viewer["id"], "editor")
    assert resp.status_code == 400
    assert resp.json()["data"] == {"system_role": "viewer", "requested_role": "editor"}

    # Owner role and owner entry are off limits.
    assert _share(api_client, token, doc_id, viewer["id"], "owner").status_code == 400
    assert _share(api_client, token, doc_id, owner["id"], "viewer").status_code == 400

    # Unknown target.
    assert _share(api_client, token, doc_id, 99999, "viewer").status_code == 404

    # Unknown role value is a request validation error.
    resp = _share(api_client, token, doc_id, viewer["id"], "superuser")
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "VALIDATION_ERROR"

    # Changing a role that was never granted.
    resp = api_client.client.patch(
        f"/api/v1/documents/{doc_id}/share/{viewer['id']}", json={"role": "viewer"}, headers=api_client.headers(token)
    )
    assert resp.status_code == 404


def test_update_share_role(api_client):
    api_client.create_user("owner.upd@example.com")
    merch = api_client.create_user("merch.upd@example.com", role="merchandiser")
    token = api_client.token_for("owner.upd@example.com")
    doc_id = _create(api_client, token, "upd doc").json()["data"]["document"]["id"]
    _share(api_client, token, doc_id, merch["id"], "viewer")

    resp = api_client.client.patch(
        f"/api/v1/documents/{doc_id}/share/{merch['id']}", json={"role": "editor"}, headers=api_client.headers(token)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["share"]["role"] == "editor"


def test_admin_sees_and_deletes_any_document(api_client):
    api_client.create_user("owner.adm@example.com")
    token = api_client.token_for("owner.adm@example.com")
    doc_id = _create(api_client, token, "adm doc").json()["data"]["document"]["id"]

    resp = api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers())
    assert resp.json()["data"]["document"]["effective_role"] == "owner"

    assert api_client.client.delete(f"/api/v1/documents/{doc_id}", headers=api_client.headers()).status_code == 200
    assert api_client.client.get(f"/api/v1/documents/{doc_id}", headers=api_client.headers()).status_code == 404


def test_role_change_normalizes_shares(api_client):
    api_client.create_user("owner.norm@example.com")
    target = api_client.create_user("target.norm@example.com", role="designer")
    token = api_client.token_for("owner.norm@example.com")
    doc_id = _create(api_client, token, "norm doc").json()["data"]["document"]["id"]
    _share(api_client, token, doc_id, target["id"], "admin")

    resp = api_client.client.patch(
        f"/api/v1/admin/users/{target['id']}/role", json={"role": "viewer"}, headers=api_client.headers()
    )
    assert resp.status_code == 200

    access = api_client.client.get(f"/api/v1/documents/{doc_id}/access", headers=api_client.headers(token))
    roles = {entry["user_id"]: entry["role"] for entry in access.json()["data"]["access"]}
    assert roles[target["id"]] == "viewer"
