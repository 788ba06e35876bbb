from datetime import datetime

from classhub import api, services


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_login_and_refresh(client, make_user):
    make_user("alice", "secret")
    resp = client.post("/login", json={"username": "Alice", "password": "secret"})
    assert resp.status_code == 200
    tokens = resp.json()
    assert tokens["token_type"] == "bearer"

    resp = client.post("/token/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    assert "access_token" in resp.json()

    # an access token is not accepted as a refresh token
    resp = client.post("/token/refresh", json={"refresh_token": tokens["access_token"]})
    assert resp.status_code == 401


def test_login_with_bad_password(client, make_user):
    make_user("alice", "secret")
    resp = client.post("/login", json={"username": "alice", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json() == {"kind": "unauthorized", "message": "Invalid credentials"}


def test_admin_creates_account(client, admin_id, auth_header):
    resp = client.post(
        "/admin/users",
        json={"username": "jdoe", "password": "pw1", "display_name": "John"},
        headers=auth_header(admin_id),
    )
    assert resp.status_code == 200
    identity_id = resp.json()["identity_id"]

    resp = client.post("/login", json={"username": "jdoe", "password": "pw1"})
    assert resp.status_code == 200

    resp = client.post(
        "/admin/users",
        json={"username": "jdoe", "password": "pw1"},
        headers=auth_header(admin_id),
    )
    assert resp.status_code == 409
    assert resp.json()["kind"] == "conflict"
    assert services.get_profile(identity_id).display_name == "John"


def test_provisioning_requires_admin(client, make_user, auth_header):
    student = make_user("stu")
    resp = client.post(
        "/admin/users", json={"username": "x", "password": "pw"}, headers=auth_header(student)
    )
    assert resp.status_code == 403
    assert resp.json()["kind"] == "forbidden"

    resp = client.post("/admin/users", json={"username": "x", "password": "pw"})
    assert resp.status_code == 401

    resp = client.post(
        "/admin/users",
        json={"username": "x", "password": "pw"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert resp.status_code == 401


def test_missing_password_is_a_validation_error(client, admin_id, auth_header):
    resp = client.post("/admin/users", json={"username": "lee"}, headers=auth_header(admin_id))
    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation_error"


def test_bulk_endpoint(client, admin_id, make_user, auth_header):
    make_user("bob")
    resp = client.post(
        "/admin/users/bulk",
        json={
            "users": [
                {"username": "alice", "password": "pw"},
                {"username": "bob", "password": "pw"},
                {"username": "carol", "password": "pw", "display_name": "Carol"},
            ]
        },
        headers=auth_header(admin_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] == 2
    assert body["failed"] == 1
    assert len(body["errors"]) == 1


def test_csv_import(client, admin_id, auth_header):
    csv_text = "username,password,display_name\nalice,pw,Alice A\nbob,,\n"
    resp = client.post(
        "/admin/users/import",
        content=csv_text,
        headers={**auth_header(admin_id), "Content-Type": "text/csv"},
    )
    assert resp.status_code == 200
    assert resp.json()["created"] == 2
    assert client.post("/login", json={"username": "bob", "password": "bob"}).status_code == 200


def test_csv_import_without_rows(client, admin_id, auth_header):
    resp = client.post(
        "/admin/users/import",
        content="username,password\n\n",
        headers=auth_header(admin_id),
    )
    assert resp.status_code == 400


def test_async_import_queues_task(client, admin_id, monkeypatch, auth_header):
    queued = {}

    class FakeResult:
        id = "task-1"

    class FakeTask:
        def delay(self, caller_id, records):
            queued["caller"] = caller_id
            queued["records"] = records
            return FakeResult()

    monkeypatch.setattr(api, "import_accounts", FakeTask())
    resp = client.post(
        "/admin/users/import/async",
        content="dana,pw,Dana\n",
        headers=auth_header(admin_id),
    )
    assert resp.status_code == 202
    assert resp.json() == {"task_id": "task-1", "queued": 1}
    assert queued["caller"] == admin_id
    assert queued["records"] == [{"username": "dana", "password": "pw", "display_name": "Dana"}]


def test_setup_admin(client):
    resp = client.post(
        "/setup/admin",
        json={"username": "root", "password": "pw", "setup_key": "test-setup-key"},
    )
    assert resp.status_code == 200
    resp = client.post(
        "/setup/admin",
        json={"username": "root2", "password": "pw", "setup_key": "test-setup-key"},
    )
    assert resp.status_code == 400


def test_publish_and_history(client, make_user, auth_header):
    uid = make_user("alice", display_name="Alice")
    headers = auth_header(uid)

    resp = client.post("/messages", json={"content": "  hello  "}, headers=headers)
    assert resp.status_code == 200
    message_id = resp.json()["message_id"]

    resp = client.post("/messages", json={"content": "   "}, headers=headers)
    assert resp.status_code == 400

    history = client.get("/messages", headers=headers).json()
    assert [m["id"] for m in history] == [message_id]
    assert history[0]["content"] == "hello"
    assert history[0]["display_name"] == "Alice"

    assert client.get("/messages").status_code == 401


def test_presence_read_is_online_first(client, make_user, auth_header):
    admin = make_user("admin", role=services.ROLE_ADMIN)
    make_user("carol")
    make_user("alice")
    bob = make_user("bob")
    services.set_presence(bob, True, datetime.utcnow())

    rows = client.get("/presence", headers=auth_header(admin)).json()
    assert [r["username"] for r in rows] == ["bob", "admin", "alice", "carol"]
    assert rows[0]["is_online"] is True
