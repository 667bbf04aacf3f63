import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi.testclient import TestClient

from conftest import bearer, feed_transport, login, make_settings, register
from twodlive.config import ConfigError, Settings
from twodlive.server import create_app


# ----------------------------
# Auth
# ----------------------------
def test_register_first_user_is_admin(client):
    r = register(client, "admin")
    assert r.status_code == 201
    assert r.json()["isAdmin"] is True
    assert r.json()["message"]

    r = register(client, "bob")
    assert r.status_code == 201
    assert r.json()["isAdmin"] is False


def test_register_duplicate(client):
    assert register(client, "alice").status_code == 201
    r = register(client, "alice", "another-one")
    assert r.status_code == 409
    assert r.json() == {"error": "username already exists"}


@pytest.mark.parametrize("body", [
    {"username": "ab", "password": "secret123"},
    {"username": "alice", "password": "123"},
    {"username": "alice"},
    {},
])
def test_register_invalid(client, body):
    r = client.post("/api/auth/register", json=body)
    assert r.status_code == 400
    assert "error" in r.json()


def test_register_non_json_body(client):
    r = client.post("/api/auth/register", content=b"nope",
                    headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid request body"}


def test_login(client):
    register(client, "admin")
    r = client.post("/api/auth/login",
                    json={"username": "admin", "password": "secret123"})
    assert r.status_code == 200
    body = r.json()
    assert body["token"]
    assert body["user"]["username"] == "admin"
    assert body["user"]["balance"] == 0
    assert body["user"]["isAdmin"] is True
    assert set(body["user"]) == {"id", "username", "balance", "isAdmin"}


@pytest.mark.parametrize("body", [
    {"username": "admin"}, {"password": "secret123"}, {},
    {"username": "", "password": ""},
])
def test_login_missing_fields(client, body):
    assert client.post("/api/auth/login", json=body).status_code == 400


@pytest.mark.parametrize("username,password", [
    ("admin", "wrong-password"), ("nobody", "secret123"),
])
def test_login_bad_credentials(client, username, password):
    register(client, "admin")
    r = client.post("/api/auth/login",
                    json={"username": username, "password": password})
    assert r.status_code == 401
    assert r.json() == {"error": "invalid credentials"}


# lone surrogates are valid JSON escapes but not encodable text
UNENCODABLE = b'"\\ud800abcdef"'


def _raw_post(client, path, username: bytes, password: bytes):
    body = b'{"username": ' + username + b', "password": ' + password + b"}"
    return client.post(path, content=body,
                       headers={"content-type": "application/json"})


def test_register_unencodable_password(client):
    r = _raw_post(client, "/api/auth/register", b'"mallory"', UNENCODABLE)
    assert r.status_code == 400
    assert r.json() == {"error": "password is not valid text"}


def test_register_unencodable_username(client):
    r = _raw_post(client, "/api/auth/register", UNENCODABLE, b'"secret123"')
    assert r.status_code == 400


@pytest.mark.parametrize("username,password", [
    (b'"admin"', UNENCODABLE), (UNENCODABLE, b'"secret123"'),
])
def test_login_unencodable_credentials(client, username, password):
    register(client, "admin")
    r = _raw_post(client, "/api/auth/login", username, password)
    assert r.status_code == 400
    assert "error" in r.json()


# ----------------------------
# Gate
# ----------------------------
def test_me(client, user_token):
    r = client.get("/api/user/me", headers=bearer(user_token))
    assert r.status_code == 200
    assert r.json()["username"] == "alice"
    assert r.json()["isAdmin"] is False


@pytest.mark.parametrize("headers", [
    {}, {"Authorization": "Bearer"}, {"Authorization": "Basic abc"},
    {"Authorization": "Bearer not.a-token"},
])
def test_me_unauthorized(client, headers):
    r = client.get("/api/user/me", headers=headers)
    assert r.status_code == 401
    assert "error" in r.json()


def test_me_unknown_user(client, tokens):
    from twodlive.security import Claim
    token = tokens.issue(Claim(id="gone", username="ghost", is_admin=False))
    assert client.get("/api/user/me", headers=bearer(token)).status_code == 404


def test_token_from_other_secret_rejected(client):
    from twodlive.security import Claim, TokenSigner
    forged = TokenSigner("not-the-server-secret").issue(
        Claim(id="x", username="mallory", is_admin=True))
    r = client.post("/api/admin/broadcast-result", json={"result": "11"},
                    headers=bearer(forged))
    assert r.status_code == 401


@pytest.mark.parametrize("path,body", [
    ("/api/admin/fill-credit", {"username": "alice", "amount": 10}),
    ("/api/admin/broadcast-result", {"result": "42"}),
    ("/api/admin/broadcast-live", None),
    ("/api/admin/promote", {"username": "alice"}),
])
def test_admin_routes_gate(client, admin_token, user_token, path, body):
    assert client.post(path, json=body).status_code == 401
    r = client.post(path, json=body, headers=bearer(user_token))
    assert r.status_code == 403
    assert r.json() == {"error": "admin privileges required"}
    assert client.post(path, json=body,
                       headers=bearer(admin_token)).status_code == 200


# ----------------------------
# Ledger
# ----------------------------
def test_fill_credit(client, admin_token, user_token):
    r = client.post("/api/admin/fill-credit",
                    json={"username": "alice", "amount": 150},
                    headers=bearer(admin_token))
    assert r.status_code == 200
    assert r.json()["user"] == {"username": "alice", "balance": 150}
    assert r.json()["message"]

    r = client.get("/api/user/me", headers=bearer(user_token))
    assert r.json()["balance"] == 150


@pytest.mark.parametrize("amount", [0, -5, "ten", None, True])
def test_fill_credit_bad_amount(client, admin_token, user_token, amount):
    r = client.post("/api/admin/fill-credit",
                    json={"username": "alice", "amount": amount},
                    headers=bearer(admin_token))
    assert r.status_code == 400
    me = client.get("/api/user/me", headers=bearer(user_token)).json()
    assert me["balance"] == 0


def test_fill_credit_unknown_user(client, admin_token):
    r = client.post("/api/admin/fill-credit",
                    json={"username": "ghost", "amount": 5},
                    headers=bearer(admin_token))
    assert r.status_code == 404
    assert r.json() == {"error": "user not found"}


def test_fill_credit_storage_failure(client, admin_token, user_token):
    store = client.app.state.store

    async def broken(username, amount):
        from twodlive.errors import StorageFailure
        raise StorageFailure()

    store.credit = broken
    r = client.post("/api/admin/fill-credit",
                    json={"username": "alice", "amount": 5},
                    headers=bearer(admin_token))
    assert r.status_code == 500
    assert r.json() == {"error": "storage failure"}


# ----------------------------
# Promotion
# ----------------------------
def test_promote_takes_effect_on_next_login(client, admin_token, user_token):
    r = client.post("/api/admin/promote", json={"username": "alice"},
                    headers=bearer(admin_token))
    assert r.json()["user"] == {"username": "alice", "isAdmin": True}

    # the old token still carries the old claim
    r = client.post("/api/admin/broadcast-result", json={"result": "11"},
                    headers=bearer(user_token))
    assert r.status_code == 403

    fresh = login(client, "alice")
    r = client.post("/api/admin/broadcast-result", json={"result": "11"},
                    headers=bearer(fresh))
    assert r.status_code == 200


def test_promote_bad_input(client, admin_token):
    h = bearer(admin_token)
    assert client.post("/api/admin/promote", json={"username": "ghost"},
                       headers=h).status_code == 404
    assert client.post("/api/admin/promote", json={},
                       headers=h).status_code == 400
    assert client.post("/api/admin/promote",
                       json={"username": "admin", "isAdmin": "yes"},
                       headers=h).status_code == 400


# ----------------------------
# Results / live
# ----------------------------
def test_broadcast_result_reaches_viewer(client, admin_token):
    with client.websocket_connect("/ws/live-result") as ws:
        assert ws.receive_json()["type"] == "INFO"
        r = client.post("/api/admin/broadcast-result", json={"result": "42"},
                        headers=bearer(admin_token))
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "broadcasted": "42"}

        event = ws.receive_json()
        assert event["type"] == "RESULT"
        assert event["result"] == "42"
        assert event["emittedAt"]


def test_broadcast_result_fans_out(client, admin_token):
    with client.websocket_connect("/ws/live-result") as a, \
         client.websocket_connect("/ws/live-result") as b:
        a.receive_json()
        b.receive_json()
        assert client.get("/api/health").json()["viewers"] == 2
        client.post("/api/admin/broadcast-result", json={"result": "09"},
                    headers=bearer(admin_token))
        assert a.receive_json()["result"] == "09"
        assert b.receive_json()["result"] == "09"


@pytest.mark.parametrize("result", ["1", "123", "", None, 12])
def test_broadcast_result_invalid(client, admin_token, result):
    r = client.post("/api/admin/broadcast-result", json={"result": result},
                    headers=bearer(admin_token))
    assert r.status_code == 400


def test_recent_results(client, admin_token):
    for v in ("11", "22"):
        client.post("/api/admin/broadcast-result", json={"result": v},
                    headers=bearer(admin_token))
    items = client.get("/api/results/recent").json()["items"]
    assert [i["twod"] for i in items] == ["22", "11"]
    assert items[0]["source"] == "manual"


def test_proxy_returns_live(client):
    r = client.get("/api/2d-proxy")
    assert r.status_code == 200
    assert r.json()["live"]["twod"] == "57"


def test_broadcast_live(client, admin_token):
    r = client.post("/api/admin/broadcast-live", headers=bearer(admin_token))
    assert r.json()["status"] == "ok"
    assert r.json()["broadcasted"] == "57"


@pytest.fixture()
def offline_client():
    http = httpx.AsyncClient(transport=feed_transport(ok=False))
    app = create_app(
        make_settings(),
        redis_client=FakeAsyncRedis(server=FakeServer(),
                                    decode_responses=True),
        http=http,
    )
    with TestClient(app) as c:
        yield c


def test_proxy_offline_sentinel(offline_client):
    r = offline_client.get("/api/2d-proxy")
    assert r.status_code == 200
    assert r.json() == {"live": {"twod": "--", "set": "Error",
                                 "value": "Error", "time": "Offline"}}


def test_broadcast_live_offline(offline_client):
    register(offline_client, "admin")
    token = login(offline_client, "admin")
    r = offline_client.post("/api/admin/broadcast-live",
                            headers=bearer(token))
    assert r.status_code == 200
    assert r.json()["status"] == "offline"
    assert r.json()["broadcasted"] is None


# ----------------------------
# SQL backend end to end
# ----------------------------
def test_sql_backend(tmp_path):
    settings = make_settings(store_backend="sql",
                             database_url=f"sqlite:///{tmp_path}/api.db")
    http = httpx.AsyncClient(transport=feed_transport())
    with TestClient(create_app(settings, http=http)) as c:
        assert register(c, "admin").json()["isAdmin"] is True
        assert register(c, "alice").json()["isAdmin"] is False
        token = login(c, "admin")
        r = c.post("/api/admin/fill-credit",
                   json={"username": "alice", "amount": 12.5},
                   headers=bearer(token))
        assert r.json()["user"]["balance"] == 12.5
        assert c.get("/api/health").json()["backend"] == "sql"


# ----------------------------
# Config
# ----------------------------
def test_secret_is_required():
    with pytest.raises(ConfigError):
        Settings.from_env({})


def test_settings_from_env():
    s = Settings.from_env({"TOKEN_SECRET": "abc", "STORE_BACKEND": "SQL",
                           "TOKEN_TTL_SECONDS": "0"})
    assert s.store_backend == "sql"
    assert s.password_pepper == "abc"
    assert s.token_ttl_seconds == 0
    with pytest.raises(ConfigError):
        Settings.from_env({"TOKEN_SECRET": "abc", "STORE_BACKEND": "mongo"})
