import json

import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi.testclient import TestClient

from twodlive.config import Settings
from twodlive.infra.sql import make_async_engine
from twodlive.model.users import new_store
from twodlive.security import PasswordHasher, TokenSigner
from twodlive.server import create_app

TEST_SECRET = "test-secret"

LIVE_BODY = {
    "live": {
        "set": "1,299.45",
        "value": "42,117.80",
        "time": "2026-10-18 12:01:00",
        "twod": "57",
    },
    "result": [],
}


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.on_send = None
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.on_send is not None:
            self.on_send()
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True


def make_settings(**kw) -> Settings:
    base = dict(token_secret=TEST_SECRET, feed_url="http://feed.test/live")
    base.update(kw)
    return Settings(**base)


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def passwords(settings):
    return PasswordHasher(settings.password_pepper)


@pytest.fixture()
def tokens(settings):
    return TokenSigner(settings.token_secret, ttl_seconds=3600)


@pytest.fixture()
def fake_redis():
    # own server per test; connections are opened lazily on first use
    return FakeAsyncRedis(server=FakeServer(), decode_responses=True)


@pytest.fixture(params=["redis", "sql"])
async def store(request, tmp_path):
    if request.param == "redis":
        r = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
        s = new_store("redis", r=r)
        await s.create_schema()
        yield s
        await r.aclose()
    else:
        engine, SessionAsync, gated = make_async_engine(
            f"sqlite:///{tmp_path}/twodlive.db"
        )
        s = new_store("sql", sessions=SessionAsync, gated=gated)
        await s.create_schema()
        yield s
        await engine.dispose()


def feed_transport(ok: bool = True, body: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if not ok:
            raise httpx.ConnectError("feed down", request=request)
        return httpx.Response(200, json=body if body is not None else LIVE_BODY)
    return httpx.MockTransport(handler)


@pytest.fixture()
def client(settings, fake_redis):
    http = httpx.AsyncClient(transport=feed_transport())
    app = create_app(settings, redis_client=fake_redis, http=http)
    with TestClient(app) as c:
        yield c


def register(client, username, password="secret123"):
    return client.post("/api/auth/register",
                       json={"username": username, "password": password})


def login(client, username, password="secret123"):
    r = client.post("/api/auth/login",
                    json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_token(client):
    assert register(client, "admin").status_code == 201
    return login(client, "admin")


@pytest.fixture()
def user_token(client, admin_token):
    assert register(client, "alice").status_code == 201
    return login(client, "alice")
