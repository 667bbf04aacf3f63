from __future__ import annotations
import logging
from typing import Optional

import httpx
import redis.asyncio as redis

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import ORJSONResponse

from . import accounts, ingest, ledger
from .config import Settings
from .errors import InvalidInput, Unauthorized, install_error_handlers
from .feed import FeedAdapter, HttpFeed
from .gate import require_admin, require_user
from .helpers import as_number
from .hub import BroadcastHub
from .infra.sql import make_async_engine
from .model.users import UserStore, new_store
from .security import Claim, PasswordHasher, TokenSigner

logger = logging.getLogger(__name__)


# ----------------------------
# Dependencies
# ----------------------------
def get_store(request: Request) -> UserStore:
    return request.app.state.store


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_feed(request: Request) -> FeedAdapter:
    return request.app.state.feed


def get_passwords(request: Request) -> PasswordHasher:
    return request.app.state.passwords


def _require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise InvalidInput(f"missing field(s): {', '.join(missing)}")


def create_app(
    settings: Optional[Settings] = None,
    *,
    redis_client: Optional[redis.Redis] = None,
    http: Optional[httpx.AsyncClient] = None,
    feed: Optional[FeedAdapter] = None,
) -> FastAPI:
    """
    Build the app. Everything stateful (secrets, store, hub, http client) is
    created once here or in the startup hooks and hung off `app.state`.
    Pass `redis_client`, `http` or `feed` to inject test doubles.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="twodlive",
        default_response_class=ORJSONResponse,
    )
    install_error_handlers(app)

    app.state.settings = settings
    app.state.passwords = PasswordHasher(settings.password_pepper)
    app.state.tokens = TokenSigner(settings.token_secret,
                                   ttl_seconds=settings.token_ttl_seconds)
    app.state.hub = BroadcastHub()
    app.state.redis = redis_client
    app.state.http = http
    app.state.feed = feed
    app.state.engine = None

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        print('=' * 50)
        print('twodlive is starting up...')
        print(f'   - Store backend: {settings.store_backend}')
        print(f'   - Live feed: {settings.feed_url}')
        print('=' * 50)

    @app.on_event("startup")
    async def _http_client_start():
        if app.state.http is None:
            app.state.http = httpx.AsyncClient(
                timeout=settings.feed_timeout,
                limits=httpx.Limits(
                    max_connections=64, max_keepalive_connections=16
                ),
            )
            app.state.owns_http = True
        if app.state.feed is None:
            app.state.feed = HttpFeed(app.state.http, settings.feed_url)

    @app.on_event("startup")
    async def _store_start():
        if settings.store_backend == "sql":
            engine, SessionAsync, gated = make_async_engine(
                settings.database_url,
                pool_size=settings.db_pool_size,
                gate_limit=settings.db_gate_limit or None,
            )
            app.state.engine = engine
            store = new_store("sql", sessions=SessionAsync, gated=gated,
                              register_retries=settings.register_retries,
                              results_limit=settings.recent_results_limit)
        else:
            if app.state.redis is None:
                app.state.redis = redis.from_url(
                    settings.redis_url,
                    decode_responses=True,
                    max_connections=settings.redis_max_conn,
                    socket_timeout=2.0,
                    socket_connect_timeout=2.0,
                    retry_on_timeout=True,
                )
                app.state.owns_redis = True
            store = new_store("redis", r=app.state.redis,
                              register_retries=settings.register_retries,
                              results_limit=settings.recent_results_limit)
        await store.create_schema()
        app.state.store = store

    @app.on_event("shutdown")
    async def _hub_stop():
        await app.state.hub.close_all()

    @app.on_event("shutdown")
    async def _http_client_stop():
        if getattr(app.state, "owns_http", False):
            await app.state.http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _store_stop():
        if getattr(app.state, "owns_redis", False):
            await app.state.redis.aclose()
            app.state.redis = None
        if app.state.engine is not None:
            await app.state.engine.dispose()
            app.state.engine = None

    # ----------------------------
    # Auth
    # ----------------------------
    @app.post("/api/auth/register", status_code=201)
    async def register(
        payload: dict,
        store: UserStore = Depends(get_store),
        passwords: PasswordHasher = Depends(get_passwords),
    ):
        user = await accounts.register(store, passwords,
                                       payload.get("username"),
                                       payload.get("password"))
        logger.info("registered %s (admin=%s)", user.username, user.is_admin)
        return {
            "message": "User registered",
            "id": user.id,
            "isAdmin": user.is_admin,
        }

    @app.post("/api/auth/login")
    async def login(
        payload: dict,
        request: Request,
        store: UserStore = Depends(get_store),
        passwords: PasswordHasher = Depends(get_passwords),
    ):
        _require_fields(payload, "username", "password")
        username, password = payload["username"], payload["password"]
        if not isinstance(username, str) or not isinstance(password, str):
            raise InvalidInput("username and password must be strings")

        user = await accounts.authenticate(store, passwords,
                                           username, password)
        if user is None:
            raise Unauthorized("invalid credentials")
        token = request.app.state.tokens.issue(accounts.claim_for(user))
        return {"token": token, "user": user.public()}

    # ----------------------------
    # User
    # ----------------------------
    @app.get("/api/user/me")
    async def me(
        claim: Claim = Depends(require_user),
        store: UserStore = Depends(get_store),
    ):
        user = await accounts.load_current(store, claim)
        return user.public()

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/fill-credit")
    async def fill_credit(
        payload: dict,
        claim: Claim = Depends(require_admin),
        store: UserStore = Depends(get_store),
    ):
        _require_fields(payload, "username", "amount")
        username = payload["username"]
        balance = await ledger.credit_user(store, username, payload["amount"])
        logger.info("%s credited %s", claim.username, username)
        return {
            "message": f"Added {as_number(payload['amount'])} to "
                       f"{username.strip()}",
            "user": {"username": username.strip(), "balance": balance},
        }

    @app.post("/api/admin/promote")
    async def promote(
        payload: dict,
        claim: Claim = Depends(require_admin),
        store: UserStore = Depends(get_store),
    ):
        is_admin = payload.get("isAdmin", True)
        if not isinstance(is_admin, bool):
            raise InvalidInput("isAdmin must be a boolean")
        user = await accounts.promote(store, payload.get("username"), is_admin)
        logger.info("%s set admin=%s on %s",
                    claim.username, is_admin, user.username)
        return {
            "message": "User updated",
            "user": {"username": user.username, "isAdmin": user.is_admin},
        }

    @app.post("/api/admin/broadcast-result")
    async def broadcast_result(
        payload: dict,
        claim: Claim = Depends(require_admin),
        store: UserStore = Depends(get_store),
        hub: BroadcastHub = Depends(get_hub),
    ):
        out = await ingest.publish_result(hub, store, payload.get("result"),
                                          source="manual")
        return {"status": out["status"], "broadcasted": out["broadcasted"]}

    @app.post("/api/admin/broadcast-live")
    async def broadcast_live(
        claim: Claim = Depends(require_admin),
        store: UserStore = Depends(get_store),
        hub: BroadcastHub = Depends(get_hub),
        feed: FeedAdapter = Depends(get_feed),
    ):
        out = await ingest.publish_live(hub, store, feed)
        return {
            "status": out["status"],
            "broadcasted": out["broadcasted"],
            "live": out["live"],
        }

    # ----------------------------
    # Public
    # ----------------------------
    @app.get("/api/2d-proxy")
    async def twod_proxy(feed: FeedAdapter = Depends(get_feed)):
        return {"live": await feed.live_or_offline()}

    @app.get("/api/results/recent")
    async def recent_results(
        limit: int = 20,
        store: UserStore = Depends(get_store),
    ):
        limit = max(1, min(limit, settings.recent_results_limit))
        items = await store.recent_results(limit=limit)
        return {"items": [r.public() for r in items], "limit": limit}

    @app.get("/api/health")
    async def health(hub: BroadcastHub = Depends(get_hub)):
        return {
            "ok": True,
            "backend": settings.store_backend,
            "viewers": len(hub),
        }

    @app.websocket("/ws/live-result")
    async def live_result(websocket: WebSocket):
        hub: BroadcastHub = websocket.app.state.hub
        await websocket.accept()
        try:
            await hub.connect(websocket)
            # viewers only listen; reading keeps the close handshake flowing
            while True:
                await websocket.receive_text()
        except (WebSocketDisconnect, ConnectionError):
            pass
        finally:
            hub.disconnect(websocket)

    return app
