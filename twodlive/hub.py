"""
Live Broadcast Hub.

Owns the set of connected viewers. A viewer moves Connecting -> Open -> Closed
and is dropped from the set on any move away from Open. `broadcast` works on a
snapshot of the set, so connects/disconnects that interleave with a broadcast
never disturb the iteration.
"""
from __future__ import annotations
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Set

import orjson
from starlette.websockets import WebSocketState

from .helpers import now_ts, to_iso

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_text(self, data: str) -> None: ...


class ViewerState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(eq=False)
class Viewer:
    transport: Transport
    state: ViewerState = ViewerState.CONNECTING
    connected_at: float = 0.0


def _transport_open(transport: Any) -> bool:
    # starlette websockets expose their own state; anything else is trusted
    for attr in ("client_state", "application_state"):
        st = getattr(transport, attr, None)
        if isinstance(st, WebSocketState) and st != WebSocketState.CONNECTED:
            return False
    return True


def info_event(message: str) -> Dict[str, Any]:
    return {"type": "INFO", "message": message}


def result_event(value: str, emitted_at: Optional[float] = None
                 ) -> Dict[str, Any]:
    ts = emitted_at if emitted_at is not None else now_ts()
    return {"type": "RESULT", "result": value, "emittedAt": to_iso(ts)}


class BroadcastHub:
    def __init__(self, send_timeout: float = 5.0) -> None:
        self._viewers: Dict[int, Viewer] = {}  # keyed by id(transport)
        self.send_timeout = send_timeout
        self._closing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._viewers)

    def state_of(self, transport: Transport) -> ViewerState:
        v = self._viewers.get(id(transport))
        return v.state if v is not None else ViewerState.CLOSED

    async def connect(self, transport: Transport) -> Viewer:
        viewer = Viewer(transport=transport, connected_at=now_ts())
        self._viewers[id(transport)] = viewer
        viewer.state = ViewerState.OPEN
        logger.info("viewer connected (%s total)", len(self._viewers))
        ok = await self._deliver(
            viewer,
            orjson.dumps(info_event("Connected to live result")).decode(),
        )
        if not ok:
            raise ConnectionError("viewer went away during connect")
        return viewer

    def disconnect(self, transport: Transport) -> None:
        viewer = self._viewers.pop(id(transport), None)
        if viewer is None:
            return
        viewer.state = ViewerState.CLOSED
        logger.info("viewer disconnected (%s left)", len(self._viewers))

    async def _deliver(self, viewer: Viewer, payload: str) -> bool:
        if viewer.state is not ViewerState.OPEN:
            return False
        if not _transport_open(viewer.transport):
            self.disconnect(viewer.transport)
            return False
        try:
            await asyncio.wait_for(viewer.transport.send_text(payload),
                                   timeout=self.send_timeout)
        except Exception as e:
            logger.warning("dropping viewer after failed send: %r", e)
            self.disconnect(viewer.transport)
            self._close_later(viewer.transport)
            return False
        return True

    async def _close_quietly(self, transport: Transport) -> None:
        close = getattr(transport, "close", None)
        if close is None:
            return
        try:
            await asyncio.wait_for(close(), timeout=self.send_timeout)
        except Exception as e:
            logger.debug("close of dropped viewer failed: %r", e)

    def _close_later(self, transport: Transport) -> None:
        # off the broadcast path; a hanging close must not hold up the gather
        task = asyncio.ensure_future(self._close_quietly(transport))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """Send `event` to every open viewer; returns how many got it."""
        payload = orjson.dumps(event).decode()
        snapshot = [v for v in list(self._viewers.values())
                    if v.state is ViewerState.OPEN]
        if not snapshot:
            return 0
        results = await asyncio.gather(
            *(self._deliver(v, payload) for v in snapshot)
        )
        return sum(1 for ok in results if ok)

    async def close_all(self) -> None:
        for viewer in list(self._viewers.values()):
            self.disconnect(viewer.transport)
            await self._close_quietly(viewer.transport)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
