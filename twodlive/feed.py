from abc import ABC, abstractmethod
import logging
from typing import TypedDict

import httpx

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class LiveResult(TypedDict):
    twod: str
    set: str
    value: str
    time: str


OFFLINE: LiveResult = {
    "twod": "--",
    "set": "Error",
    "value": "Error",
    "time": "Offline",
}


# ----------------------------
# Feed Adapter Interface
# ----------------------------
class FeedAdapter(ABC):
    @abstractmethod
    async def fetch_live(self) -> LiveResult:
        """Current live values; raises UpstreamUnavailable."""
        ...

    async def live_or_offline(self) -> LiveResult:
        try:
            return await self.fetch_live()
        except UpstreamUnavailable as e:
            logger.warning("live feed unavailable: %s", e)
            return dict(OFFLINE)


def _text(value) -> str:
    # upstream sends null for fields it has no reading for yet
    return "" if value is None else str(value)


# ----------------------------
# HTTP implementation
# ----------------------------
class HttpFeed(FeedAdapter):
    def __init__(self, client: httpx.AsyncClient, url: str):
        self.client = client
        self.url = url

    async def fetch_live(self) -> LiveResult:
        try:
            r = await self.client.get(self.url)
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"{e.__class__.__name__}: {e}")

        live = body.get("live") if isinstance(body, dict) else None
        if not isinstance(live, dict):
            raise UpstreamUnavailable("response has no 'live' object")
        if live.get("twod") is None:
            raise UpstreamUnavailable("missing field 'twod'")
        return {
            "twod": str(live["twod"]),
            "set": _text(live.get("set")),
            "value": _text(live.get("value")),
            "time": _text(live.get("time")),
        }
