# Result Ingestion: manual entry and the external feed both end up here.
from __future__ import annotations
import logging
from typing import Any, Dict

from .errors import InvalidInput, UpstreamUnavailable
from .feed import OFFLINE, FeedAdapter
from .helpers import now_ts
from .hub import BroadcastHub, result_event
from .model.records import ResultRecord
from .model.users import UserStore

logger = logging.getLogger(__name__)

RESULT_LEN = 2


def validate_result(value: Any) -> str:
    if not isinstance(value, str) or len(value) != RESULT_LEN:
        raise InvalidInput("result must be exactly 2 characters")
    return value


async def publish_result(hub: BroadcastHub, store: UserStore, value: Any,
                         source: str = "manual") -> Dict[str, Any]:
    value = validate_result(value)
    emitted_at = now_ts()
    delivered = await hub.broadcast(result_event(value, emitted_at))
    logger.info("published %s result %s to %d viewers",
                source, value, delivered)

    # the broadcast already happened; history is best effort
    try:
        await store.save_result(
            ResultRecord(twod=value, emitted_at=emitted_at, source=source)
        )
    except Exception as e:
        logger.warning("could not persist result %s: %r", value, e)

    return {"status": "ok", "broadcasted": value, "viewers": delivered}


async def publish_live(hub: BroadcastHub, store: UserStore,
                       feed: FeedAdapter) -> Dict[str, Any]:
    try:
        live = await feed.fetch_live()
        value = validate_result(live["twod"])
    except UpstreamUnavailable as e:
        logger.warning("live feed unavailable: %s", e)
        return {"status": "offline", "broadcasted": None, "live": dict(OFFLINE)}
    except InvalidInput:
        logger.warning("live feed returned unusable value %r", live["twod"])
        return {"status": "error", "broadcasted": None, "live": live}

    out = await publish_result(hub, store, value, source="feed")
    out["live"] = live
    return out
