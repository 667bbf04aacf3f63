# model/users/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated
from . import _redis, _sql


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              r: Optional[redis.Redis] = None,
              sessions: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              register_retries: int = 5,
              results_limit: int = 100):
    if backend == "sql":
        if sessions is None:
            raise RuntimeError(
                "UserStore(sql) requires sessions=async_sessionmaker"
            )
        if gated is None:
            raise RuntimeError("UserStore(sql) requires gated=Gated")
        return _sql.UserStore(sessions=sessions, gated=gated,
                              register_retries=register_retries,
                              results_limit=results_limit)
    else:
        if r is None:
            raise RuntimeError("UserStore(redis) requires r=redis.Redis")
        return _redis.UserStore(r=r, register_retries=register_retries,
                                results_limit=results_limit)


UserStore = _redis.UserStore | _sql.UserStore
__all__ = ["UserStore", "new_store"]
