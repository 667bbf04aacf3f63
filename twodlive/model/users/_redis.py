# model/users/_redis.py
from __future__ import annotations
from typing import Optional, Dict, List
import json
import uuid

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ...errors import DuplicateUsername, StorageFailure, TransientConflict
from ...errors import UserNotFound
from ...helpers import as_bool, now_ts
from ..records import ResultRecord, User


# ---- keys
def k_user(uid: str) -> str: return f"user:{uid}"


USERNAME_INDEX = "users:by_name"  # username -> id
RESULTS_INDEX = "results:recent"  # zset, score = emitted_at


def _to_user(h: Dict[str, str]) -> User:
    return User(
        id=h["id"],
        username=h["username"],
        password_hash=h["password_hash"],
        balance=float(h.get("balance", "0")),
        is_admin=as_bool(h.get("is_admin", "0")),
    )


class UserStore:
    def __init__(self, r: redis.Redis, register_retries: int = 5,
                 results_limit: int = 100) -> None:
        self.r = r
        self.register_retries = max(1, register_retries)
        self.results_limit = results_limit

    async def create_schema(self) -> None:
        # nothing to create up front
        return None

    async def register(self, *, user_id: str, username: str,
                       password_hash: str) -> User:
        """
        Write the user record and its index entry in one MULTI/EXEC.

        The username index is WATCHed, so any concurrent registration aborts
        the transaction and we re-check. That covers both the duplicate check
        and "first user becomes admin".
        """
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                for _ in range(self.register_retries):
                    try:
                        await pipe.watch(USERNAME_INDEX)
                        if await pipe.hexists(USERNAME_INDEX, username):
                            await pipe.unwatch()
                            raise DuplicateUsername()
                        is_admin = (await pipe.hlen(USERNAME_INDEX)) == 0

                        pipe.multi()
                        pipe.hset(k_user(user_id), mapping={
                            "id": user_id,
                            "username": username,
                            "password_hash": password_hash,
                            "balance": "0",
                            "is_admin": "1" if is_admin else "0",
                            "created_at": str(now_ts()),
                        })
                        pipe.hset(USERNAME_INDEX, username, user_id)
                        await pipe.execute()
                    except WatchError:
                        continue
                    return User(id=user_id, username=username,
                                password_hash=password_hash, balance=0,
                                is_admin=is_admin)
        except RedisError as e:
            raise StorageFailure(f"registration failed: {e.__class__.__name__}")
        raise TransientConflict()

    async def count(self) -> int:
        return int(await self.r.hlen(USERNAME_INDEX))

    async def get_by_id(self, user_id: str) -> Optional[User]:
        h = await self.r.hgetall(k_user(user_id))
        return _to_user(h) if h else None

    async def get_by_username(self, username: str) -> Optional[User]:
        uid = await self.r.hget(USERNAME_INDEX, username)
        if uid is None:
            return None
        return await self.get_by_id(uid)

    async def credit(self, username: str, amount: float) -> float:
        # atomic on the server side; users are never deleted, so a resolved
        # index entry stays valid
        try:
            uid = await self.r.hget(USERNAME_INDEX, username)
            if uid is None:
                raise UserNotFound()
            new_balance = await self.r.hincrbyfloat(
                k_user(uid), "balance", amount
            )
        except RedisError as e:
            raise StorageFailure(f"credit failed: {e.__class__.__name__}")
        return float(new_balance)

    async def set_admin(self, username: str, is_admin: bool) -> User:
        uid = await self.r.hget(USERNAME_INDEX, username)
        if uid is None:
            raise UserNotFound()
        await self.r.hset(k_user(uid), "is_admin", "1" if is_admin else "0")
        user = await self.get_by_id(uid)
        if user is None:
            raise StorageFailure("user record missing for index entry")
        return user

    async def save_result(self, rec: ResultRecord) -> None:
        member = json.dumps({
            "id": uuid.uuid4().hex,
            "twod": rec.twod,
            "emitted_at": rec.emitted_at,
            "source": rec.source,
        })
        pipe = self.r.pipeline(transaction=True)
        pipe.zadd(RESULTS_INDEX, {member: rec.emitted_at})
        # keep only the newest N
        pipe.zremrangebyrank(RESULTS_INDEX, 0, -(self.results_limit + 1))
        await pipe.execute()

    async def recent_results(self, limit: int = 20) -> List[ResultRecord]:
        rows = await self.r.zrevrange(RESULTS_INDEX, 0, max(0, limit - 1))
        items = []
        for raw in rows:
            d = json.loads(raw)
            items.append(ResultRecord(twod=d["twod"],
                                      emitted_at=float(d["emitted_at"]),
                                      source=d.get("source", "manual")))
        return items
