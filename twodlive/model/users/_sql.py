# model/users/_sql.py
"""
SQL credential store + ledger (PostgreSQL via asyncpg, SQLite via aiosqlite).

- registration runs in one transaction; the UNIQUE(username) constraint is the
  secondary index, so record and index can't diverge
- the bootstrap admin is decided by inserting the single `bootstrap_claims`
  row in the same transaction; a racing first registration loses on the
  primary key and retries as a regular user
- credits are a single `UPDATE ... SET balance = balance + :amount`
"""
from __future__ import annotations
from typing import Optional, List

from sqlalchemy import select, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, async_sessionmaker

from ...errors import DuplicateUsername, StorageFailure, TransientConflict
from ...errors import UserNotFound
from ...helpers import now_ts
from ...infra.sql import Gated
from ..orm import Base, BootstrapClaim, ResultRow, UserRow
from ..records import ResultRecord, User

BOOTSTRAP_KEY = "admin"


def _to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        balance=float(row.balance),
        is_admin=bool(row.is_admin),
    )


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


class UserStore:
    def __init__(self, sessions: async_sessionmaker, gated: Gated,
                 register_retries: int = 5, results_limit: int = 100) -> None:
        self.sessions = sessions
        self.gated = gated
        self.register_retries = max(1, register_retries)
        self.results_limit = results_limit

    async def create_schema(self) -> None:
        async with self.sessions() as db:
            conn = await db.connection()
            await create_schema(conn)
            await db.commit()

    async def _username_taken(self, username: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(UserRow.id).where(UserRow.username == username)
                )
                return res.first() is not None

    async def register(self, *, user_id: str, username: str,
                       password_hash: str) -> User:
        for _ in range(self.register_retries):
            try:
                async with self.gated():
                    async with self.sessions() as db:
                        async with db.begin():
                            n = (await db.execute(
                                select(func.count()).select_from(UserRow)
                            )).scalar_one()
                            is_admin = n == 0
                            if is_admin:
                                db.add(BootstrapClaim(key=BOOTSTRAP_KEY,
                                                      user_id=user_id))
                            db.add(UserRow(
                                id=user_id,
                                username=username,
                                password_hash=password_hash,
                                balance=0.0,
                                is_admin=is_admin,
                                created_at=now_ts(),
                            ))
            except IntegrityError:
                # either the username exists, or we lost the bootstrap race
                if await self._username_taken(username):
                    raise DuplicateUsername()
                continue
            except SQLAlchemyError as e:
                raise StorageFailure(
                    f"registration failed: {e.__class__.__name__}")
            return User(id=user_id, username=username,
                        password_hash=password_hash, balance=0,
                        is_admin=is_admin)
        raise TransientConflict()

    async def count(self) -> int:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(func.count()).select_from(UserRow)
                )
                return int(res.scalar_one())

    async def _get_one(self, clause) -> Optional[User]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(select(UserRow).where(clause))
                row = res.scalars().first()
                return _to_user(row) if row else None

    async def get_by_id(self, user_id: str) -> Optional[User]:
        return await self._get_one(UserRow.id == user_id)

    async def get_by_username(self, username: str) -> Optional[User]:
        return await self._get_one(UserRow.username == username)

    async def credit(self, username: str, amount: float) -> float:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        res = await db.execute(
                            text("""
                                UPDATE users
                                   SET balance = balance + :amount
                                 WHERE username = :username
                             RETURNING balance
                            """),
                            {"amount": float(amount), "username": username},
                        )
                        row = res.first()
        except SQLAlchemyError as e:
            raise StorageFailure(f"credit failed: {e.__class__.__name__}")
        if row is None:
            raise UserNotFound()
        return float(row[0])

    async def set_admin(self, username: str, is_admin: bool) -> User:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    res = await db.execute(
                        select(UserRow).where(UserRow.username == username)
                    )
                    row = res.scalars().first()
                    if row is None:
                        raise UserNotFound()
                    row.is_admin = bool(is_admin)
                    user = _to_user(row)
        return user

    async def save_result(self, rec: ResultRecord) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    db.add(ResultRow(twod=rec.twod, emitted_at=rec.emitted_at,
                                     source=rec.source))

    async def recent_results(self, limit: int = 20) -> List[ResultRecord]:
        limit = max(1, min(limit, self.results_limit))
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(ResultRow)
                    .order_by(ResultRow.emitted_at.desc(), ResultRow.id.desc())
                    .limit(limit)
                )
                return [
                    ResultRecord(twod=r.twod, emitted_at=r.emitted_at,
                                 source=r.source)
                    for r in res.scalars().all()
                ]
