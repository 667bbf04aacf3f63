# Registration, login and admin promotion on top of a UserStore.
from __future__ import annotations
import uuid
from typing import Any, Optional

from .errors import InvalidInput, UserNotFound
from .helpers import is_encodable
from .model.records import User
from .model.users import UserStore
from .security import Claim, PasswordHasher

MIN_USERNAME_LEN = 3
MIN_PASSWORD_LEN = 6


def _clean_username(username: Any) -> str:
    if not isinstance(username, str):
        raise InvalidInput("username is required")
    if not is_encodable(username):
        raise InvalidInput("username is not valid text")
    # usernames are case sensitive; only surrounding whitespace is dropped
    return username.strip()


async def register(store: UserStore, passwords: PasswordHasher,
                   username: Any, password: Any) -> User:
    username = _clean_username(username)
    if len(username) < MIN_USERNAME_LEN:
        raise InvalidInput(
            f"username must be at least {MIN_USERNAME_LEN} characters"
        )
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LEN:
        raise InvalidInput(
            f"password must be at least {MIN_PASSWORD_LEN} characters"
        )
    if not is_encodable(password):
        raise InvalidInput("password is not valid text")
    return await store.register(
        user_id=uuid.uuid4().hex,
        username=username,
        password_hash=passwords.hash(password),
    )


async def authenticate(store: UserStore, passwords: PasswordHasher,
                       username: str, password: str) -> Optional[User]:
    username = _clean_username(username)
    if not is_encodable(password):
        raise InvalidInput("password is not valid text")
    user = await store.get_by_username(username)
    if user is None:
        # burn a hash anyway so unknown users cost the same as bad passwords
        passwords.hash(password)
        return None
    if not passwords.verify(password, user.password_hash):
        return None
    return user


async def promote(store: UserStore, username: Any,
                  is_admin: bool = True) -> User:
    username = _clean_username(username)
    if not username:
        raise InvalidInput("username is required")
    return await store.set_admin(username, is_admin)


async def load_current(store: UserStore, claim: Claim) -> User:
    user = await store.get_by_id(claim.id)
    if user is None:
        raise UserNotFound()
    return user


def claim_for(user: User) -> Claim:
    return Claim(id=user.id, username=user.username, is_admin=user.is_admin)
