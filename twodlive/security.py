"""
Password digests and session tokens.

Both are keyed HMAC-SHA256 constructions over a server-held secret:

- passwords: hex(HMAC(pepper, password)); deterministic so the stored digest
  can be recomputed and compared in constant time
- tokens: b64url(json claim) "." b64url(HMAC(secret, first segment)); nothing
  is kept server side, so rotating the secret logs everybody out
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import InvalidToken
from .helpers import ct_equal, is_encodable, now_ts


# ----------------------------
# Password Verifier
# ----------------------------
class PasswordHasher:
    def __init__(self, pepper: str):
        if not pepper:
            raise ValueError("password pepper must not be empty")
        self._key = pepper.encode()

    def hash(self, password: str) -> str:
        return hmac.new(self._key, password.encode(), hashlib.sha256).hexdigest()

    def verify(self, password: str, digest: Any) -> bool:
        if not isinstance(password, str) or not isinstance(digest, str):
            return False
        if not is_encodable(password):
            return False
        return ct_equal(self.hash(password), digest)


# ----------------------------
# Token Issuer/Verifier
# ----------------------------
@dataclass(frozen=True)
class Claim:
    id: str
    username: str
    is_admin: bool


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64d(seg: str) -> bytes:
    return base64.urlsafe_b64decode(seg + "=" * (-len(seg) % 4))


class TokenSigner:
    def __init__(self, secret: str, ttl_seconds: int = 0):
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode()
        self.ttl = ttl_seconds

    def _sign(self, segment: str) -> str:
        mac = hmac.new(self._key, segment.encode(), hashlib.sha256).digest()
        return _b64e(mac)

    def issue(self, claim: Claim, now: Optional[float] = None) -> str:
        payload: Dict[str, Any] = {
            "id": claim.id,
            "username": claim.username,
            "isAdmin": bool(claim.is_admin),
        }
        if self.ttl > 0:
            payload["exp"] = int((now if now is not None else now_ts())
                                 + self.ttl)
        segment = _b64e(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        return f"{segment}.{self._sign(segment)}"

    def verify(self, token: str, now: Optional[float] = None) -> Claim:
        if not isinstance(token, str) or token.count(".") != 1:
            raise InvalidToken("malformed token")
        segment, sig = token.split(".", 1)
        if not segment or not sig:
            raise InvalidToken("malformed token")

        # signature first: never parse attacker controlled json we didn't sign
        if not ct_equal(self._sign(segment), sig):
            raise InvalidToken("bad signature")

        try:
            payload = json.loads(_b64d(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise InvalidToken("malformed payload")
        if not isinstance(payload, dict):
            raise InvalidToken("malformed payload")

        exp = payload.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)):
                raise InvalidToken("malformed expiry")
            if (now if now is not None else now_ts()) >= exp:
                raise InvalidToken("token expired")

        uid = payload.get("id")
        username = payload.get("username")
        is_admin = payload.get("isAdmin")
        if (not isinstance(uid, str) or not isinstance(username, str)
                or not isinstance(is_admin, bool)):
            raise InvalidToken("malformed claim")
        return Claim(id=uid, username=username, is_admin=is_admin)
