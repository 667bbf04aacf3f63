from dataclasses import dataclass

from ..helpers import as_number, to_iso


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    balance: int | float
    is_admin: bool

    def public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "balance": as_number(self.balance),
            "isAdmin": self.is_admin,
        }


@dataclass
class ResultRecord:
    twod: str
    emitted_at: float
    source: str  # manual | feed

    def public(self) -> dict:
        return {
            "twod": self.twod,
            "emittedAt": to_iso(self.emitted_at),
            "source": self.source,
        }
