# Balance Ledger: credits go straight to the store's atomic increment.
from __future__ import annotations
import logging
from typing import Any

from .errors import InvalidAmount, InvalidInput
from .helpers import as_number, is_encodable, is_positive_number
from .model.users import UserStore

logger = logging.getLogger(__name__)


async def credit_user(store: UserStore, username: Any,
                      amount: Any) -> int | float:
    if (not isinstance(username, str) or not username.strip()
            or not is_encodable(username)):
        raise InvalidInput("username is required")
    if not is_positive_number(amount):
        raise InvalidAmount()
    balance = await store.credit(username.strip(), amount)
    logger.info("credited %s to %s, balance now %s",
                amount, username, balance)
    return as_number(balance)
