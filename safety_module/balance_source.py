"""
Where reward distributors read balances from.

A distributor only needs two numbers per market: a user's balance and the
market total. Staked pools provide them directly; perpetual LP positions come
from an external position tracker.
"""
import logging
from collections import defaultdict
from typing import Protocol

from safety_module.errors import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


class BalanceSource(Protocol):
    def balance_of(self, market, user) -> int:
        ...

    def total_supply(self, market) -> int:
        ...


class StakedPoolSource:
    """Balances of the staked pools registered with a safety module."""

    def __init__(self, safety_module):
        self.safety_module = safety_module

    def balance_of(self, market, user) -> int:
        return self.safety_module.get_staked_pool(market).balance_of(user)

    def total_supply(self, market) -> int:
        return self.safety_module.get_staked_pool(market).total_supply()


class PositionTracker:
    """
    LP positions per market, maintained by the clearing house.

    Every change is pushed to the listener after it is recorded, so the
    listener still holds the previous balance when it settles.
    """

    def __init__(self, address, clearing_house=None, data: dict = None):
        self.address = address
        self.clearing_house = clearing_house
        self.listener = None
        # {market: {user: amount}}
        self.positions = defaultdict(dict)
        for market, users in (data or {}).get('positions', {}).items():
            self.positions[market] = {user: int(amount) for user, amount in users.items()}

    def set_listener(self, listener):
        self.listener = listener

    def balance_of(self, market, user) -> int:
        return self.positions[market].get(user, 0)

    def total_supply(self, market) -> int:
        return sum(self.positions[market].values())

    def markets(self) -> list:
        return [m for m, users in self.positions.items() if users]

    def set_position(self, caller, market, user, amount: int):
        """Record a new LP position for `user` and notify the listener."""
        if self.clearing_house is not None and caller != self.clearing_house:
            raise AuthorizationError(f"{caller} is not the clearing house")
        if amount < 0:
            raise ValidationError("Position cannot be negative")
        if amount == 0:
            self.positions[market].pop(user, None)
        else:
            self.positions[market][user] = amount
        logger.debug(f"Position of {user} in {market} set to {amount}")
        if self.listener is not None:
            self.listener.update_position(market, user)

    def provide_liquidity(self, caller, market, user, amount: int):
        if amount <= 0:
            raise ValidationError("Liquidity amount must be positive")
        self.set_position(caller, market, user, self.balance_of(market, user) + amount)

    def remove_liquidity(self, caller, market, user, amount: int):
        current = self.balance_of(market, user)
        if amount <= 0 or amount > current:
            raise ValidationError(f"Cannot remove {amount} of {current} liquidity")
        self.set_position(caller, market, user, current - amount)

    def to_dict(self) -> dict:
        return {'positions': {m: dict(users) for m, users in self.positions.items() if users}}
