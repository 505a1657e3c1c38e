"""
In-memory fungible token ledger.

Stands in for the host chain's token contracts: every transfer is atomic
and either moves the full amount or raises without touching balances.
"""
import logging
from collections import defaultdict

from safety_module.errors import InsufficientBalanceError, ValidationError

logger = logging.getLogger(__name__)


class Ledger:
    def __init__(self, data: dict = None):
        """
        Args:
            data: Optional {token: {holder: balance}} mapping to start from
        """
        # {token: {holder: balance}}
        self.balances = defaultdict(lambda: defaultdict(int))
        self.supplies = defaultdict(int)
        for token, holders in (data or {}).items():
            for holder, amount in holders.items():
                self.mint(token, holder, int(amount))

    def balance_of(self, token, holder) -> int:
        return self.balances[token].get(holder, 0)

    def total_supply(self, token) -> int:
        return self.supplies[token]

    def transfer(self, token, sender, recipient, amount: int):
        """Move `amount` of `token` from `sender` to `recipient`."""
        if amount < 0:
            raise ValidationError("Transfer amount cannot be negative")
        if amount == 0:
            return
        available = self.balance_of(token, sender)
        if available < amount:
            raise InsufficientBalanceError(
                f"Insufficient {token} balance for {sender}: {available} < {amount}"
            )
        self.balances[token][sender] = available - amount
        self.balances[token][recipient] += amount
        logger.debug(f"Transfer {amount} {token}: {sender} -> {recipient}")

    def mint(self, token, to, amount: int):
        if amount < 0:
            raise ValidationError("Mint amount cannot be negative")
        self.balances[token][to] += amount
        self.supplies[token] += amount

    def burn(self, token, holder, amount: int):
        available = self.balance_of(token, holder)
        if amount < 0 or available < amount:
            raise InsufficientBalanceError(
                f"Cannot burn {amount} {token} from {holder}: balance {available}"
            )
        self.balances[token][holder] = available - amount
        self.supplies[token] -= amount

    def to_dict(self) -> dict:
        return {
            token: {holder: amount for holder, amount in holders.items() if amount}
            for token, holders in self.balances.items()
        }
