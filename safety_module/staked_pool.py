"""
Staked collateral pool.

Holders stake the underlying token and receive shares at the current
exchange rate. The safety module may slash the pool, which moves it into a
post-slashing mode where staking is disabled and redemption needs no cooldown
until the slashing is settled.
"""
import logging
from enum import Enum
from typing import Optional

from safety_module.access import AccessControl, Pausable, GOVERNANCE, non_reentrant
from safety_module.clock import BlockClock
from safety_module.config import StakingConfig
from safety_module.cooldown import CooldownBook
from safety_module.errors import (
    AuthorizationError,
    CapacityError,
    InsufficientBalanceError,
    StateError,
    ValidationError,
)
from safety_module.exchange_rate import ExchangeRate
from safety_module.ledger import Ledger

logger = logging.getLogger(__name__)


class PoolMode(str, Enum):
    RUNNING = 'RUNNING'
    POST_SLASHING = 'POST_SLASHING'


class StakedPool:
    """
    Share token backed by pooled collateral.

    The pool keeps share balances itself; the ledger holds the underlying.
    Reward settlement is routed through the safety module before and after
    every share balance change.
    """

    def __init__(self,
                 address,
                 underlying,
                 ledger: Ledger,
                 clock: BlockClock,
                 access: AccessControl,
                 safety_module,
                 config: Optional[StakingConfig] = None,
                 monitor=None,
                 data: dict = None):
        self.address = address
        self.underlying = underlying
        self.ledger = ledger
        self.clock = clock
        self.access = access
        self.pausable = Pausable(access)
        self.safety_module = safety_module
        self.config = config or StakingConfig()
        self.monitor = monitor

        if data is None:
            data = {
                'mode': PoolMode.RUNNING.value,
                'exchange_rate': None,
                'shares': {},
                'cooldowns': {},
            }

        self.mode = PoolMode(data['mode'])
        self.rate = ExchangeRate(data['exchange_rate'])
        self.shares = {holder: int(amount) for holder, amount in data['shares'].items()}
        self.total_shares = sum(self.shares.values())
        self.cooldowns = CooldownBook(
            self.config.cooldown_seconds,
            self.config.unstake_window,
            data['cooldowns']
        )
        self._entered = False

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def balance_of(self, holder) -> int:
        return self.shares.get(holder, 0)

    def total_supply(self) -> int:
        return self.total_shares

    @property
    def exchange_rate(self) -> int:
        return self.rate.rate

    def total_underlying(self) -> int:
        return self.ledger.balance_of(self.underlying, self.address)

    def preview_stake(self, amount: int) -> int:
        return self.rate.preview_stake(amount)

    def preview_redeem(self, shares: int) -> int:
        return self.rate.preview_redeem(shares)

    def cooldown_start(self, holder) -> int:
        return self.cooldowns.get(holder)

    def is_post_slashing(self) -> bool:
        return self.mode is PoolMode.POST_SLASHING

    # ------------------------------------------------------------------
    # Holder operations
    # ------------------------------------------------------------------

    @non_reentrant
    def stake(self, caller, amount: int, on_behalf_of=None) -> int:
        """
        Stake `amount` underlying and mint shares to `on_behalf_of` (or caller).

        Returns:
            Number of shares minted
        """
        self.pausable.require_not_paused()
        recipient = caller if on_behalf_of is None else on_behalf_of
        if amount <= 0:
            raise ValidationError("Cannot stake zero amount")
        if self.is_post_slashing():
            raise StateError("Staking is disabled while the pool is post-slashing")

        shares = self.rate.preview_stake(amount)
        if shares == 0:
            raise ValidationError(f"Stake amount {amount} mints no shares")
        balance = self.balance_of(recipient)
        if balance + shares > self.config.max_stake_amount:
            raise CapacityError(
                f"Stake would exceed max stake amount: "
                f"{balance + shares} > {self.config.max_stake_amount}"
            )
        if self.ledger.balance_of(self.underlying, caller) < amount:
            raise InsufficientBalanceError(f"Insufficient {self.underlying} to stake {amount}")

        now = self.clock.now()
        self.safety_module.settle_position(self.address, recipient)

        self.cooldowns.set(
            recipient,
            self.cooldowns.next_cooldown_timestamp(now, shares, recipient, balance, now)
        )
        self.shares[recipient] = balance + shares
        self.total_shares += shares
        self.ledger.transfer(self.underlying, caller, self.address, amount)

        self.safety_module.update_position(self.address, recipient)

        logger.info(f"Staked {amount} {self.underlying} for {recipient} -> {shares} shares")
        if self.monitor:
            self.monitor.record_stake(self.address, amount)
            self.monitor.set_total_staked(self.address, self.total_underlying())
        return shares

    @non_reentrant
    def redeem(self, caller, shares: int, to=None) -> int:
        """
        Burn up to `shares` of the caller's shares and pay out underlying.

        Returns:
            Underlying amount paid to `to` (or caller)
        """
        self.pausable.require_not_paused()
        recipient = caller if to is None else to
        if shares <= 0:
            raise ValidationError("Cannot redeem zero amount")
        balance = self.balance_of(caller)
        if balance == 0:
            raise ValidationError(f"{caller} has no staked balance")

        now = self.clock.now()
        if not self.is_post_slashing():
            self.cooldowns.check_redeemable(caller, now)

        shares = min(shares, balance)
        amount = self.rate.preview_redeem(shares)

        self.safety_module.settle_position(self.address, caller)

        remaining = balance - shares
        if remaining == 0:
            del self.shares[caller]
            self.cooldowns.reset(caller)
        else:
            self.shares[caller] = remaining
        self.total_shares -= shares
        self.ledger.transfer(self.underlying, self.address, recipient, amount)

        self.safety_module.update_position(self.address, caller)

        logger.info(f"Redeemed {shares} shares of {caller} for {amount} {self.underlying}")
        if self.monitor:
            self.monitor.record_redeem(self.address, amount)
            self.monitor.set_total_staked(self.address, self.total_underlying())
        return amount

    def cooldown(self, caller):
        """Start the caller's cooldown."""
        self.pausable.require_not_paused()
        if self.balance_of(caller) == 0:
            raise ValidationError(f"{caller} has no staked balance to cool down")
        now = self.clock.now()
        self.cooldowns.start(caller, now)
        logger.info(f"Cooldown started for {caller} at {now}")

    @non_reentrant
    def transfer(self, sender, recipient, shares: int):
        """Move shares between two holders, blending the recipient's cooldown."""
        self.pausable.require_not_paused()
        if shares <= 0:
            raise ValidationError("Cannot transfer zero amount")
        if sender == recipient:
            raise ValidationError("Sender and recipient are the same")
        sender_balance = self.balance_of(sender)
        if sender_balance < shares:
            raise InsufficientBalanceError(
                f"Insufficient shares for {sender}: {sender_balance} < {shares}"
            )
        recipient_balance = self.balance_of(recipient)
        if recipient_balance + shares > self.config.max_stake_amount:
            raise CapacityError(
                f"Transfer would exceed max stake amount for {recipient}"
            )

        now = self.clock.now()
        self.safety_module.settle_position(self.address, sender)
        self.safety_module.settle_position(self.address, recipient)

        self.cooldowns.set(
            recipient,
            self.cooldowns.next_cooldown_timestamp(
                self.cooldowns.get(sender), shares, recipient, recipient_balance, now
            )
        )
        if sender_balance == shares:
            del self.shares[sender]
            self.cooldowns.reset(sender)
        else:
            self.shares[sender] = sender_balance - shares
        self.shares[recipient] = recipient_balance + shares

        self.safety_module.update_position(self.address, sender)
        self.safety_module.update_position(self.address, recipient)
        logger.debug(f"Transferred {shares} shares: {sender} -> {recipient}")

    # ------------------------------------------------------------------
    # Safety module operations
    # ------------------------------------------------------------------

    def _only_safety_module(self, caller):
        if caller != self.safety_module.address:
            raise AuthorizationError(f"{caller} is not the safety module")

    @non_reentrant
    def slash(self, caller, destination, shares: int) -> int:
        """
        Seize the underlying backing `shares` and send it to `destination`.

        Share supply is unchanged; every holder absorbs the loss through a
        lower exchange rate.

        Returns:
            Underlying amount moved
        """
        self._only_safety_module(caller)
        self.pausable.require_not_paused()
        if self.is_post_slashing():
            raise StateError("Pool is already post-slashing")
        if shares <= 0:
            raise ValidationError("Cannot slash zero amount")
        if shares > self.total_shares:
            raise ValidationError(f"Cannot slash {shares} shares of {self.total_shares}")

        underlying_amount = self.rate.preview_redeem(shares)
        old_rate = self.rate.rate
        remaining = self.total_underlying() - underlying_amount
        self.rate.update(remaining, self.total_shares)
        self.rate.rate = min(self.rate.rate, old_rate)
        self.mode = PoolMode.POST_SLASHING
        self.ledger.transfer(self.underlying, self.address, destination, underlying_amount)

        logger.warning(
            f"Pool {self.address} slashed {underlying_amount} {self.underlying}; "
            f"exchange rate {old_rate} -> {self.rate.rate}"
        )
        if self.monitor:
            self.monitor.record_slash(self.address, underlying_amount)
            self.monitor.set_total_staked(self.address, self.total_underlying())
            self.monitor.set_exchange_rate(self.address, self.rate.rate)
        return underlying_amount

    @non_reentrant
    def return_funds(self, caller, source, amount: int):
        """Pull `amount` underlying from `source` back into the pool."""
        self._only_safety_module(caller)
        if amount <= 0:
            raise ValidationError("Cannot return zero amount")
        if self.ledger.balance_of(self.underlying, source) < amount:
            raise InsufficientBalanceError(f"{source} cannot return {amount} {self.underlying}")

        old_rate = self.rate.rate
        self.rate.update(self.total_underlying() + amount, self.total_shares)
        self.rate.rate = max(self.rate.rate, old_rate)
        self.ledger.transfer(self.underlying, source, self.address, amount)

        logger.info(f"Returned {amount} {self.underlying} to pool {self.address}")
        if self.monitor:
            self.monitor.set_exchange_rate(self.address, self.rate.rate)
            self.monitor.set_total_staked(self.address, self.total_underlying())

    def settle_slashing(self, caller):
        """Leave post-slashing mode."""
        self._only_safety_module(caller)
        self.mode = PoolMode.RUNNING
        logger.info(f"Pool {self.address} slashing settled")

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def set_max_stake_amount(self, caller, amount: int):
        self.access.check_role(GOVERNANCE, caller)
        if amount <= 0:
            raise ValidationError("Max stake amount must be positive")
        self.config.max_stake_amount = amount

    def set_cooldown_seconds(self, caller, seconds: int):
        self.access.check_role(GOVERNANCE, caller)
        if seconds <= 0:
            raise ValidationError("Cooldown must be positive")
        self.config.cooldown_seconds = seconds
        self.cooldowns.cooldown_seconds = seconds

    def set_unstake_window(self, caller, seconds: int):
        self.access.check_role(GOVERNANCE, caller)
        if seconds <= 0:
            raise ValidationError("Unstake window must be positive")
        self.config.unstake_window = seconds
        self.cooldowns.unstake_window = seconds

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'address': self.address,
            'underlying': self.underlying,
            'mode': self.mode.value,
            'exchange_rate': self.rate.to_dict(),
            'shares': dict(self.shares),
            'cooldowns': self.cooldowns.to_dict(),
        }

    def __repr__(self) -> str:
        return (
            f"StakedPool("
            f"address={self.address}, "
            f"mode={self.mode.value}, "
            f"supply={self.total_shares}, "
            f"{self.rate})"
        )
