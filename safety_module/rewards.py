"""
Reward distributor: settles per-user rewards against the shared accumulator.

Balances are recorded at every settlement. A balance change is always
charged to the balance recorded before it, so callers notify the distributor
right after the change (or settle right before it).
"""
import logging
from collections import defaultdict
from typing import Optional

from safety_module.access import AccessControl, Pausable, GOVERNANCE, non_reentrant
from safety_module.accumulator import (
    RewardAccumulator,
    validate_inflation_rate,
    validate_reduction_factor,
    validate_weights,
)
from safety_module.balance_source import BalanceSource, PositionTracker, StakedPoolSource
from safety_module.clock import BlockClock
from safety_module.config import RewardConfig
from safety_module.errors import ValidationError
from safety_module.fixed_point import WAD, mul_div
from safety_module.ledger import Ledger
from safety_module.multiplier import EarlyWithdrawalPenalty, LoyaltyMultiplier

logger = logging.getLogger(__name__)


class RewardDistributor:
    def __init__(self,
                 address,
                 balance_source: BalanceSource,
                 policy,
                 ledger: Ledger,
                 reserve,
                 clock: BlockClock,
                 access: AccessControl,
                 accumulator: Optional[RewardAccumulator] = None,
                 monitor=None,
                 data: dict = None,
                 config: Optional[RewardConfig] = None):
        """
        Args:
            address: Address of the distributor
            balance_source: Supplies user balances and market totals
            policy: LoyaltyMultiplier or EarlyWithdrawalPenalty
            ledger: Token ledger used to pay out rewards
            reserve: Ecosystem reserve address rewards are paid from
            clock: Block timestamp source
            access: Role registry
            accumulator: Shared accumulator, created empty if omitted
            monitor: Optional Monitor
            data: Stored distributor state; the policy restores its own
                part from data['policy']
            config: Emission defaults for new reward tokens
        """
        self.address = address
        self.balance_source = balance_source
        self.policy = policy
        self.ledger = ledger
        self.reserve = reserve
        self.clock = clock
        self.access = access
        self.pausable = Pausable(access)
        if accumulator is None:
            accumulator = RewardAccumulator((data or {}).get('accumulator'))
        self.accumulator = accumulator
        self.monitor = monitor
        self.config = config or RewardConfig()
        if isinstance(policy, LoyaltyMultiplier):
            self.default_inflation_rate = self.config.staking_inflation_rate
        else:
            self.default_inflation_rate = self.config.position_inflation_rate

        if data is None:
            data = {'positions': {}, 'user_last': {}, 'accrued': {}, 'totals': {}}

        # {(market, user): balance recorded at last settlement}
        self.positions = {
            (market, user): int(amount)
            for market, users in data['positions'].items()
            for user, amount in users.items()
        }
        # {(market, user, token): cumulative value at last settlement}
        self.user_last = {
            (market, user, token): int(value)
            for market, users in data['user_last'].items()
            for user, per_token in users.items()
            for token, value in per_token.items()
        }
        # {(user, token): claimable amount}
        self.accrued = {
            (user, token): int(amount)
            for user, per_token in data['accrued'].items()
            for token, amount in per_token.items()
        }
        # {market: market total recorded at last settlement}
        self.totals = defaultdict(int, {m: int(t) for m, t in data.get('totals', {}).items()})
        self.total_unclaimed = defaultdict(int)
        for (_, token), amount in self.accrued.items():
            self.total_unclaimed[token] += amount
        self._entered = False

    @classmethod
    def for_staking(cls, address, safety_module, ledger: Ledger, reserve,
                    clock: BlockClock, access: AccessControl,
                    config: Optional[RewardConfig] = None, monitor=None,
                    data: dict = None) -> 'RewardDistributor':
        """Distributor for staked pools, with the loyalty multiplier."""
        config = config or RewardConfig()
        stored = (data or {}).get('policy') or {}
        policy = LoyaltyMultiplier(
            stored.get('max_multiplier', config.max_multiplier),
            stored.get('smoothing_value', config.smoothing_value),
            stored,
        )
        return cls(address, StakedPoolSource(safety_module), policy, ledger,
                   reserve, clock, access, monitor=monitor, data=data, config=config)

    @classmethod
    def for_positions(cls, address, tracker: PositionTracker, ledger: Ledger, reserve,
                      clock: BlockClock, access: AccessControl,
                      config: Optional[RewardConfig] = None, monitor=None,
                      data: dict = None) -> 'RewardDistributor':
        """Distributor for LP positions, with the early withdrawal penalty."""
        config = config or RewardConfig()
        stored = (data or {}).get('policy') or {}
        policy = EarlyWithdrawalPenalty(
            stored.get('threshold', config.early_withdrawal_threshold), stored
        )
        distributor = cls(address, tracker, policy, ledger, reserve, clock, access,
                          monitor=monitor, data=data, config=config)
        tracker.set_listener(distributor)
        return distributor

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def position(self, market, user) -> int:
        return self.positions.get((market, user), 0)

    def rewards_accrued(self, user, token) -> int:
        return self.accrued.get((user, token), 0)

    def total_unclaimed_rewards(self, token) -> int:
        return self.total_unclaimed[token]

    def multiplier(self, market, user) -> int:
        return self.policy.multiplier(market, user, self.clock.now())

    def multiplier_start(self, market, user) -> int:
        if not isinstance(self.policy, LoyaltyMultiplier):
            return 0
        return self.policy.start_time(market, user)

    def inflation_rate(self, token) -> int:
        return self.accumulator.inflation_rate(token, self.clock.now())

    def cumulative_reward_per_share(self, market, token) -> int:
        return self.accumulator.cumulative_reward_per_share(market, token)

    def user_markets(self, user) -> list:
        return [m for (m, u), amount in self.positions.items() if u == user and amount > 0]

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------

    def update_market_rewards(self, market):
        """Advance the accumulators of `market` to the current timestamp."""
        self.accumulator.update_market(market, self.totals[market], self.clock.now())

    def accrue_rewards(self, market, user):
        """Settle `user` in `market` against the balance recorded for them."""
        self._accrue(market, user, None)

    def _accrue(self, market, user, new_position: Optional[int]):
        self.update_market_rewards(market)
        now = self.clock.now()
        prev = self.position(market, user)
        new = prev if new_position is None else new_position

        for token in self.accumulator.tokens_for_market(market):
            cumulative = self.accumulator.cumulative_reward_per_share(market, token)
            key = (market, user, token)
            last = self.user_last.get(key, self.accumulator.baseline(market, token))
            self.user_last[key] = cumulative
            if prev == 0 or cumulative <= last:
                continue
            owed = mul_div(prev, cumulative - last, WAD)
            owed = self.policy.apply(market, user, owed, prev, new, now)
            if owed == 0:
                continue
            self.accrued[(user, token)] = self.rewards_accrued(user, token) + owed
            self.total_unclaimed[token] += owed
            logger.debug(f"Accrued {owed} {token} to {user} in {market}")

    def update_position(self, market, user):
        """
        Settle `user` and record their new balance in `market`.

        Called after the balance source has applied a change.
        """
        now = self.clock.now()
        prev = self.position(market, user)
        new = self.balance_source.balance_of(market, user)
        self._accrue(market, user, new)
        self.policy.on_position_change(market, user, prev, new, now)
        if new == 0:
            self.positions.pop((market, user), None)
        else:
            self.positions[(market, user)] = new
        self.totals[market] = self.balance_source.total_supply(market)

    def register_positions(self, caller, user, markets: list):
        """
        Adopt balances `user` held before this distributor was attached.

        Rewards start accruing from the registration time.
        """
        self.pausable.require_not_paused()
        for market in markets:
            if (market, user) in self.positions:
                raise ValidationError(f"Position of {user} in {market} already registered")
        now = self.clock.now()
        for market in markets:
            balance = self.balance_source.balance_of(market, user)
            if balance == 0:
                continue
            self.update_market_rewards(market)
            for token in self.accumulator.tokens_for_market(market):
                self.user_last[(market, user, token)] = \
                    self.accumulator.cumulative_reward_per_share(market, token)
            self.policy.on_position_change(market, user, 0, balance, now)
            self.positions[(market, user)] = balance
            self.totals[market] = self.balance_source.total_supply(market)
            logger.info(f"Registered position of {user} in {market}: {balance}")

    @non_reentrant
    def claim_rewards(self, user, tokens: Optional[list] = None) -> dict:
        """
        Accrue `user` everywhere and pay what the reserve can cover.

        Returns:
            {token: amount paid}
        """
        self.pausable.require_not_paused()
        for market in self.user_markets(user):
            self.accrue_rewards(market, user)

        if tokens is None:
            tokens = [t for (u, t), amount in self.accrued.items() if u == user and amount > 0]

        paid = {}
        for token in tokens:
            owed = self.rewards_accrued(user, token)
            if owed == 0:
                continue
            amount = min(owed, self.ledger.balance_of(token, self.reserve))
            if amount < owed:
                logger.warning(
                    f"Reward shortfall for {user}: {owed - amount} {token} left accrued"
                )
            if amount == 0:
                continue
            self.accrued[(user, token)] = owed - amount
            self.total_unclaimed[token] -= amount
            self.ledger.transfer(token, self.reserve, user, amount)
            paid[token] = amount
            logger.info(f"Paid {amount} {token} rewards to {user}")
            if self.monitor:
                self.monitor.record_rewards_claimed(token, amount)
        return paid

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def _update_markets(self, markets):
        for market in markets:
            self.update_market_rewards(market)

    def add_reward_token(self, caller, token, initial_inflation_rate: Optional[int],
                         reduction_factor: Optional[int], markets: list,
                         weights: Optional[list] = None):
        """
        Start emitting `token` to `markets`.

        A None rate, factor or weight list falls back to the configured default.
        """
        self.access.check_role(GOVERNANCE, caller)
        if initial_inflation_rate is None:
            initial_inflation_rate = self.default_inflation_rate
        if reduction_factor is None:
            reduction_factor = self.config.reduction_factor
        if weights is None:
            weights = list(self.config.reward_weights)
        self.accumulator.validate_new_token(
            token, initial_inflation_rate, reduction_factor, markets, weights
        )
        self._update_markets(markets)
        return self.accumulator.add_reward_token(
            token, initial_inflation_rate, reduction_factor, markets, weights,
            self.clock.now()
        )

    def remove_reward_token(self, caller, token):
        """
        Stop emitting `token`. Rewards already accrued stay claimable;
        history not yet settled is forfeited.
        """
        self.access.check_role(GOVERNANCE, caller)
        config = self.accumulator.get_config(token)
        self._update_markets(config.markets)
        self.accumulator.remove_reward_token(token)
        for key in [k for k in self.user_last if k[2] == token]:
            del self.user_last[key]

    def update_reward_weights(self, caller, token, markets: list, weights: list):
        self.access.check_role(GOVERNANCE, caller)
        config = self.accumulator.get_config(token)
        validate_weights(markets, weights)
        self._update_markets(set(config.markets) | set(markets))
        self.accumulator.update_weights(token, markets, weights, self.clock.now())

    def set_initial_inflation_rate(self, caller, token, rate: int):
        self.access.check_role(GOVERNANCE, caller)
        config = self.accumulator.get_config(token)
        validate_inflation_rate(rate)
        self._update_markets(config.markets)
        self.accumulator.set_initial_inflation_rate(token, rate)

    def set_reduction_factor(self, caller, token, factor: int):
        self.access.check_role(GOVERNANCE, caller)
        config = self.accumulator.get_config(token)
        validate_reduction_factor(factor)
        self._update_markets(config.markets)
        self.accumulator.set_reduction_factor(token, factor)

    def set_reward_paused(self, caller, token, paused: bool):
        self.access.check_role(GOVERNANCE, caller)
        config = self.accumulator.get_config(token)
        self._update_markets(config.markets)
        self.accumulator.set_paused(token, paused)
        logger.info(f"Reward token {token} {'paused' if paused else 'unpaused'}")

    def set_max_multiplier(self, caller, value: int):
        self.access.check_role(GOVERNANCE, caller)
        if not isinstance(self.policy, LoyaltyMultiplier):
            raise ValidationError("Distributor has no loyalty multiplier")
        self.policy.set_max_multiplier(value)

    def set_smoothing_value(self, caller, value: int):
        self.access.check_role(GOVERNANCE, caller)
        if not isinstance(self.policy, LoyaltyMultiplier):
            raise ValidationError("Distributor has no loyalty multiplier")
        self.policy.set_smoothing_value(value)

    def set_early_withdrawal_threshold(self, caller, threshold: int):
        self.access.check_role(GOVERNANCE, caller)
        if not isinstance(self.policy, EarlyWithdrawalPenalty):
            raise ValidationError("Distributor has no early withdrawal penalty")
        self.policy.set_threshold(threshold)

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        positions, user_last, accrued = {}, {}, {}
        for (market, user), amount in self.positions.items():
            positions.setdefault(market, {})[user] = amount
        for (market, user, token), value in self.user_last.items():
            user_last.setdefault(market, {}).setdefault(user, {})[token] = value
        for (user, token), amount in self.accrued.items():
            if amount:
                accrued.setdefault(user, {})[token] = amount
        return {
            'positions': positions,
            'user_last': user_last,
            'accrued': accrued,
            'totals': dict(self.totals),
            'accumulator': self.accumulator.to_dict(),
            'policy': self.policy.to_dict(),
        }
