"""
Reward policies applied on top of raw accumulator rewards.

LoyaltyMultiplier scales rewards by a smoothed stake-duration multiplier
(staked pools). EarlyWithdrawalPenalty forfeits part of the rewards of
positions reduced shortly after being increased (perpetual LP positions).
"""
import logging

from safety_module.errors import ValidationError
from safety_module.fixed_point import SECONDS_PER_DAY, WAD, mul_div

logger = logging.getLogger(__name__)

MIN_MAX_MULTIPLIER = WAD
MAX_MAX_MULTIPLIER = 10 * WAD
MIN_SMOOTHING_VALUE = 10 * WAD
MAX_SMOOTHING_VALUE = 100 * WAD


def compute_multiplier(start: int, now: int, max_multiplier: int, smoothing_value: int) -> int:
    """
    1 + (max - 1) * d / (d + smoothing), with d the days since `start`.

    Approaches `max_multiplier` asymptotically; exactly WAD at d == 0.
    """
    if start == 0 or now <= start:
        return WAD
    elapsed_days = mul_div(now - start, WAD, SECONDS_PER_DAY)
    multiplier = WAD + mul_div(
        max_multiplier - WAD,
        elapsed_days,
        elapsed_days + smoothing_value
    )
    return min(multiplier, max_multiplier)


class LoyaltyMultiplier:
    """Per-(market, user) multiplier start times and the curve parameters."""

    def __init__(self, max_multiplier: int, smoothing_value: int, data: dict = None):
        self._validate_max_multiplier(max_multiplier)
        self._validate_smoothing_value(smoothing_value)
        self.max_multiplier = max_multiplier
        self.smoothing_value = smoothing_value
        # {(market, user): timestamp}
        self.starts = {
            (market, user): int(ts)
            for market, users in (data or {}).get('starts', {}).items()
            for user, ts in users.items()
        }

    @staticmethod
    def _validate_max_multiplier(value: int):
        if value < MIN_MAX_MULTIPLIER or value > MAX_MAX_MULTIPLIER:
            raise ValidationError(
                f"Max multiplier {value} outside [{MIN_MAX_MULTIPLIER}, {MAX_MAX_MULTIPLIER}]"
            )

    @staticmethod
    def _validate_smoothing_value(value: int):
        if value < MIN_SMOOTHING_VALUE or value > MAX_SMOOTHING_VALUE:
            raise ValidationError(
                f"Smoothing value {value} outside [{MIN_SMOOTHING_VALUE}, {MAX_SMOOTHING_VALUE}]"
            )

    def set_max_multiplier(self, value: int):
        self._validate_max_multiplier(value)
        self.max_multiplier = value

    def set_smoothing_value(self, value: int):
        self._validate_smoothing_value(value)
        self.smoothing_value = value

    def start_time(self, market, user) -> int:
        return self.starts.get((market, user), 0)

    def multiplier(self, market, user, now: int) -> int:
        return compute_multiplier(
            self.start_time(market, user), now, self.max_multiplier, self.smoothing_value
        )

    def apply(self, market, user, owed: int, prev: int, new: int, now: int) -> int:
        return mul_div(owed, self.multiplier(market, user, now), WAD)

    def on_position_change(self, market, user, prev: int, new: int, now: int):
        """
        Move the start time to the balance-weighted average on increases.

        Decreases keep the start time; a full exit clears it.
        """
        key = (market, user)
        start = self.starts.get(key, 0)
        if new == 0:
            self.starts.pop(key, None)
        elif prev == 0 or start == 0:
            self.starts[key] = now
        elif new > prev:
            self.starts[key] = now - mul_div(now - start, prev, new)

    def to_dict(self) -> dict:
        starts = {}
        for (market, user), ts in self.starts.items():
            starts.setdefault(market, {})[user] = ts
        return {
            'max_multiplier': self.max_multiplier,
            'smoothing_value': self.smoothing_value,
            'starts': starts,
        }


class EarlyWithdrawalPenalty:
    """
    Forfeits rewards pro rata when a position shrinks within `threshold`
    seconds of its last increase. The multiplier is always 1.
    """

    def __init__(self, threshold: int, data: dict = None):
        if threshold < 0:
            raise ValidationError("Early withdrawal threshold cannot be negative")
        self.threshold = threshold
        # {(market, user): timestamp of last increase}
        self.last_deposits = {
            (market, user): int(ts)
            for market, users in (data or {}).get('last_deposits', {}).items()
            for user, ts in users.items()
        }

    def set_threshold(self, threshold: int):
        if threshold < 0:
            raise ValidationError("Early withdrawal threshold cannot be negative")
        self.threshold = threshold

    def last_deposit_time(self, market, user) -> int:
        return self.last_deposits.get((market, user), 0)

    def multiplier(self, market, user, now: int) -> int:
        return WAD

    def apply(self, market, user, owed: int, prev: int, new: int, now: int) -> int:
        if new >= prev or self.threshold == 0:
            return owed
        held_for = now - self.last_deposit_time(market, user)
        if held_for >= self.threshold:
            return owed
        reduced = mul_div(owed, held_for, self.threshold)
        logger.warning(
            f"Early withdrawal by {user} from {market}: "
            f"forfeiting {owed - reduced} of {owed}"
        )
        return reduced

    def on_position_change(self, market, user, prev: int, new: int, now: int):
        key = (market, user)
        if new == 0:
            self.last_deposits.pop(key, None)
        elif new > prev:
            self.last_deposits[key] = now

    def to_dict(self) -> dict:
        last_deposits = {}
        for (market, user), ts in self.last_deposits.items():
            last_deposits.setdefault(market, {})[user] = ts
        return {'threshold': self.threshold, 'last_deposits': last_deposits}
