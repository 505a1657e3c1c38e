"""
Cooldown and unstake window bookkeeping for staked share holders.
"""
from safety_module.errors import CooldownNotElapsedError, UnstakeWindowExpiredError


class CooldownBook:
    """
    Per-holder cooldown start timestamps (0 means unset).

    A holder may redeem during
    [start + cooldown_seconds, start + cooldown_seconds + unstake_window].
    """

    def __init__(self, cooldown_seconds: int, unstake_window: int, data: dict = None):
        self.cooldown_seconds = cooldown_seconds
        self.unstake_window = unstake_window
        self.starts = dict((data or {}).get('starts', {}))

    def get(self, holder) -> int:
        return self.starts.get(holder, 0)

    def start(self, holder, now: int):
        self.starts[holder] = now

    def reset(self, holder):
        self.starts.pop(holder, None)

    def set(self, holder, timestamp: int):
        if timestamp == 0:
            self.reset(holder)
        else:
            self.starts[holder] = timestamp

    def is_expired(self, cooldown_start: int, now: int) -> bool:
        return cooldown_start + self.cooldown_seconds + self.unstake_window < now

    def check_redeemable(self, holder, now: int):
        """Raise a TimingError unless `holder` is inside its unstake window."""
        cooldown_start = self.get(holder)
        unlock_time = cooldown_start + self.cooldown_seconds
        if cooldown_start == 0 or now < unlock_time:
            raise CooldownNotElapsedError(
                f"Cooldown not elapsed for {holder}, redeemable from {unlock_time}",
                deadline=unlock_time
            )
        window_end = unlock_time + self.unstake_window
        if now > window_end:
            raise UnstakeWindowExpiredError(
                f"Unstake window for {holder} closed at {window_end}",
                deadline=window_end
            )

    def next_cooldown_timestamp(self, from_cooldown: int, amount_received: int,
                                to_holder, to_balance: int, now: int) -> int:
        """
        Cooldown start for `to_holder` after receiving `amount_received` shares.

        Precedence:
          1. receiver unset            -> stays unset
          2. receiver expired          -> reset to unset
          3. sender unset, expired or
             older than the receiver   -> receiver unchanged
          4. otherwise                 -> balance-weighted blend
        """
        to_cooldown = self.get(to_holder)
        if to_cooldown == 0:
            return 0
        if self.is_expired(to_cooldown, now):
            return 0
        if (from_cooldown == 0 or self.is_expired(from_cooldown, now)
                or from_cooldown < to_cooldown):
            return to_cooldown
        total = amount_received + to_balance
        if total == 0:
            return to_cooldown
        return (amount_received * from_cooldown + to_balance * to_cooldown) // total

    def to_dict(self) -> dict:
        return {
            'cooldown_seconds': self.cooldown_seconds,
            'unstake_window': self.unstake_window,
            'starts': dict(self.starts),
        }
