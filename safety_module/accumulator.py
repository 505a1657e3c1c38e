"""
Weighted time-decay reward accumulator.

Tracks, per (market, reward token), the cumulative reward paid per share
unit since the token was activated for the market. Shared by both reward
distributor variants; the distributor supplies market totals.
"""
import logging
from typing import Optional

from safety_module.errors import CapacityError, ValidationError
from safety_module.fixed_point import BPS, SECONDS_PER_YEAR, WAD, mul_div, wad_pow

logger = logging.getLogger(__name__)

MAX_REWARD_TOKENS = 10
MAX_INFLATION_RATE = 5 * 10 ** 24
MIN_REDUCTION_FACTOR = WAD


class RewardTokenConfig:
    """
    Emission schedule of one reward token.

    The inflation rate is in tokens per year and is divided by the reduction
    factor once for every full year since `init_timestamp`.
    """

    def __init__(self, data: dict):
        self.token = data['token']
        self.initial_inflation_rate = int(data['initial_inflation_rate'])
        self.reduction_factor = int(data['reduction_factor'])
        self.init_timestamp = int(data['init_timestamp'])
        self.markets = list(data['markets'])
        self.weights = [int(w) for w in data['weights']]
        self.paused = bool(data.get('paused', False))

    def weight(self, market) -> int:
        try:
            return self.weights[self.markets.index(market)]
        except ValueError:
            return 0

    def inflation_rate(self, now: int) -> int:
        periods = max(0, now - self.init_timestamp) // SECONDS_PER_YEAR
        if periods == 0:
            return self.initial_inflation_rate
        return mul_div(self.initial_inflation_rate, WAD, wad_pow(self.reduction_factor, periods))

    def to_dict(self) -> dict:
        return {
            'token': self.token,
            'initial_inflation_rate': self.initial_inflation_rate,
            'reduction_factor': self.reduction_factor,
            'init_timestamp': self.init_timestamp,
            'markets': list(self.markets),
            'weights': list(self.weights),
            'paused': self.paused,
        }

    def __repr__(self) -> str:
        return (
            f"RewardTokenConfig(token={self.token}, "
            f"rate={self.initial_inflation_rate}, markets={self.markets})"
        )


def validate_weights(markets: list, weights: list):
    """Weights are basis points per market and must sum to exactly 10000."""
    if len(markets) != len(weights):
        raise ValidationError(
            f"Got {len(markets)} markets but {len(weights)} weights"
        )
    if len(set(markets)) != len(markets):
        raise ValidationError("Duplicate market in weight set")
    for market, weight in zip(markets, weights):
        if weight < 0 or weight > BPS:
            raise ValidationError(f"Weight {weight} for {market} out of range")
    total = sum(weights)
    if total != BPS:
        raise ValidationError(f"Weights sum to {total}, expected {BPS}")


def validate_inflation_rate(rate: int):
    if rate < 0 or rate > MAX_INFLATION_RATE:
        raise ValidationError(f"Inflation rate {rate} above maximum {MAX_INFLATION_RATE}")


def validate_reduction_factor(factor: int):
    if factor < MIN_REDUCTION_FACTOR:
        raise ValidationError(f"Reduction factor {factor} below {MIN_REDUCTION_FACTOR}")


class RewardAccumulator:
    def __init__(self, data: dict = None):
        """
        Args:
            data: Dict with token configs, cumulative values and update times
        """
        if data is None:
            data = {
                'tokens': [],
                'cumulative': {},
                'baseline': {},
                'last_update': {},
            }

        # {token: RewardTokenConfig}, activation order preserved
        self.tokens = {}
        for token_data in data['tokens']:
            config = RewardTokenConfig(token_data)
            self.tokens[config.token] = config
        # {(market, token): cumulative reward per share, WAD}
        self.cumulative = self._unnest(data['cumulative'])
        # {(market, token): cumulative value when the token was (re)activated}
        self.baselines = self._unnest(data['baseline'])
        # {market: timestamp}
        self.last_update = {m: int(t) for m, t in data['last_update'].items()}

    @staticmethod
    def _unnest(nested: dict) -> dict:
        return {
            (market, token): int(value)
            for market, per_token in nested.items()
            for token, value in per_token.items()
        }

    @staticmethod
    def _nest(flat: dict) -> dict:
        nested = {}
        for (market, token), value in flat.items():
            nested.setdefault(market, {})[token] = value
        return nested

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def reward_tokens(self) -> list:
        return list(self.tokens)

    def get_config(self, token) -> RewardTokenConfig:
        config = self.tokens.get(token)
        if config is None:
            raise ValidationError(f"Unknown reward token {token}")
        return config

    def tokens_for_market(self, market) -> list:
        return [
            token for token, config in self.tokens.items()
            if config.weight(market) > 0
        ]

    def weight(self, token, market) -> int:
        return self.get_config(token).weight(market)

    def inflation_rate(self, token, now: int) -> int:
        return self.get_config(token).inflation_rate(now)

    def cumulative_reward_per_share(self, market, token) -> int:
        return self.cumulative.get((market, token), 0)

    def baseline(self, market, token) -> int:
        return self.baselines.get((market, token), 0)

    def last_update_time(self, market) -> Optional[int]:
        return self.last_update.get(market)

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------

    def update_market(self, market, total_shares: int, now: int):
        """
        Bring every token's accumulator for `market` up to `now`.

        Runs at most once per (market, timestamp). Time during which the
        market holds no shares emits nothing.
        """
        last = self.last_update.get(market)
        if last is None or now <= last:
            if last is None:
                self.last_update[market] = now
            return
        self.last_update[market] = now
        if total_shares == 0:
            return

        elapsed = now - last
        for token in self.tokens_for_market(market):
            config = self.tokens[token]
            if config.paused:
                continue
            rate = config.inflation_rate(now)
            delta = mul_div(
                rate * config.weight(market) * elapsed,
                WAD,
                BPS * SECONDS_PER_YEAR * total_shares
            )
            key = (market, token)
            self.cumulative[key] = self.cumulative.get(key, 0) + delta
            logger.debug(
                f"Market {market} token {token}: +{delta} per share over {elapsed}s"
            )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def validate_new_token(self, token, initial_inflation_rate: int,
                           reduction_factor: int, markets: list, weights: list):
        if token in self.tokens:
            raise ValidationError(f"Reward token {token} already added")
        if len(self.tokens) >= MAX_REWARD_TOKENS:
            raise CapacityError(
                f"Cannot add more than {MAX_REWARD_TOKENS} reward tokens"
            )
        validate_inflation_rate(initial_inflation_rate)
        validate_reduction_factor(reduction_factor)
        validate_weights(markets, weights)

    def add_reward_token(self, token, initial_inflation_rate: int,
                         reduction_factor: int, markets: list, weights: list,
                         now: int) -> RewardTokenConfig:
        self.validate_new_token(token, initial_inflation_rate, reduction_factor,
                                markets, weights)
        active = [(m, w) for m, w in zip(markets, weights) if w > 0]
        config = RewardTokenConfig({
            'token': token,
            'initial_inflation_rate': initial_inflation_rate,
            'reduction_factor': reduction_factor,
            'init_timestamp': now,
            'markets': [m for m, _ in active],
            'weights': [w for _, w in active],
        })
        self.tokens[token] = config
        for market in config.markets:
            self._activate(market, token, now)
        logger.info(f"Added reward token {token} for markets {config.markets}")
        return config

    def remove_reward_token(self, token) -> RewardTokenConfig:
        config = self.get_config(token)
        del self.tokens[token]
        for market in config.markets:
            self.cumulative.pop((market, token), None)
            self.baselines.pop((market, token), None)
        logger.info(f"Removed reward token {token}")
        return config

    def update_weights(self, token, markets: list, weights: list, now: int):
        config = self.get_config(token)
        validate_weights(markets, weights)
        previous = set(config.markets)
        active = [(m, w) for m, w in zip(markets, weights) if w > 0]
        config.markets = [m for m, _ in active]
        config.weights = [w for _, w in active]
        for market in config.markets:
            if market not in previous:
                self._activate(market, token, now)
        logger.info(f"Updated weights for {token}: {dict(active)}")

    def set_initial_inflation_rate(self, token, rate: int):
        config = self.get_config(token)
        validate_inflation_rate(rate)
        config.initial_inflation_rate = rate

    def set_reduction_factor(self, token, factor: int):
        config = self.get_config(token)
        validate_reduction_factor(factor)
        config.reduction_factor = factor

    def set_paused(self, token, paused: bool):
        self.get_config(token).paused = paused

    def _activate(self, market, token, now: int):
        key = (market, token)
        self.baselines[key] = self.cumulative.get(key, 0)
        self.last_update.setdefault(market, now)

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'tokens': [config.to_dict() for config in self.tokens.values()],
            'cumulative': self._nest(self.cumulative),
            'baseline': self._nest(self.baselines),
            'last_update': dict(self.last_update),
        }
