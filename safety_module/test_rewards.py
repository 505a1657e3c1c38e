"""
Reward accrual: weighted accumulators, loyalty multiplier and early
withdrawal penalty.
"""
import pytest

from safety_module.access import AccessControl
from safety_module.accumulator import RewardAccumulator, RewardTokenConfig
from safety_module.balance_source import PositionTracker
from safety_module.clock import BlockClock
from safety_module.config import RewardConfig
from safety_module.errors import AuthorizationError, CapacityError, ValidationError
from safety_module.fixed_point import SECONDS_PER_DAY, SECONDS_PER_YEAR, WAD
from safety_module.ledger import Ledger
from safety_module.multiplier import (
    EarlyWithdrawalPenalty,
    LoyaltyMultiplier,
    compute_multiplier,
)
from safety_module.rewards import RewardDistributor

UNIT = 10 ** 18
START = 1_700_000_000
# One tenth of a token per second
RATE = UNIT * SECONDS_PER_YEAR // 10


@pytest.fixture
def clock():
    return BlockClock(START)


@pytest.fixture
def ledger():
    ledger = Ledger()
    ledger.mint('INC', 'reserve', 1_000_000 * UNIT)
    return ledger


@pytest.fixture
def tracker():
    return PositionTracker('tracker')


@pytest.fixture
def distributor(tracker, ledger, clock):
    access = AccessControl(admin='gov')
    config = RewardConfig(early_withdrawal_threshold=10 * SECONDS_PER_DAY)
    return RewardDistributor.for_positions(
        'distributor', tracker, ledger, 'reserve', clock, access, config
    )


@pytest.fixture
def funded_market(distributor, tracker):
    """ETH market with INC rewards, alice holding 10% and bob 90%."""
    distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000])
    tracker.set_position(None, 'ETH', 'alice', 10 * UNIT)
    tracker.set_position(None, 'ETH', 'bob', 90 * UNIT)
    return distributor


class TestAccrual:
    def test_rewards_split_by_share(self, funded_market, clock):
        """1000s at 0.1 token/s pays 100 tokens, 10 of them to alice."""
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')
        funded_market.accrue_rewards('ETH', 'bob')

        assert funded_market.cumulative_reward_per_share('ETH', 'INC') == WAD
        assert funded_market.rewards_accrued('alice', 'INC') == 10 * UNIT
        assert funded_market.rewards_accrued('bob', 'INC') == 90 * UNIT
        assert funded_market.total_unclaimed_rewards('INC') == 100 * UNIT

    def test_accumulator_updates_once_per_timestamp(self, funded_market, clock):
        clock.advance(1000)
        funded_market.update_market_rewards('ETH')
        funded_market.update_market_rewards('ETH')

        assert funded_market.cumulative_reward_per_share('ETH', 'INC') == WAD

    def test_position_change_settles_previous_balance(self, funded_market, tracker, clock):
        clock.advance(1000)
        tracker.set_position(None, 'ETH', 'alice', 110 * UNIT)
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')

        # 10/100 of the first period, 110/200 of the second
        assert funded_market.rewards_accrued('alice', 'INC') == 65 * UNIT

    def test_outsider_accrues_nothing(self, funded_market, clock):
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'carol')

        assert funded_market.rewards_accrued('carol', 'INC') == 0

    def test_empty_market_emits_nothing(self, distributor, tracker, clock):
        distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000])
        clock.advance(1000)
        tracker.set_position(None, 'ETH', 'alice', 10 * UNIT)
        clock.advance(1000)
        distributor.accrue_rewards('ETH', 'alice')

        assert distributor.rewards_accrued('alice', 'INC') == 100 * UNIT

    def test_token_added_later_accrues_from_activation(self, funded_market, ledger, clock):
        clock.advance(1000)
        funded_market.add_reward_token('gov', 'BONUS', RATE, WAD, ['ETH'], [10_000])
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')

        assert funded_market.rewards_accrued('alice', 'INC') == 20 * UNIT
        assert funded_market.rewards_accrued('alice', 'BONUS') == 10 * UNIT

    def test_weights_split_emission_between_markets(self, distributor, tracker, clock):
        distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH', 'BTC'], [7_500, 2_500])
        tracker.set_position(None, 'ETH', 'alice', 10 * UNIT)
        tracker.set_position(None, 'BTC', 'bob', 10 * UNIT)
        clock.advance(1000)
        distributor.accrue_rewards('ETH', 'alice')
        distributor.accrue_rewards('BTC', 'bob')

        assert distributor.rewards_accrued('alice', 'INC') == 75 * UNIT
        assert distributor.rewards_accrued('bob', 'INC') == 25 * UNIT

    def test_paused_token_stops_emitting(self, funded_market, clock):
        funded_market.set_reward_paused('gov', 'INC', True)
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')

        assert funded_market.rewards_accrued('alice', 'INC') == 0

    def test_removed_token_keeps_accrued_rewards(self, funded_market, clock):
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')
        funded_market.remove_reward_token('gov', 'INC')

        assert funded_market.rewards_accrued('alice', 'INC') == 10 * UNIT
        assert 'INC' not in funded_market.accumulator.reward_tokens
        assert not [k for k in funded_market.user_last if k[2] == 'INC']

    def test_register_existing_positions(self, ledger, clock):
        tracker = PositionTracker('tracker', data={'positions': {'ETH': {'alice': 10 * UNIT}}})
        distributor = RewardDistributor.for_positions(
            'distributor', tracker, ledger, 'reserve', clock, AccessControl(admin='gov')
        )
        distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000])
        distributor.register_positions('alice', 'alice', ['ETH'])
        clock.advance(1000)
        distributor.accrue_rewards('ETH', 'alice')

        assert distributor.rewards_accrued('alice', 'INC') == 100 * UNIT
        with pytest.raises(ValidationError):
            distributor.register_positions('alice', 'alice', ['ETH'])


class TestClaim:
    def test_claim_pays_accrued(self, funded_market, ledger, clock):
        clock.advance(1000)
        paid = funded_market.claim_rewards('alice')

        assert paid == {'INC': 10 * UNIT}
        assert ledger.balance_of('INC', 'alice') == 10 * UNIT
        assert funded_market.rewards_accrued('alice', 'INC') == 0

    def test_claim_limited_by_reserve(self, distributor, tracker, clock):
        distributor.ledger.burn('INC', 'reserve', 1_000_000 * UNIT - 4 * UNIT)
        distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000])
        tracker.set_position(None, 'ETH', 'alice', 10 * UNIT)
        tracker.set_position(None, 'ETH', 'bob', 90 * UNIT)
        clock.advance(1000)

        paid = distributor.claim_rewards('alice')

        assert paid == {'INC': 4 * UNIT}
        assert distributor.rewards_accrued('alice', 'INC') == 6 * UNIT
        assert distributor.total_unclaimed_rewards('INC') == 6 * UNIT

    def test_claim_with_nothing_owed(self, funded_market):
        assert funded_market.claim_rewards('carol') == {}


class TestEarlyWithdrawal:
    def test_withdrawal_within_threshold_forfeits_pro_rata(self, funded_market, tracker, clock):
        clock.advance(5 * SECONDS_PER_DAY)
        tracker.remove_liquidity(None, 'ETH', 'alice', 10 * UNIT)

        # 4320 earned, half forfeited after 5 of 10 days
        assert funded_market.rewards_accrued('alice', 'INC') == 2160 * UNIT
        assert funded_market.position('ETH', 'alice') == 0

    def test_withdrawal_after_threshold_keeps_everything(self, funded_market, tracker, clock):
        clock.advance(10 * SECONDS_PER_DAY)
        tracker.remove_liquidity(None, 'ETH', 'alice', 5 * UNIT)

        assert funded_market.rewards_accrued('alice', 'INC') == 8640 * UNIT

    def test_increase_is_never_penalised(self, funded_market, tracker, clock):
        clock.advance(1000)
        tracker.provide_liquidity(None, 'ETH', 'alice', 10 * UNIT)

        assert funded_market.rewards_accrued('alice', 'INC') == 10 * UNIT

    def test_penalty_policy_directly(self):
        penalty = EarlyWithdrawalPenalty(threshold=1000)
        penalty.on_position_change('ETH', 'alice', 0, 100, START)

        assert penalty.last_deposit_time('ETH', 'alice') == START
        assert penalty.apply('ETH', 'alice', 1000, 100, 50, START + 250) == 250
        assert penalty.apply('ETH', 'alice', 1000, 100, 100, START + 250) == 1000
        assert penalty.multiplier('ETH', 'alice', START + 250) == WAD

    def test_negative_threshold_rejected(self, distributor):
        with pytest.raises(ValidationError):
            distributor.set_early_withdrawal_threshold('gov', -1)

    def test_threshold_not_settable_on_multiplier_distributor(self, ledger, clock):
        distributor = RewardDistributor(
            'distributor', PositionTracker('tracker'), LoyaltyMultiplier(4 * WAD, 30 * WAD),
            ledger, 'reserve', clock, AccessControl(admin='gov')
        )
        with pytest.raises(ValidationError):
            distributor.set_early_withdrawal_threshold('gov', 100)


class TestLoyaltyMultiplier:
    def test_curve_values(self):
        assert compute_multiplier(0, START, 4 * WAD, 30 * WAD) == WAD
        assert compute_multiplier(START, START, 4 * WAD, 30 * WAD) == WAD
        thirty_days = START + 30 * SECONDS_PER_DAY
        assert compute_multiplier(START, thirty_days, 4 * WAD, 30 * WAD) == 5 * WAD // 2

    def test_curve_is_monotone_and_bounded(self):
        previous = 0
        for days in (0, 1, 7, 30, 365, 3650, 36500):
            value = compute_multiplier(START, START + days * SECONDS_PER_DAY, 4 * WAD, 30 * WAD)
            assert value >= previous
            assert WAD <= value <= 4 * WAD
            previous = value

    def test_increase_moves_start_to_weighted_average(self):
        loyalty = LoyaltyMultiplier(4 * WAD, 30 * WAD)
        loyalty.on_position_change('stk', 'alice', 0, 100, START)
        now = START + 100 * SECONDS_PER_DAY
        loyalty.on_position_change('stk', 'alice', 100, 200, now)

        assert loyalty.start_time('stk', 'alice') == now - 50 * SECONDS_PER_DAY

    def test_decrease_keeps_start_and_exit_clears_it(self):
        loyalty = LoyaltyMultiplier(4 * WAD, 30 * WAD)
        loyalty.on_position_change('stk', 'alice', 0, 100, START)
        loyalty.on_position_change('stk', 'alice', 100, 40, START + 1000)
        assert loyalty.start_time('stk', 'alice') == START

        loyalty.on_position_change('stk', 'alice', 40, 0, START + 2000)
        assert loyalty.start_time('stk', 'alice') == 0

    def test_apply_scales_rewards(self):
        loyalty = LoyaltyMultiplier(4 * WAD, 30 * WAD)
        loyalty.on_position_change('stk', 'alice', 0, 100, START)
        now = START + 30 * SECONDS_PER_DAY

        assert loyalty.apply('stk', 'alice', 100, 100, 100, now) == 250

    def test_parameter_bounds(self):
        with pytest.raises(ValidationError):
            LoyaltyMultiplier(WAD - 1, 30 * WAD)
        with pytest.raises(ValidationError):
            LoyaltyMultiplier(11 * WAD, 30 * WAD)
        loyalty = LoyaltyMultiplier(4 * WAD, 30 * WAD)
        with pytest.raises(ValidationError):
            loyalty.set_smoothing_value(9 * WAD)
        with pytest.raises(ValidationError):
            loyalty.set_smoothing_value(101 * WAD)
        loyalty.set_max_multiplier(10 * WAD)
        assert loyalty.max_multiplier == 10 * WAD


class TestRewardTokenGovernance:
    def test_reward_token_cap(self, distributor):
        for i in range(10):
            distributor.add_reward_token('gov', f'T{i}', RATE, WAD, ['ETH'], [10_000])

        with pytest.raises(CapacityError):
            distributor.add_reward_token('gov', 'T10', RATE, WAD, ['ETH'], [10_000])

    def test_duplicate_token_rejected(self, funded_market):
        with pytest.raises(ValidationError):
            funded_market.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000])

    def test_weights_must_sum_to_full_basis_points(self, distributor):
        with pytest.raises(ValidationError):
            distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH', 'BTC'], [5_000, 4_000])
        with pytest.raises(ValidationError):
            distributor.add_reward_token('gov', 'INC', RATE, WAD, ['ETH'], [10_000, 0])

    def test_inflation_rate_and_factor_bounds(self, distributor):
        with pytest.raises(ValidationError):
            distributor.add_reward_token('gov', 'INC', 6 * 10 ** 24, WAD, ['ETH'], [10_000])
        with pytest.raises(ValidationError):
            distributor.add_reward_token('gov', 'INC', RATE, WAD - 1, ['ETH'], [10_000])

    def test_only_governance_configures_rewards(self, distributor, funded_market):
        with pytest.raises(AuthorizationError):
            distributor.add_reward_token('mallory', 'X', RATE, WAD, ['ETH'], [10_000])
        with pytest.raises(AuthorizationError):
            funded_market.set_initial_inflation_rate('mallory', 'INC', 0)
        with pytest.raises(AuthorizationError):
            funded_market.remove_reward_token('mallory', 'INC')

    def test_weight_update_settles_old_weights_first(self, funded_market, tracker, clock):
        clock.advance(1000)
        funded_market.update_reward_weights('gov', 'INC', ['ETH', 'BTC'], [5_000, 5_000])
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')

        assert funded_market.rewards_accrued('alice', 'INC') == 15 * UNIT
        assert funded_market.accumulator.weight('INC', 'BTC') == 5_000

    def test_clearing_house_restriction(self, ledger, clock):
        tracker = PositionTracker('tracker', clearing_house='clearing_house')
        with pytest.raises(AuthorizationError):
            tracker.set_position('mallory', 'ETH', 'alice', UNIT)
        tracker.set_position('clearing_house', 'ETH', 'alice', UNIT)
        assert tracker.balance_of('ETH', 'alice') == UNIT


    def test_defaults_come_from_config(self, distributor):
        config = distributor.add_reward_token('gov', 'INC', None, None, ['ETH'])

        assert config.initial_inflation_rate == RewardConfig().position_inflation_rate
        assert config.reduction_factor == RewardConfig().reduction_factor
        assert config.weights == [10_000]

    def test_restore_from_dict(self, funded_market, tracker, ledger, clock):
        clock.advance(1000)
        funded_market.accrue_rewards('ETH', 'alice')
        funded_market.set_early_withdrawal_threshold('gov', 20 * SECONDS_PER_DAY)
        state = funded_market.to_dict()

        restored = RewardDistributor.for_positions(
            'distributor', tracker, ledger, 'reserve', clock, funded_market.access, data=state
        )

        assert restored.policy.threshold == 20 * SECONDS_PER_DAY
        assert restored.policy.last_deposit_time('ETH', 'alice') == START
        assert restored.multiplier_start('ETH', 'alice') == 0
        clock.advance(1000)
        restored.accrue_rewards('ETH', 'alice')
        restored.accrue_rewards('ETH', 'bob')

        assert restored.rewards_accrued('alice', 'INC') == 20 * UNIT
        assert restored.rewards_accrued('bob', 'INC') == 180 * UNIT
        assert restored.total_unclaimed_rewards('INC') == 200 * UNIT

    def test_restored_distributor_follows_tracker(self, funded_market, tracker, ledger, clock):
        state = funded_market.to_dict()
        restored = RewardDistributor.for_positions(
            'distributor', tracker, ledger, 'reserve', clock, funded_market.access, data=state
        )
        clock.advance(1000)
        tracker.set_position(None, 'ETH', 'alice', 110 * UNIT)

        assert restored.position('ETH', 'alice') == 110 * UNIT
        assert restored.rewards_accrued('alice', 'INC') == 10 * UNIT


class TestInflationDecay:
    def test_rate_divided_once_per_year(self):
        config = RewardTokenConfig({
            'token': 'INC',
            'initial_inflation_rate': 1_000 * UNIT,
            'reduction_factor': 2 * WAD,
            'init_timestamp': START,
            'markets': ['ETH'],
            'weights': [10_000],
        })

        assert config.inflation_rate(START) == 1_000 * UNIT
        assert config.inflation_rate(START + SECONDS_PER_YEAR - 1) == 1_000 * UNIT
        assert config.inflation_rate(START + SECONDS_PER_YEAR) == 500 * UNIT
        assert config.inflation_rate(START + 2 * SECONDS_PER_YEAR) == 250 * UNIT

    def test_accumulator_state_round_trip(self, funded_market, clock):
        clock.advance(1000)
        funded_market.update_market_rewards('ETH')
        restored = RewardAccumulator(funded_market.accumulator.to_dict())

        assert restored.cumulative_reward_per_share('ETH', 'INC') == WAD
        assert restored.reward_tokens == ['INC']
        assert restored.last_update_time('ETH') == START + 1000
