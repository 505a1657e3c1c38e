"""
Test configuration defaults and JSON persistence.
"""
import os
import shutil
import tempfile
import unittest

from safety_module.config import Config, RewardConfig, StakingConfig, TOKEN_UNIT
from safety_module.fixed_point import SECONDS_PER_DAY, WAD


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_defaults(self):
        """Test the default reward and staking parameters."""
        config = Config.default()

        self.assertEqual(config.rewards.max_multiplier, 4 * WAD)
        self.assertEqual(config.rewards.smoothing_value, 30 * WAD)
        self.assertEqual(config.rewards.early_withdrawal_threshold, 10 * SECONDS_PER_DAY)
        self.assertEqual(config.staking.cooldown_seconds, 10 * SECONDS_PER_DAY)
        self.assertEqual(config.staking.unstake_window, SECONDS_PER_DAY)
        self.assertEqual(config.staking.max_stake_amount, 1_000_000 * TOKEN_UNIT)
        self.assertEqual(config.monitoring.port, 9091)

    def test_round_trip_through_file(self):
        """Test saving and loading a modified configuration."""
        path = os.path.join(self.test_dir, 'conf', 'safety_module.json')
        config = Config.default()
        config.staking.cooldown_seconds = 3600
        config.rewards.reward_weights = [6_000, 4_000]
        config.to_file(path)

        loaded = Config.from_file(path)

        self.assertEqual(loaded.staking.cooldown_seconds, 3600)
        self.assertEqual(loaded.rewards.reward_weights, [6_000, 4_000])
        self.assertEqual(loaded.rewards.reduction_factor, config.rewards.reduction_factor)
        self.assertEqual(loaded.to_dict(), config.to_dict())

    def test_partial_file_uses_defaults(self):
        """Test that missing sections fall back to defaults."""
        path = os.path.join(self.test_dir, 'partial.json')
        with open(path, 'w') as f:
            f.write('{"staking": {"unstake_window": 7200}}')

        loaded = Config.from_file(path)

        self.assertEqual(loaded.staking.unstake_window, 7200)
        self.assertEqual(loaded.staking.cooldown_seconds, StakingConfig().cooldown_seconds)
        self.assertEqual(loaded.rewards, RewardConfig())


if __name__ == '__main__':
    unittest.main()
