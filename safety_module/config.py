"""
Configuration management for the safety module.
"""
import json
import os
from dataclasses import dataclass, asdict, field

from safety_module.fixed_point import WAD, SECONDS_PER_DAY

TOKEN_UNIT = 10 ** 18


@dataclass
class RewardConfig:
    """Reward distribution configuration."""
    staking_inflation_rate: int = 29_275_059 * TOKEN_UNIT // 100  # per year
    position_inflation_rate: int = 117_100_234 * TOKEN_UNIT // 100  # per year
    reduction_factor: int = 1_189_207_115 * WAD // 10 ** 9
    max_multiplier: int = 4 * WAD
    smoothing_value: int = 30 * WAD
    early_withdrawal_threshold: int = 10 * SECONDS_PER_DAY
    reward_weights: list = field(default_factory=lambda: [10_000])


@dataclass
class StakingConfig:
    """Staked pool configuration."""
    cooldown_seconds: int = 10 * SECONDS_PER_DAY
    unstake_window: int = SECONDS_PER_DAY
    max_stake_amount: int = 1_000_000 * TOKEN_UNIT


@dataclass
class StorageConfig:
    """State snapshot database configuration."""
    path: str = "./safety_module_data"
    write_buffer_size: int = 16 * 1024 * 1024  # 16MB
    max_open_files: int = 500


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    host: str = "127.0.0.1"
    port: int = 9091


@dataclass
class Config:
    """Main configuration."""
    rewards: RewardConfig
    staking: StakingConfig
    storage: StorageConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            rewards=RewardConfig(),
            staking=StakingConfig(),
            storage=StorageConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            rewards=RewardConfig(**data.get('rewards', {})),
            staking=StakingConfig(**data.get('staking', {})),
            storage=StorageConfig(**data.get('storage', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'rewards': asdict(self.rewards),
            'staking': asdict(self.staking),
            'storage': asdict(self.storage),
            'monitoring': asdict(self.monitoring)
        }
