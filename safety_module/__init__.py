"""
Safety module: staked collateral pools, reward distribution and slashing auctions.
"""
from safety_module.auction import Auction, AuctionModule, AuctionStatus
from safety_module.config import Config
from safety_module.db import DB
from safety_module.monitoring import Monitor
from safety_module.rewards import RewardDistributor
from safety_module.safety_module import SafetyModule
from safety_module.staked_pool import PoolMode, StakedPool
from safety_module.storage import StateStore

__version__ = "0.1.0"
