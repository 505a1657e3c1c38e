"""
Safety module orchestrator.

Owns the registry of staked pools, routes reward settlement from the pools
to the reward distributor, slashes pools into auctions and pushes auction
results back into the slashed pool.
"""
import logging
from typing import Optional

from safety_module.access import AccessControl, Pausable, GOVERNANCE, non_reentrant
from safety_module.clock import BlockClock
from safety_module.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    StateError,
    ValidationError,
)
from safety_module.fixed_point import WAD, mul_div
from safety_module.ledger import Ledger

logger = logging.getLogger(__name__)


class SafetyModule:
    def __init__(self,
                 address,
                 ledger: Ledger,
                 clock: BlockClock,
                 access: AccessControl,
                 governance_treasury,
                 monitor=None,
                 data: dict = None):
        """
        Args:
            address: Address of the safety module
            ledger: Token ledger
            clock: Block timestamp source
            access: Role registry
            governance_treasury: Recipient of withdrawn auction proceeds
            monitor: Optional Monitor
            data: Stored state from export_state(); pools and modules are
                wired again by the caller
        """
        self.address = address
        self.ledger = ledger
        self.clock = clock
        self.access = access
        self.pausable = Pausable(access)
        self.governance_treasury = governance_treasury
        self.monitor = monitor

        self.staked_pools = {}
        self.auction_module = None
        self.reward_distributor = None
        # {auction_id: pool address}
        self.auction_pools = {
            int(auction_id): pool
            for auction_id, pool in (data or {}).get('auction_pools', {}).items()
        }
        self._entered = False

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def add_staked_pool(self, caller, pool):
        self.access.check_role(GOVERNANCE, caller)
        if pool.address in self.staked_pools:
            raise ValidationError(f"Staked pool {pool.address} already added")
        if pool.safety_module is not self:
            raise ValidationError(f"Staked pool {pool.address} belongs to another safety module")
        self.staked_pools[pool.address] = pool
        if self.reward_distributor is not None:
            self.reward_distributor.update_market_rewards(pool.address)
        logger.info(f"Added staked pool {pool.address}")

    def get_staked_pools(self) -> list:
        return list(self.staked_pools.values())

    def get_staked_pool(self, address):
        pool = self.staked_pools.get(address)
        if pool is None:
            raise ValidationError(f"Unknown staked pool {address}")
        return pool

    def set_auction_module(self, caller, auction_module):
        self.access.check_role(GOVERNANCE, caller)
        if self.auction_module is not None and self.auction_module.active_auctions():
            raise ValidationError("Cannot replace auction module with active auctions")
        self.auction_module = auction_module
        logger.info(f"Auction module set to {auction_module.address}")

    def set_reward_distributor(self, caller, distributor):
        self.access.check_role(GOVERNANCE, caller)
        self.reward_distributor = distributor
        for address in self.staked_pools:
            distributor.update_market_rewards(address)
        logger.info(f"Reward distributor set to {distributor.address}")

    # ------------------------------------------------------------------
    # Reward hooks used by staked pools
    # ------------------------------------------------------------------

    def _check_pool(self, market):
        if market not in self.staked_pools:
            raise AuthorizationError(f"{market} is not a registered staked pool")

    def settle_position(self, market, user):
        """Settle `user` before their balance in `market` changes."""
        self._check_pool(market)
        if self.reward_distributor is not None:
            self.reward_distributor.accrue_rewards(market, user)

    def update_position(self, market, user):
        """Record `user`'s new balance in `market` after it changed."""
        self._check_pool(market)
        if self.reward_distributor is not None:
            self.reward_distributor.update_position(market, user)

    # ------------------------------------------------------------------
    # Slashing and auctions
    # ------------------------------------------------------------------

    @non_reentrant
    def slash_and_start_auction(self, caller, pool_address, num_lots: int, lot_price: int,
                                initial_lot_size: int, slash_fraction: int,
                                lot_increase_increment: int, lot_increase_period: int,
                                time_limit: int) -> int:
        """
        Slash `slash_fraction` (WAD) of a pool and auction the seized collateral.

        Returns:
            The auction id
        """
        self.access.check_role(GOVERNANCE, caller)
        self.pausable.require_not_paused()
        if self.auction_module is None:
            raise ValidationError("No auction module configured")
        pool = self.get_staked_pool(pool_address)
        if slash_fraction <= 0 or slash_fraction > WAD:
            raise ValidationError(f"Slash fraction {slash_fraction} outside (0, 1]")

        shares = mul_div(pool.total_supply(), slash_fraction, WAD)
        if shares == 0:
            raise ValidationError(f"Nothing to slash in pool {pool_address}")
        if pool.is_post_slashing():
            raise StateError(f"Pool {pool_address} is already post-slashing")
        pool.pausable.require_not_paused()
        self.auction_module.pausable.require_not_paused()
        expected = pool.preview_redeem(shares)
        self.auction_module.validate_auction_params(
            num_lots, lot_price, initial_lot_size, lot_increase_increment,
            lot_increase_period, time_limit,
            self.auction_module.unallocated_balance(pool.underlying) + expected
        )

        slashed = pool.slash(self.address, self.auction_module.address, shares)
        auction_id = self.auction_module.start_auction(
            self.address,
            pool.underlying,
            num_lots,
            lot_price,
            initial_lot_size,
            lot_increase_increment,
            lot_increase_period,
            time_limit
        )
        self.auction_pools[auction_id] = pool_address
        logger.warning(
            f"Slashed {slashed} {pool.underlying} from {pool_address} into auction {auction_id}"
        )
        return auction_id

    def terminate_auction(self, caller, auction_id: int):
        self.access.check_role(GOVERNANCE, caller)
        if self.auction_module is None:
            raise ValidationError("No auction module configured")
        self.auction_module.terminate_auction(self.address, auction_id)

    def auction_ended(self, caller, auction_id: int, tokens_sold: int, funds_raised: int,
                      remaining_balance: int, terminated_early: bool):
        """
        Completion callback from the auction module.

        Unsold collateral goes back to the slashed pool, which then leaves
        post-slashing mode. Proceeds stay with the safety module until
        governance withdraws them.
        """
        if self.auction_module is None or caller != self.auction_module.address:
            raise AuthorizationError(f"{caller} is not the auction module")
        pool = self.get_staked_pool(self.auction_pools[auction_id])
        if remaining_balance > 0:
            pool.return_funds(self.address, self.auction_module.address, remaining_balance)
        pool.settle_slashing(self.address)
        logger.info(
            f"Auction {auction_id} ended (early={terminated_early}): sold {tokens_sold}, "
            f"raised {funds_raised}, returned {remaining_balance} to {pool.address}"
        )

    def return_funds(self, caller, pool_address, source, amount: int):
        """Governance top-up of a pool's underlying, raising its exchange rate."""
        self.access.check_role(GOVERNANCE, caller)
        self.get_staked_pool(pool_address).return_funds(self.address, source, amount)

    def settle_slashing(self, caller, pool_address):
        """Governance override to leave post-slashing mode without an auction result."""
        self.access.check_role(GOVERNANCE, caller)
        self.get_staked_pool(pool_address).settle_slashing(self.address)

    @non_reentrant
    def withdraw_funds_raised(self, caller, amount: int, payment_token=None):
        self.access.check_role(GOVERNANCE, caller)
        self.pausable.require_not_paused()
        if payment_token is None and self.auction_module is None:
            raise ValidationError("No auction module configured")
        token = payment_token or self.auction_module.payment_token
        if amount <= 0:
            raise ValidationError("Cannot withdraw zero amount")
        available = self.ledger.balance_of(token, self.address)
        if available < amount:
            raise InsufficientBalanceError(f"Only {available} {token} raised")
        self.ledger.transfer(token, self.address, self.governance_treasury, amount)
        logger.info(f"Withdrew {amount} {token} auction proceeds to {self.governance_treasury}")
        if self.monitor:
            self.monitor.record_proceeds_withdrawn(token, amount)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export_state(self) -> dict:
        """Serialisable view of every engine wired to this module."""
        return {
            'timestamp': self.clock.now(),
            'pools': {address: pool.to_dict() for address, pool in self.staked_pools.items()},
            'auctions': self.auction_module.to_dict() if self.auction_module else None,
            'rewards': self.reward_distributor.to_dict() if self.reward_distributor else None,
            'auction_pools': {str(k): v for k, v in self.auction_pools.items()},
        }

    def save_snapshot(self, store, name: Optional[str] = None):
        state = self.export_state()
        store.save_snapshot(name or str(self.address), state, state['timestamp'])
        return state
