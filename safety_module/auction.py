"""
Fixed-price, growing-lot-size auctions for slashed collateral.

The price of a lot never changes; the number of tokens in a lot grows by a
fixed increment every period, capped so the remaining lots can always be
covered by the remaining inventory.
"""
import logging
from enum import Enum

from safety_module.access import AccessControl, Pausable, GOVERNANCE, non_reentrant
from safety_module.clock import BlockClock
from safety_module.errors import (
    AuctionExpiredError,
    AuthorizationError,
    CapacityError,
    InsufficientBalanceError,
    StateError,
    TimingError,
    ValidationError,
)
from safety_module.ledger import Ledger

logger = logging.getLogger(__name__)


class AuctionStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    SOLD_OUT = 'SOLD_OUT'
    TIMED_OUT = 'TIMED_OUT'
    TERMINATED = 'TERMINATED'


class Auction:
    """State of a single auction. Terminal statuses are final."""

    def __init__(self, data: dict):
        self.auction_id = int(data['auction_id'])
        self.token = data['token']
        self.lot_price = int(data['lot_price'])
        self.initial_lot_size = int(data['initial_lot_size'])
        self.lot_increase_increment = int(data['lot_increase_increment'])
        self.lot_increase_period = int(data['lot_increase_period'])
        self.num_lots = int(data['num_lots'])
        self.remaining_lots = int(data.get('remaining_lots', self.num_lots))
        self.start_time = int(data['start_time'])
        self.end_time = int(data['end_time'])
        self.remaining_balance = int(data['remaining_balance'])
        self.tokens_sold = int(data.get('tokens_sold', 0))
        self.funds_raised = int(data.get('funds_raised', 0))
        self.status = AuctionStatus(data.get('status', AuctionStatus.ACTIVE.value))

    @property
    def is_active(self) -> bool:
        return self.status is AuctionStatus.ACTIVE

    def lot_size_at(self, now: int) -> int:
        """Grown lot size at `now`, capped by remaining inventory per lot."""
        if self.remaining_lots == 0:
            return 0
        periods = max(0, now - self.start_time) // self.lot_increase_period
        grown = self.initial_lot_size + periods * self.lot_increase_increment
        return min(grown, self.remaining_balance // self.remaining_lots)

    def to_dict(self) -> dict:
        return {
            'auction_id': self.auction_id,
            'token': self.token,
            'lot_price': self.lot_price,
            'initial_lot_size': self.initial_lot_size,
            'lot_increase_increment': self.lot_increase_increment,
            'lot_increase_period': self.lot_increase_period,
            'num_lots': self.num_lots,
            'remaining_lots': self.remaining_lots,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'remaining_balance': self.remaining_balance,
            'tokens_sold': self.tokens_sold,
            'funds_raised': self.funds_raised,
            'status': self.status.value,
        }

    def __repr__(self) -> str:
        return (
            f"Auction(id={self.auction_id}, "
            f"status={self.status.value}, "
            f"lots={self.remaining_lots}/{self.num_lots}, "
            f"price={self.lot_price})"
        )


class AuctionModule:
    def __init__(self,
                 address,
                 payment_token,
                 ledger: Ledger,
                 clock: BlockClock,
                 access: AccessControl,
                 safety_module,
                 monitor=None,
                 data: dict = None):
        self.address = address
        self.payment_token = payment_token
        self.ledger = ledger
        self.clock = clock
        self.access = access
        self.pausable = Pausable(access)
        self.safety_module = safety_module
        self.monitor = monitor

        if data is None:
            data = {'next_auction_id': 1, 'auctions': []}

        self.next_auction_id = int(data['next_auction_id'])
        self.auctions = {}
        for auction_data in data['auctions']:
            auction = Auction(auction_data)
            self.auctions[auction.auction_id] = auction
        self._entered = False

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_auction(self, auction_id: int) -> Auction:
        auction = self.auctions.get(auction_id)
        if auction is None:
            raise ValidationError(f"Unknown auction {auction_id}")
        return auction

    def is_auction_active(self, auction_id: int) -> bool:
        auction = self.auctions.get(auction_id)
        return auction is not None and auction.is_active

    def active_auctions(self) -> list:
        return [a for a in self.auctions.values() if a.is_active]

    def get_current_lot_size(self, auction_id: int) -> int:
        auction = self.get_auction(auction_id)
        if not auction.is_active:
            return 0
        return auction.lot_size_at(self.clock.now())

    def get_remaining_lots(self, auction_id: int) -> int:
        return self.get_auction(auction_id).remaining_lots

    def get_tokens_sold(self, auction_id: int) -> int:
        return self.get_auction(auction_id).tokens_sold

    def get_funds_raised(self, auction_id: int) -> int:
        return self.get_auction(auction_id).funds_raised

    def unallocated_balance(self, token) -> int:
        """Tokens held by the module that no active auction has claimed."""
        allocated = sum(
            a.remaining_balance for a in self.active_auctions() if a.token == token
        )
        return self.ledger.balance_of(token, self.address) - allocated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _only_safety_module(self, caller):
        if caller != self.safety_module.address:
            raise AuthorizationError(f"{caller} is not the safety module")

    @staticmethod
    def validate_auction_params(num_lots: int, lot_price: int, initial_lot_size: int,
                                lot_increase_increment: int, lot_increase_period: int,
                                time_limit: int, inventory: int):
        if num_lots <= 0:
            raise ValidationError("Number of lots must be positive")
        if lot_price <= 0:
            raise ValidationError("Lot price must be positive")
        if initial_lot_size <= 0:
            raise ValidationError("Initial lot size must be positive")
        if lot_increase_increment < 0:
            raise ValidationError("Lot increase increment cannot be negative")
        if lot_increase_period <= 0:
            raise ValidationError("Lot increase period must be positive")
        if time_limit <= 0:
            raise ValidationError("Time limit must be positive")
        if inventory < num_lots * initial_lot_size:
            raise CapacityError(
                f"Inventory {inventory} cannot cover {num_lots} lots of {initial_lot_size}"
            )

    def start_auction(self, caller, token, num_lots: int, lot_price: int,
                      initial_lot_size: int, lot_increase_increment: int,
                      lot_increase_period: int, time_limit: int) -> int:
        """
        Start selling the module's unallocated balance of `token`.

        Returns:
            The new auction id
        """
        self._only_safety_module(caller)
        self.pausable.require_not_paused()
        inventory = self.unallocated_balance(token)
        self.validate_auction_params(num_lots, lot_price, initial_lot_size,
                                     lot_increase_increment, lot_increase_period,
                                     time_limit, inventory)

        now = self.clock.now()
        auction = Auction({
            'auction_id': self.next_auction_id,
            'token': token,
            'lot_price': lot_price,
            'initial_lot_size': initial_lot_size,
            'lot_increase_increment': lot_increase_increment,
            'lot_increase_period': lot_increase_period,
            'num_lots': num_lots,
            'start_time': now,
            'end_time': now + time_limit,
            'remaining_balance': inventory,
        })
        self.auctions[auction.auction_id] = auction
        self.next_auction_id += 1

        logger.info(
            f"Auction {auction.auction_id} started: {num_lots} lots of "
            f"{initial_lot_size} {token} at {lot_price}, ends {auction.end_time}"
        )
        if self.monitor:
            self.monitor.set_active_auctions(len(self.active_auctions()))
        return auction.auction_id

    @non_reentrant
    def buy_lots(self, caller, auction_id: int, num_lots: int) -> int:
        """
        Buy `num_lots` lots at the current lot size.

        Returns:
            Number of auctioned tokens received
        """
        self.pausable.require_not_paused()
        auction = self.get_auction(auction_id)
        if num_lots <= 0:
            raise ValidationError("Must buy at least one lot")
        if not auction.is_active:
            raise StateError(f"Auction {auction_id} is not active")
        now = self.clock.now()
        if now > auction.end_time:
            raise AuctionExpiredError(
                f"Auction {auction_id} ended at {auction.end_time}",
                deadline=auction.end_time
            )
        if num_lots > auction.remaining_lots:
            raise CapacityError(
                f"Only {auction.remaining_lots} lots remaining in auction {auction_id}"
            )

        lot_size = auction.lot_size_at(now)
        token_amount = lot_size * num_lots
        payment = auction.lot_price * num_lots
        if self.ledger.balance_of(self.payment_token, caller) < payment:
            raise InsufficientBalanceError(
                f"{caller} cannot pay {payment} {self.payment_token}"
            )

        auction.remaining_lots -= num_lots
        auction.remaining_balance -= token_amount
        auction.tokens_sold += token_amount
        auction.funds_raised += payment
        sold_out = auction.remaining_lots == 0
        if sold_out:
            auction.status = AuctionStatus.SOLD_OUT

        self.ledger.transfer(self.payment_token, caller, self.address, payment)
        self.ledger.transfer(auction.token, self.address, caller, token_amount)

        logger.info(
            f"{caller} bought {num_lots} lots ({token_amount} {auction.token}) "
            f"from auction {auction_id} for {payment}"
        )
        if self.monitor:
            self.monitor.record_lots_sold(num_lots, payment)
        if sold_out:
            self._finish(auction, terminated_early=False)
        return token_amount

    @non_reentrant
    def complete_auction(self, auction_id: int):
        """Close an auction whose time limit has passed. Callable by anyone."""
        self.pausable.require_not_paused()
        auction = self.get_auction(auction_id)
        if not auction.is_active:
            raise StateError(f"Auction {auction_id} is not active")
        if self.clock.now() <= auction.end_time:
            raise TimingError(
                f"Auction {auction_id} runs until {auction.end_time}",
                deadline=auction.end_time
            )
        auction.status = AuctionStatus.TIMED_OUT
        self._finish(auction, terminated_early=False)

    @non_reentrant
    def terminate_auction(self, caller, auction_id: int):
        self._only_safety_module(caller)
        auction = self.get_auction(auction_id)
        if not auction.is_active:
            raise StateError(f"Auction {auction_id} is not active")
        auction.status = AuctionStatus.TERMINATED
        self._finish(auction, terminated_early=True)

    def _finish(self, auction: Auction, terminated_early: bool):
        """Hand the proceeds to the safety module and report the unsold remainder."""
        unsold = auction.remaining_balance
        self.ledger.transfer(
            self.payment_token, self.address, self.safety_module.address, auction.funds_raised
        )
        if terminated_early:
            logger.warning(
                f"Auction {auction.auction_id} terminated early: "
                f"sold {auction.tokens_sold}, unsold {unsold}"
            )
        else:
            logger.info(
                f"Auction {auction.auction_id} {auction.status.value}: "
                f"sold {auction.tokens_sold}, raised {auction.funds_raised}, unsold {unsold}"
            )
        if self.monitor:
            self.monitor.record_auction_ended(auction.status.value)
            self.monitor.set_active_auctions(len(self.active_auctions()))
        self.safety_module.auction_ended(
            self.address,
            auction.auction_id,
            auction.tokens_sold,
            auction.funds_raised,
            unsold,
            terminated_early
        )

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def _active_for_update(self, caller, auction_id: int) -> Auction:
        self.access.check_role(GOVERNANCE, caller)
        auction = self.get_auction(auction_id)
        if not auction.is_active:
            raise StateError(f"Auction {auction_id} is not active")
        return auction

    def set_lot_price(self, caller, auction_id: int, lot_price: int):
        auction = self._active_for_update(caller, auction_id)
        if lot_price <= 0:
            raise ValidationError("Lot price must be positive")
        auction.lot_price = lot_price

    def set_lot_increase_increment(self, caller, auction_id: int, increment: int):
        auction = self._active_for_update(caller, auction_id)
        if increment < 0:
            raise ValidationError("Lot increase increment cannot be negative")
        auction.lot_increase_increment = increment

    def set_lot_increase_period(self, caller, auction_id: int, period: int):
        auction = self._active_for_update(caller, auction_id)
        if period <= 0:
            raise ValidationError("Lot increase period must be positive")
        auction.lot_increase_period = period

    def set_time_limit(self, caller, auction_id: int, time_limit: int):
        auction = self._active_for_update(caller, auction_id)
        end_time = auction.start_time + time_limit
        if time_limit <= 0 or end_time <= self.clock.now():
            raise ValidationError(f"New end time {end_time} is not in the future")
        auction.end_time = end_time

    def set_payment_token(self, caller, payment_token):
        self.access.check_role(GOVERNANCE, caller)
        if self.active_auctions():
            raise StateError("Cannot change payment token during an active auction")
        self.payment_token = payment_token
        logger.info(f"Payment token set to {payment_token}")

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'next_auction_id': self.next_auction_id,
            'payment_token': self.payment_token,
            'auctions': [a.to_dict() for a in self.auctions.values()],
        }
