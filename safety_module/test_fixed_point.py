"""
Fixed-point helpers, ledger, clock and access primitives.
"""
import pytest

from safety_module.access import (
    AccessControl,
    EMERGENCY_ADMIN,
    GOVERNANCE,
    Pausable,
    non_reentrant,
)
from safety_module.clock import BlockClock
from safety_module.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    PausedError,
    ReentrancyError,
    ValidationError,
)
from safety_module.exchange_rate import ExchangeRate
from safety_module.fixed_point import WAD, mul_div, wad_div, wad_mul, wad_pow
from safety_module.ledger import Ledger


class TestFixedPoint:
    def test_mul_div_rounding(self):
        assert mul_div(10, 10, 3) == 33
        assert mul_div(10, 10, 3, round_up=True) == 34
        assert mul_div(9, 10, 3, round_up=True) == 30

    def test_mul_div_by_zero(self):
        with pytest.raises(ValidationError):
            mul_div(1, 1, 0)

    def test_wad_helpers(self):
        assert wad_mul(3 * WAD, WAD // 2) == 3 * WAD // 2
        assert wad_div(3 * WAD, 2 * WAD) == 3 * WAD // 2
        assert wad_pow(2 * WAD, 0) == WAD
        assert wad_pow(2 * WAD, 10) == 1024 * WAD

    def test_exchange_rate_rounds_down(self):
        rate = ExchangeRate({'rate': 3 * WAD})

        assert rate.preview_stake(10) == 3
        assert rate.preview_redeem(3) == 9
        assert rate.update(0, 0) == WAD


class TestLedger:
    def test_transfer(self):
        ledger = Ledger()
        ledger.mint('UT', 'alice', 100)
        ledger.transfer('UT', 'alice', 'bob', 40)

        assert ledger.balance_of('UT', 'alice') == 60
        assert ledger.balance_of('UT', 'bob') == 40
        assert ledger.total_supply('UT') == 100

    def test_overdraft_rejected(self):
        ledger = Ledger()
        with pytest.raises(InsufficientBalanceError):
            ledger.transfer('UT', 'alice', 'bob', 1)
        with pytest.raises(ValidationError):
            ledger.transfer('UT', 'alice', 'bob', -1)

    def test_restore(self):
        ledger = Ledger()
        ledger.mint('UT', 'alice', 100)

        assert Ledger(ledger.to_dict()).balance_of('UT', 'alice') == 100


class TestClock:
    def test_clock_only_moves_forward(self):
        clock = BlockClock(100)
        assert clock.advance(10) == 110
        with pytest.raises(ValueError):
            clock.set_time(50)


class TestAccess:
    def test_roles(self):
        access = AccessControl(admin='gov')
        assert access.has_role(GOVERNANCE, 'gov')
        assert access.has_role(EMERGENCY_ADMIN, 'gov')

        access.grant_role(EMERGENCY_ADMIN, 'guardian')
        access.check_role(EMERGENCY_ADMIN, 'guardian')
        access.revoke_role(EMERGENCY_ADMIN, 'guardian')
        with pytest.raises(AuthorizationError):
            access.check_role(EMERGENCY_ADMIN, 'guardian')

    def test_pause(self):
        access = AccessControl(admin='gov')
        access.grant_role(EMERGENCY_ADMIN, 'guardian')
        pausable = Pausable(access)

        pausable.pause('guardian')
        with pytest.raises(PausedError):
            pausable.require_not_paused()
        with pytest.raises(AuthorizationError):
            pausable.unpause('alice')
        pausable.unpause('gov')
        pausable.require_not_paused()

    def test_non_reentrant(self):
        class Vault:
            def __init__(self):
                self.calls = 0

            @non_reentrant
            def withdraw(self, nested: bool):
                self.calls += 1
                if nested:
                    self.withdraw(False)

        vault = Vault()
        with pytest.raises(ReentrancyError):
            vault.withdraw(True)

        # guard is released after the failure
        vault.withdraw(False)
        assert vault.calls == 2
