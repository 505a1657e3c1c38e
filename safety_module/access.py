"""
Role checks, circuit breaker and re-entrancy guard shared by every engine.
"""
import functools
import logging
from collections import defaultdict

from safety_module.errors import AuthorizationError, PausedError, ReentrancyError

logger = logging.getLogger(__name__)

GOVERNANCE = 'GOVERNANCE'
EMERGENCY_ADMIN = 'EMERGENCY_ADMIN'


class AccessControl:
    """Role registry: `caller holds role R`."""

    def __init__(self, admin=None):
        # {role: set(accounts)}
        self.roles = defaultdict(set)
        if admin is not None:
            self.roles[GOVERNANCE].add(admin)
            self.roles[EMERGENCY_ADMIN].add(admin)

    def has_role(self, role: str, account) -> bool:
        return account in self.roles[role]

    def check_role(self, role: str, caller):
        if not self.has_role(role, caller):
            raise AuthorizationError(f"{caller} is missing role {role}")

    def grant_role(self, role: str, account):
        self.roles[role].add(account)
        logger.info(f"Granted {role} to {account}")

    def revoke_role(self, role: str, account):
        self.roles[role].discard(account)
        logger.info(f"Revoked {role} from {account}")


class Pausable:
    """Circuit breaker consulted at the top of every state-changing call."""

    def __init__(self, access: AccessControl):
        self.access = access
        self.paused = False

    def is_paused(self) -> bool:
        return self.paused

    def require_not_paused(self):
        if self.paused:
            raise PausedError("Contract is paused")

    def _check_admin(self, caller):
        if not (self.access.has_role(EMERGENCY_ADMIN, caller)
                or self.access.has_role(GOVERNANCE, caller)):
            raise AuthorizationError(f"{caller} cannot toggle pause")

    def pause(self, caller):
        self._check_admin(caller)
        self.paused = True
        logger.warning(f"Paused by {caller}")

    def unpause(self, caller):
        self._check_admin(caller)
        self.paused = False
        logger.info(f"Unpaused by {caller}")


def non_reentrant(method):
    """Reject nested calls into any guarded method of the same instance."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if getattr(self, '_entered', False):
            raise ReentrancyError(f"Re-entrant call to {method.__name__}")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False
    return wrapper
