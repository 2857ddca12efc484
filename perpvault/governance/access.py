"""
Venue access control

A single capability check at the operation boundary. Capabilities nest:
the owner can do everything a governor can, a governor everything a
manager can, and a manager can always act where the public is only
allowed when a flag is set.

    Role.OWNER               ownership transfer, role grants, reserve withdrawal
    Role.GOVERNOR            product / vault / fee / reward configuration
    Role.MANAGER             privileged liquidation
    Role.PUBLIC_WHEN_FLAGGED anyone, provided the caller-supplied flag is set
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Set

from ..exceptions import AuthorizationError

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Capability levels.  Lower value means more authority."""
    OWNER = 1
    GOVERNOR = 2
    MANAGER = 3
    PUBLIC_WHEN_FLAGGED = 4


@dataclass
class AccessControl:
    """Role membership for one venue."""
    owner: str
    governors: Set[str] = field(default_factory=set)
    managers: Set[str] = field(default_factory=set)

    def role_of(self, account: str) -> Role:
        """Most powerful role *account* holds."""
        if account == self.owner:
            return Role.OWNER
        if account in self.governors:
            return Role.GOVERNOR
        if account in self.managers:
            return Role.MANAGER
        return Role.PUBLIC_WHEN_FLAGGED

    def allows(self, caller: str, capability: Role, flag: bool = False) -> bool:
        if capability == Role.PUBLIC_WHEN_FLAGGED and flag:
            return True
        held = self.role_of(caller)
        if held == Role.PUBLIC_WHEN_FLAGGED:
            return False
        return held <= capability

    def require(self, caller: str, capability: Role, flag: bool = False, action: str = "") -> None:
        """
        Raise AuthorizationError unless *caller* holds *capability*.

        Args:
            caller: account invoking the operation
            capability: minimum role needed
            flag: opens Role.PUBLIC_WHEN_FLAGGED operations to everyone
            action: operation name for the error message
        """
        if not self.allows(caller, capability, flag):
            raise AuthorizationError(
                f"{caller} is not allowed to {action or 'perform this operation'} "
                f"(requires {capability.name})"
            )

    # -- Membership --------------------------------------------------------

    def grant(self, role: Role, account: str) -> None:
        if not account:
            raise AuthorizationError("Account required")
        if role == Role.GOVERNOR:
            self.governors.add(account)
        elif role == Role.MANAGER:
            self.managers.add(account)
        else:
            raise AuthorizationError(f"Role {role.name} cannot be granted")
        logger.info("Granted %s to %s", role.name, account)

    def revoke(self, role: Role, account: str) -> None:
        if role == Role.GOVERNOR:
            self.governors.discard(account)
        elif role == Role.MANAGER:
            self.managers.discard(account)
        else:
            raise AuthorizationError(f"Role {role.name} cannot be revoked")
        logger.info("Revoked %s from %s", role.name, account)

    def transfer_ownership(self, new_owner: str) -> None:
        if not new_owner:
            raise AuthorizationError("New owner required")
        logger.info("Ownership transferred %s -> %s", self.owner, new_owner)
        self.owner = new_owner

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "governors": sorted(self.governors),
            "managers": sorted(self.managers),
        }
