"""
Role-based access control and the pause switch.

Each component owns one AccessControl table. A capability check precedes
every role-gated mutating method; roles are enum members, never ambient
flags. Only ADMIN may grant or revoke roles, and only ADMIN may pause.
Governance drives these entry points from outside the core.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, Set

from batchsettle.core.exceptions import (
    AuthorizationError,
    PausedError,
    Reason,
    ValidationError,
)
from batchsettle.core.models import EventType
from batchsettle.core.transactions import TransactionManager

log = logging.getLogger(__name__)


class Role(Enum):
    ADMIN               = "admin"
    SETTLEMENT_OPERATOR = "settlement_operator"
    SLASHER             = "slasher"
    ORACLE_CALLER       = "oracle_caller"
    FRAUD_CALLER        = "fraud_caller"


class AccessControl:
    """Role → members table for one component."""

    def __init__(self, component: str, admin: str, tx: TransactionManager) -> None:
        if not admin:
            raise ValidationError(Reason.INVALID_ADDRESS, "admin identity required")
        self.component = component
        self._tx = tx
        self._members: Dict[Role, Set[str]] = {role: set() for role in Role}
        self._members[Role.ADMIN].add(admin)

    def has_role(self, role: Role, identity: str) -> bool:
        return identity in self._members[role]

    def members(self, role: Role) -> Set[str]:
        return set(self._members[role])

    def require(self, role: Role, caller: str) -> None:
        if not self.has_role(role, caller):
            log.debug("%s: %s lacks role %s", self.component, caller, role.value)
            raise AuthorizationError(
                Reason.MISSING_ROLE,
                f"caller lacks {role.value} on {self.component}",
                {"caller": caller, "role": role.value},
            )

    def require_any(self, roles: Iterable[Role], caller: str, reason: str = Reason.MISSING_ROLE) -> None:
        roles = list(roles)
        if not any(self.has_role(role, caller) for role in roles):
            raise AuthorizationError(
                reason,
                details={"caller": caller, "roles": [r.value for r in roles]},
            )

    def grant_role(self, caller: str, role: Role, identity: str) -> None:
        with self._tx.atomic():
            self.require(Role.ADMIN, caller)
            if not identity:
                raise ValidationError(Reason.INVALID_ADDRESS, "cannot grant a role to the null identity")
            if identity in self._members[role]:
                return
            self._tx.remember(self._members, role)
            self._members[role].add(identity)
            self._tx.record(EventType.ROLE_GRANTED, self.component, {
                "role":     role.value,
                "identity": identity,
                "granted_by": caller,
            })
            log.info("%s: granted %s to %s", self.component, role.value, identity)

    def revoke_role(self, caller: str, role: Role, identity: str) -> None:
        with self._tx.atomic():
            self.require(Role.ADMIN, caller)
            if identity not in self._members[role]:
                return
            self._tx.remember(self._members, role)
            self._members[role].discard(identity)
            self._tx.record(EventType.ROLE_REVOKED, self.component, {
                "role":     role.value,
                "identity": identity,
                "revoked_by": caller,
            })
            log.info("%s: revoked %s from %s", self.component, role.value, identity)


class Component:
    """
    Base for the three settlement components.

    Carries the component identity, its AccessControl table, the shared
    TransactionManager and a reversible pause switch.
    """

    def __init__(self, identity: str, admin: str, tx: TransactionManager) -> None:
        self.identity = identity
        self.tx       = tx
        self.access   = AccessControl(identity, admin, tx)
        self._paused  = False

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self, caller: str) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            if self._paused:
                return
            self.tx.remember_attr(self, "_paused")
            self._paused = True
            self._emit(EventType.PAUSED, {"by": caller})
            log.warning("%s paused by %s", self.identity, caller)

    def unpause(self, caller: str) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            if not self._paused:
                return
            self.tx.remember_attr(self, "_paused")
            self._paused = False
            self._emit(EventType.UNPAUSED, {"by": caller})
            log.warning("%s unpaused by %s", self.identity, caller)

    def _ensure_not_paused(self) -> None:
        if self._paused:
            raise PausedError(self.identity)

    def _emit(self, event_type: str, payload: dict) -> None:
        self.tx.record(event_type, self.identity, payload)
