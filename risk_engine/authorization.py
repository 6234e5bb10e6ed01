"""
Authorization
=============

Role-based access control for mutating entry points.

Every mutating operation declares the roles allowed to call it with the
``requires_role`` decorator. The check runs before the operation body, so an
unauthorized call never touches portfolio state.
"""

from __future__ import annotations

import functools
import inspect
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TypeVar

from risk_engine.exceptions import UnauthorizedError


logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class Role(str, Enum):
    """Roles recognised by the engine."""
    ADMIN = "admin"
    RISK_MANAGER = "risk_manager"
    PORTFOLIO_MANAGER = "portfolio_manager"
    EMERGENCY = "emergency"


class AccessController:
    """
    Holds role assignments per caller identity.

    The owner passed at construction receives ADMIN, and only ADMIN callers
    may grant or revoke roles.
    """

    def __init__(self, owner: str):
        self._roles: dict[str, set[Role]] = defaultdict(set)
        self._roles[owner].add(Role.ADMIN)
        self._owner = owner
        self._lock = threading.Lock()
        self._audit: list[dict[str, Any]] = []

    @property
    def owner(self) -> str:
        return self._owner

    def has_role(self, caller: str, role: Role) -> bool:
        """Check whether a caller holds a role."""
        with self._lock:
            return role in self._roles.get(caller, set())

    def has_any_role(self, caller: str, roles: tuple[Role, ...]) -> bool:
        with self._lock:
            held = self._roles.get(caller, set())
            return any(role in held for role in roles)

    def roles_of(self, caller: str) -> frozenset[Role]:
        with self._lock:
            return frozenset(self._roles.get(caller, set()))

    def grant_role(self, granted_by: str, role: Role, account: str) -> None:
        """Grant a role (ADMIN only)."""
        self.require(granted_by, (Role.ADMIN,), "grant_role")
        with self._lock:
            self._roles[account].add(role)
            self._audit.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": "grant",
                "role": role.value,
                "account": account,
                "by": granted_by,
            })
        logger.info(f"Role {role.value} granted to {account} by {granted_by}")

    def revoke_role(self, revoked_by: str, role: Role, account: str) -> None:
        """Revoke a role (ADMIN only)."""
        self.require(revoked_by, (Role.ADMIN,), "revoke_role")
        with self._lock:
            self._roles[account].discard(role)
            self._audit.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": "revoke",
                "role": role.value,
                "account": account,
                "by": revoked_by,
            })
        logger.info(f"Role {role.value} revoked from {account} by {revoked_by}")

    def require(self, caller: str, roles: tuple[Role, ...], operation: str) -> None:
        """Raise UnauthorizedError unless the caller holds one of the roles."""
        if not self.has_any_role(caller, roles):
            logger.error(f"Unauthorized {operation} attempt by: {caller}")
            raise UnauthorizedError(
                f"{caller} is not authorized for {operation}",
                caller=caller,
                operation=operation,
                required_roles=[r.value for r in roles],
            )

    def get_audit_trail(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._audit)


def requires_role(*roles: Role) -> Callable[[F], F]:
    """
    Decorator gating a method on the caller's roles.

    The decorated method must take ``caller`` as its first argument after
    ``self`` and the instance must expose an ``access`` AccessController.

    Example:
        @requires_role(Role.RISK_MANAGER)
        def set_risk_limits(self, caller, portfolio_id, limits):
            ...
    """
    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            bound = signature.bind(self, *args, **kwargs)
            caller = bound.arguments["caller"]
            self.access.require(caller, roles, func.__name__)
            return func(self, *args, **kwargs)

        wrapper.required_roles = roles  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]
    return decorator
