from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from .exceptions import AccessDeniedError, ProtectedUserError
from .models import User, UserRole

logger = logging.getLogger("manual_assistant.access")

MANAGER_ROLES = {UserRole.ADMIN, UserRole.SUPER_USER}


class Allowlist(Protocol):
    """Storage-agnostic allowlist; UserStore and AllowlistClient both satisfy it."""

    def login(self, user_id: str, name: Optional[str] = None) -> User: ...

    def list_users(self) -> List[User]: ...

    def add_user(self, user_id: str, role: UserRole, name: Optional[str] = None) -> User: ...

    def remove_user(self, user_id: str) -> None: ...


class AccessController:
    """Current user of a session and the admin-only actions they may take."""

    def __init__(self, allowlist: Allowlist, admin_user_id: str = "admin") -> None:
        self._allowlist = allowlist
        self._admin_user_id = admin_user_id
        self._current_user: Optional[User] = None

    @property
    def current_user(self) -> Optional[User]:
        return self._current_user

    @property
    def can_manage_users(self) -> bool:
        return self._current_user is not None and self._current_user.role in MANAGER_ROLES

    def login(self, user_id: str, name: Optional[str] = None) -> User:
        """Purpose: Resolve the session user through the allowlist.
        Inputs/Outputs: Input is user id and optional display name; returns the User.
        Side Effects / State: Sets current_user on success.
        Failure Modes: AccessDeniedError when the id is blank or not allowlisted.
        If Removed: Nobody can open a session; every login is refused.
        """
        # Trim the id so stray whitespace never causes a false denial.
        if not user_id or not user_id.strip():
            raise AccessDeniedError("User ID is required")
        user = self._allowlist.login(user_id.strip(), name)
        self._current_user = user
        logger.info("login id=%s role=%s", user.id, user.role.value)
        return user

    def logout(self) -> None:
        self._current_user = None

    def list_users(self) -> List[User]:
        self._require_manager()
        return self._allowlist.list_users()

    def add_user(self, user_id: str, role: UserRole, name: Optional[str] = None) -> User:
        actor = self._require_manager()
        if not user_id.strip():
            raise ValueError("User ID cannot be empty.")
        if role == UserRole.ADMIN and actor.role != UserRole.ADMIN:
            raise ProtectedUserError("Only an admin can grant the admin role")
        return self._allowlist.add_user(user_id.strip(), role, name)

    def check_can_remove(self, target: User) -> None:
        """Raise ProtectedUserError when the current user may not remove target."""
        actor = self._require_manager()
        if target.id == actor.id:
            raise ProtectedUserError("You cannot remove yourself")
        if target.id.lower() == self._admin_user_id.lower():
            raise ProtectedUserError("Cannot remove the default admin user")
        if target.role == UserRole.ADMIN and actor.role != UserRole.ADMIN:
            raise ProtectedUserError("Not enough permissions to remove an admin")

    def remove_user(self, user_id: str) -> None:
        target = next((user for user in self._allowlist.list_users() if user.id == user_id), None)
        if target is None:
            # Unknown ids still go through the id-based checks.
            target = User(id=user_id, role=UserRole.USER)
        self.check_can_remove(target)
        self._allowlist.remove_user(user_id)
        logger.info("removed id=%s by=%s", user_id, self._current_user.id if self._current_user else "")

    def _require_manager(self) -> User:
        if self._current_user is None:
            raise AccessDeniedError("Not logged in")
        if self._current_user.role not in MANAGER_ROLES:
            raise ProtectedUserError("Only admins and super users can manage users")
        return self._current_user
