"""Relational allowlist of users who may use the assistant."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from .database import Base
from .exceptions import AccessDeniedError, DuplicateUserError, ProtectedUserError
from .models import User, UserRole

logger = logging.getLogger("manual_assistant.users")


class UserRecord(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=UserRole.USER.value)

    def to_user(self) -> User:
        return User(id=self.id, name=self.name or None, role=UserRole(self.role))

    def __repr__(self) -> str:
        return f"<UserRecord(id={self.id}, role={self.role})>"


class UserStore:
    """Allowlist backed by the users table."""

    def __init__(self, session_factory: sessionmaker, admin_user_id: str = "admin") -> None:
        self._session_factory = session_factory
        self._admin_user_id = admin_user_id

    def _session(self) -> Session:
        return self._session_factory()

    def ensure_admin(self) -> User:
        """Purpose: Seed the distinguished admin user if it is missing.
        Inputs/Outputs: No inputs; returns the admin User.
        Side Effects / State: Inserts one row on first start.
        Failure Modes: Database errors propagate.
        If Removed: A fresh database has no user who can log in.
        Testing Notes: Calling twice must not raise.
        """
        # Insert only when the row is missing.
        with self._session() as session:
            record = session.get(UserRecord, self._admin_user_id)
            if record is None:
                record = UserRecord(id=self._admin_user_id, name="Administrator", role=UserRole.ADMIN.value)
                session.add(record)
                session.commit()
                logger.info("seeded admin user id=%s", self._admin_user_id)
            return record.to_user()

    def list_users(self) -> List[User]:
        with self._session() as session:
            records = session.scalars(select(UserRecord).order_by(UserRecord.name, UserRecord.id)).all()
            return [record.to_user() for record in records]

    def login(self, user_id: str, name: Optional[str] = None) -> User:
        """Purpose: Look up an allowlisted user and refresh the display name.
        Inputs/Outputs: Input is the user id and optional name; returns the User.
        Side Effects / State: Updates the stored name when a different one is given.
        Failure Modes: AccessDeniedError when the id is not on the allowlist.
        If Removed: Every login against the local table is refused.
        """
        # Refresh the stored name when a new one is given.
        with self._session() as session:
            record = session.get(UserRecord, user_id)
            if record is None:
                logger.info("login denied id=%s", user_id)
                raise AccessDeniedError("Access denied. User not found")
            if name and record.name != name:
                record.name = name
                session.commit()
            return record.to_user()

    def add_user(self, user_id: str, role: UserRole, name: Optional[str] = None) -> User:
        with self._session() as session:
            record = UserRecord(id=user_id, name=name or "", role=UserRole(role).value)
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateUserError(f"A user with id {user_id} may already exist") from exc
            logger.info("added user id=%s role=%s", user_id, record.role)
            return record.to_user()

    def remove_user(self, user_id: str) -> None:
        if user_id.lower() == self._admin_user_id.lower():
            raise ProtectedUserError("Cannot remove the default admin user")
        with self._session() as session:
            record = session.get(UserRecord, user_id)
            if record is not None:
                session.delete(record)
                session.commit()
                logger.info("removed user id=%s", user_id)
