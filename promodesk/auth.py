"""Authentication and admin membership."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import bcrypt
from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promodesk.database import Base


class User(Base):
    """User account for application access."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.now, nullable=False)
    is_locked: Mapped[bool] = mapped_column(default=False, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_login_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_failed_login: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    admin_entry: Mapped[Optional["Admin"]] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using bcrypt."""
        salt = bcrypt.gensalt()
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify_password(self, password: str) -> bool:
        """Verify a password against the stored hash."""
        return bcrypt.checkpw(password.encode("utf-8"), self.password_hash.encode("utf-8"))

    @classmethod
    def create_user(cls, username: str, password: str) -> User:
        """Create a new user with hashed password."""
        return cls(username=username, password_hash=cls.hash_password(password))

    def is_admin(self) -> bool:
        """A user is an admin when listed in the admins table."""
        return self.admin_entry is not None


class Admin(Base):
    """Row granting dashboard access to a user."""

    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=datetime.now, nullable=False)

    user: Mapped[User] = relationship(back_populates="admin_entry")
