"""SQLAlchemy models for the promoter dashboard."""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promodesk.database import Base

MONTHLY_RECORD_UNIQUE_COLUMNS = ("promoter_id", "year", "month")


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    promoters: Mapped[list["Promoter"]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )


class Promoter(Base):
    __tablename__ = "promoters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    upi_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # Counts toward every month from join_date's month onwards.
    join_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    # First date the promoter no longer counts; set by soft delete.
    leave_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    group: Mapped[Group] = relationship(back_populates="promoters")
    monthly_records: Mapped[list["MonthlyRecord"]] = relationship(
        back_populates="promoter", cascade="all, delete-orphan"
    )


class MonthlyRecord(Base):
    __tablename__ = "monthly_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promoter_id: Mapped[int] = mapped_column(
        ForeignKey("promoters.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_id: Mapped[int | None] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=True, index=True
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    promoter: Mapped[Promoter] = relationship(back_populates="monthly_records")

    __table_args__ = (
        UniqueConstraint(*MONTHLY_RECORD_UNIQUE_COLUMNS, name="uq_monthly_record_promoter_period"),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_monthly_records_month_range"),
        Index("idx_monthly_records_period", "year", "month"),
    )


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    success: Mapped[bool] = mapped_column(default=False, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False, index=True)

    __table_args__ = (
        Index("idx_failed_attempts", "username", "success", "attempted_at"),
    )
