"""Pydantic schemas for rows, forms and API responses."""
from __future__ import annotations

from datetime import date
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from promodesk.core.formatting import parse_days

RecordId = Union[int, str]


class GroupBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None

    @field_validator("name", mode="before")
    def strip_name(cls, value: Any) -> str:
        if value is None:
            raise ValueError("Group name is required.")
        value_str = str(value).strip()
        if not value_str:
            raise ValueError("Group name cannot be empty.")
        return value_str

    @field_validator("description", mode="before")
    def blank_description_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value_str = str(value).strip()
        return value_str or None


class GroupCreate(GroupBase):
    pass


class GroupRead(GroupBase):
    id: int

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PromoterRead(BaseModel):
    id: int
    group_id: int
    name: Optional[str] = None
    phone: str
    upi_id: Optional[str] = None
    join_date: Optional[date] = None
    leave_date: Optional[date] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class MonthlyRecordRead(BaseModel):
    """One promoter's attendance and payment state for one month.

    ``id`` is a string only for optimistic placeholders that have not been
    confirmed by the store yet.
    """

    id: RecordId
    promoter_id: int
    group_id: Optional[int] = None
    year: int
    month: int
    days: int = 0
    payment_completed: bool = False

    model_config = ConfigDict(from_attributes=True, frozen=True)


class MergedMember(PromoterRead):
    """Promoter joined with its record for the selected month."""

    days: int = 0
    payment_completed: bool = False
    record_id: Optional[RecordId] = None


class MemberForm(BaseModel):
    """Fields submitted by the add and edit member forms."""

    name: Optional[str] = None
    phone: str
    upi_id: str
    days: int = 0

    @field_validator("name", mode="before")
    def blank_name_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value_str = str(value).strip()
        return value_str or None

    @field_validator("phone", "upi_id", mode="before")
    def require_contact_fields(cls, value: Any, info: ValidationInfo) -> str:
        label = "Phone number" if info.field_name == "phone" else "UPI ID"
        value_str = "" if value is None else str(value).strip()
        if not value_str:
            raise ValueError(f"{label} is required.")
        return value_str

    @field_validator("days", mode="before")
    def coerce_days(cls, value: Any) -> int:
        return parse_days(value)


class PaymentToggleRequest(BaseModel):
    paid: bool
