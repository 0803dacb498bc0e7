"""Active roster derivation shared by the web pages, JSON API and exports.

The roster for a month is always re-derived from two cached lists, the
promoters of a group and the monthly records of the selected month:

    promoters --active_promoters--> merge_roster --> search --> days/payment

Every function here is pure; callers own the cached lists.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Iterable, List, Optional, Sequence

from promodesk.core.formatting import parse_optional_int
from promodesk.schemas import MergedMember, MonthlyRecordRead, PromoterRead

TEMP_RECORD_PREFIX = "temp-"

DAYS_FILTER_ALL = "all"
DAYS_FILTER_CUSTOM = "custom"

# Inclusive day ranges for the bucketed filter modes.
DAY_BUCKETS = {
    "0": (0, 0),
    "1-10": (1, 10),
    "11-20": (11, 20),
    "21-30": (21, 30),
}

DAYS_FILTER_OPTIONS: tuple[tuple[str, str], ...] = (
    ("all", "All members"),
    ("paid", "Paid"),
    ("unpaid", "Unpaid"),
    ("0", "0 days"),
    ("1-10", "1-10 days"),
    ("11-20", "11-20 days"),
    ("21-30", "21-30 days"),
    ("custom", "Custom days"),
)


def month_key(year: int, month: int) -> int:
    """Total order over (year, month) pairs."""

    return year * 12 + month


def first_of_month(year: int, month: int) -> date:
    return date(year, month, 1)


def temp_record_id(promoter_id: int) -> str:
    return f"{TEMP_RECORD_PREFIX}{promoter_id}"


def is_temp_record_id(record_id: Any) -> bool:
    """True for optimistic placeholder ids that the store has not confirmed."""

    return isinstance(record_id, str) and record_id.startswith(TEMP_RECORD_PREFIX)


def is_active_in_month(promoter: PromoterRead, year: int, month: int) -> bool:
    """Membership test for one promoter in one month.

    The join month counts, the leave month does not: ``leave_date`` marks the
    first day on which the promoter is no longer on the roster.
    """

    if promoter.join_date is None:
        return True

    selected = month_key(year, month)
    joined = month_key(promoter.join_date.year, promoter.join_date.month)
    if joined > selected:
        return False

    if promoter.leave_date is not None:
        left = month_key(promoter.leave_date.year, promoter.leave_date.month)
        if left <= selected:
            return False

    return True


def active_promoters(promoters: Iterable[PromoterRead], year: int, month: int) -> List[PromoterRead]:
    """Return the promoters on the roster for ``year``/``month``, order kept."""

    return [promoter for promoter in promoters if is_active_in_month(promoter, year, month)]


def merge_roster(
    promoters: Sequence[PromoterRead],
    records: Iterable[MonthlyRecordRead],
) -> List[MergedMember]:
    """Join promoters with their monthly record.

    Promoters without a record get ``days=0``, ``payment_completed=False``
    and ``record_id=None``. Output follows the promoter order.
    """

    by_promoter: dict[int, MonthlyRecordRead] = {}
    for record in records:
        # first record wins, matching a linear scan
        by_promoter.setdefault(record.promoter_id, record)

    merged: List[MergedMember] = []
    for promoter in promoters:
        record = by_promoter.get(promoter.id)
        fields = promoter.model_dump()
        if record is None:
            merged.append(MergedMember(**fields))
        else:
            merged.append(
                MergedMember(
                    **fields,
                    days=record.days,
                    payment_completed=record.payment_completed,
                    record_id=record.id,
                )
            )
    return merged


def matches_query(member: PromoterRead, query: str) -> bool:
    needle = query.lower()
    if not needle:
        return True
    for value in (member.name, member.phone, member.upi_id):
        if value and needle in value.lower():
            return True
    return False


def search_members(members: Iterable[MergedMember], query: Optional[str]) -> List[MergedMember]:
    """Case-insensitive substring search over name, phone and UPI id."""

    return [member for member in members if matches_query(member, query or "")]


def matches_days_payment(member: MergedMember, mode: str, custom_days: Optional[int]) -> bool:
    if mode == "paid":
        return member.payment_completed is True
    if mode == "unpaid":
        return member.payment_completed is False
    if mode in DAY_BUCKETS:
        low, high = DAY_BUCKETS[mode]
        return low <= member.days <= high
    if mode == DAYS_FILTER_CUSTOM and custom_days is not None:
        return member.days == custom_days
    return True


def filter_by_days_payment(
    members: Iterable[MergedMember],
    mode: Optional[str] = DAYS_FILTER_ALL,
    custom_days: Any = None,
) -> List[MergedMember]:
    """Apply the days/payment filter.

    An unparsable custom value, like an unknown mode, lets every member
    through.
    """

    mode = mode or DAYS_FILTER_ALL
    custom = parse_optional_int(custom_days) if mode == DAYS_FILTER_CUSTOM else None
    return [member for member in members if matches_days_payment(member, mode, custom)]


def apply_view_filters(
    members: Iterable[MergedMember],
    query: Optional[str] = "",
    mode: Optional[str] = DAYS_FILTER_ALL,
    custom_days: Any = None,
) -> List[MergedMember]:
    """Search first, then the days/payment filter."""

    return filter_by_days_payment(search_members(members, query), mode, custom_days)


def apply_payment_state(
    records: Sequence[MonthlyRecordRead],
    member: MergedMember,
    paid: bool,
    year: int,
    month: int,
    group_id: Optional[int] = None,
) -> List[MonthlyRecordRead]:
    """Return a new record list with ``member`` marked paid or unpaid.

    The member's record for the period is replaced; when there is none a
    placeholder carrying a ``temp-`` id is appended.
    """

    updated: List[MonthlyRecordRead] = []
    found = False
    for record in records:
        if record.promoter_id == member.id and record.year == year and record.month == month:
            updated.append(record.model_copy(update={"payment_completed": paid}))
            found = True
        else:
            updated.append(record)

    if not found:
        updated.append(
            MonthlyRecordRead(
                id=temp_record_id(member.id),
                promoter_id=member.id,
                group_id=group_id,
                year=year,
                month=month,
                days=member.days or 0,
                payment_completed=paid,
            )
        )
    return updated


def replace_period_record(
    records: Sequence[MonthlyRecordRead],
    saved: MonthlyRecordRead,
) -> List[MonthlyRecordRead]:
    """Swap in the store's row for the same promoter and period."""

    kept = [
        record
        for record in records
        if not (
            record.promoter_id == saved.promoter_id
            and record.year == saved.year
            and record.month == saved.month
        )
    ]
    kept.append(saved)
    return kept
