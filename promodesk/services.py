"""Application service layer: the per-admin roster session."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from promodesk.core.roster import (
    DAYS_FILTER_ALL,
    active_promoters,
    apply_payment_state,
    apply_view_filters,
    first_of_month,
    is_temp_record_id,
    merge_roster,
    replace_period_record,
)
from promodesk.models import MONTHLY_RECORD_UNIQUE_COLUMNS
from promodesk.schemas import GroupRead, MemberForm, MergedMember, MonthlyRecordRead, PromoterRead
from promodesk.store import RecordStore, StoreError

logger = logging.getLogger(__name__)


class RosterValidationError(ValueError):
    """Input rejected before any store call."""


@dataclass(frozen=True)
class Notification:
    """Transient message for the admin, naming the action it is about."""

    level: str
    action: str
    message: str


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    message = str(errors[0].get("msg", ""))
    return message.removeprefix("Value error, ")


def _require_selection(year: Optional[int], month: Optional[int]) -> tuple[int, int]:
    if not year or not month:
        raise RosterValidationError("Please select a year and month first.")
    if not 1 <= int(month) <= 12:
        raise RosterValidationError("Month must be between 1 and 12.")
    return int(year), int(month)


class RosterSession:
    """Cached roster state for one admin looking at one group.

    ``promoters`` holds the promoters active in the selected month and
    ``monthly_records`` the records of that month. Both are replaced on every
    load and are only meaningful for the current (group, year, month).
    """

    def __init__(self, store: RecordStore, group_id: Optional[int] = None) -> None:
        self.store = store
        self.group_id: Optional[int] = group_id
        self.year: Optional[int] = None
        self.month: Optional[int] = None
        self.promoters: List[PromoterRead] = []
        self.monthly_records: List[MonthlyRecordRead] = []
        self.loaded = False
        self.notifications: List[Notification] = []
        self._payments_in_flight: set[int] = set()
        self._generation = 0

    # -- notifications -------------------------------------------------

    def notify(self, level: str, action: str, message: str) -> None:
        self.notifications.append(Notification(level=level, action=action, message=message))

    def _notify_failure(self, action: str, exc: Exception, fallback: str) -> None:
        message = str(exc) or fallback
        self.notify("error", action, message)

    def drain_notifications(self) -> List[Notification]:
        pending, self.notifications = self.notifications, []
        return pending

    # -- reads ---------------------------------------------------------

    @property
    def has_selection(self) -> bool:
        return self.year is not None and self.month is not None

    def is_payment_pending(self, promoter_id: int) -> bool:
        return promoter_id in self._payments_in_flight

    def view(
        self,
        query: Optional[str] = "",
        mode: Optional[str] = DAYS_FILTER_ALL,
        custom_days: Any = None,
    ) -> List[MergedMember]:
        """The merged, filtered roster for the current state."""

        if not self.loaded or not self.has_selection:
            return []
        merged = merge_roster(self.promoters, self.monthly_records)
        return apply_view_filters(merged, query, mode, custom_days)

    def find_member(self, promoter_id: int) -> Optional[MergedMember]:
        for member in self.view():
            if member.id == promoter_id:
                return member
        return None

    def _member_for_selection(self, member: MergedMember) -> MergedMember:
        """``member`` as merged for the selected month.

        A row merged for another month carries that month's record id and
        days, which must not be written to the selected period.
        """
        current = self.find_member(member.id)
        if current is not None:
            return current
        return member.model_copy(update={"record_id": None})

    async def fetch_group(self, group_id: int) -> Optional[GroupRead]:
        try:
            rows = await run_in_threadpool(self.store.select, "groups", {"id": group_id})
        except StoreError as exc:
            self._notify_failure("load group", exc, "Failed to load group.")
            return None
        if not rows:
            return None
        return GroupRead.model_validate(rows[0])

    async def load_roster(
        self,
        group_id: int,
        year: Optional[int],
        month: Optional[int],
        query: Optional[str] = "",
        mode: Optional[str] = DAYS_FILTER_ALL,
        custom_days: Any = None,
    ) -> List[MergedMember]:
        """Fetch the group's roster for a month and return the filtered view.

        Only the most recently issued load may update the cache; an older
        load that finishes late is dropped.
        """

        try:
            year, month = _require_selection(year, month)
        except RosterValidationError as exc:
            self.notify("error", "load roster", str(exc))
            return []

        self._generation += 1
        generation = self._generation
        self.group_id, self.year, self.month = group_id, year, month
        self.loaded = False

        try:
            rows = await run_in_threadpool(self.store.select, "promoters", {"group_id": group_id})
            active = active_promoters((PromoterRead.model_validate(row) for row in rows), year, month)

            records: List[MonthlyRecordRead] = []
            promoter_ids = [promoter.id for promoter in active]
            if promoter_ids:
                record_rows = await run_in_threadpool(
                    self.store.select,
                    "monthly_records",
                    {"year": year, "month": month},
                    {"promoter_id": promoter_ids},
                )
                records = [MonthlyRecordRead.model_validate(row) for row in record_rows]
        except StoreError as exc:
            if generation == self._generation:
                self._notify_failure("load roster", exc, "Failed to load records.")
            return self.view(query, mode, custom_days)

        if generation != self._generation:
            logger.info(
                "[roster] discarding stale load for group %s %04d-%02d", group_id, year, month
            )
            return self.view(query, mode, custom_days)

        self.promoters = active
        self.monthly_records = records
        self.loaded = True
        return self.view(query, mode, custom_days)

    async def reload(self) -> List[MergedMember]:
        if self.group_id is None:
            return []
        return await self.load_roster(self.group_id, self.year, self.month)

    # -- writes --------------------------------------------------------

    async def toggle_member_paid(self, member: MergedMember, paid: bool) -> bool:
        """Flip ``payment_completed`` optimistically, then confirm with the store.

        The record list is snapshotted before the optimistic change and
        restored exactly if the upsert fails. A toggle already running for
        the same member makes this call a no-op.
        """

        if member.id in self._payments_in_flight:
            logger.debug("[roster] payment toggle for promoter %s already in flight", member.id)
            return False
        try:
            year, month = _require_selection(self.year, self.month)
        except RosterValidationError as exc:
            self.notify("error", "update payment", str(exc))
            return False

        member = self._member_for_selection(member)
        self._payments_in_flight.add(member.id)
        generation = self._generation
        snapshot = list(self.monthly_records)
        try:
            self.monthly_records = apply_payment_state(
                snapshot, member, paid, year, month, self.group_id
            )

            row = {
                "promoter_id": member.id,
                "group_id": self.group_id,
                "year": year,
                "month": month,
                "payment_completed": paid,
                "days": member.days or 0,
            }
            if member.record_id is not None and not is_temp_record_id(member.record_id):
                row["id"] = member.record_id

            try:
                saved = await run_in_threadpool(
                    self.store.upsert, "monthly_records", row, MONTHLY_RECORD_UNIQUE_COLUMNS
                )
            except StoreError as exc:
                if generation == self._generation:
                    self.monthly_records = snapshot
                    logger.warning(
                        "[roster] rolled back payment toggle for promoter %s", member.id
                    )
                self._notify_failure("update payment", exc, "Failed to update payment.")
                return False

            if generation == self._generation:
                record = MonthlyRecordRead.model_validate(saved)
                self.monthly_records = replace_period_record(self.monthly_records, record)
            self.notify(
                "success",
                "update payment",
                "Payment marked as completed" if paid else "Payment unmarked",
            )
            return True
        finally:
            self._payments_in_flight.discard(member.id)

    async def _submit(
        self,
        action: str,
        fallback: str,
        write: Callable[[], Awaitable[None]],
    ) -> bool:
        try:
            await write()
        except RosterValidationError as exc:
            self.notify("error", action, str(exc))
            return False
        except StoreError as exc:
            self._notify_failure(action, exc, fallback)
            return False
        return True

    def _member_form(self, fields: MemberForm | Mapping[str, Any]) -> MemberForm:
        if isinstance(fields, MemberForm):
            return fields
        try:
            return MemberForm.model_validate(dict(fields))
        except ValidationError as exc:
            raise RosterValidationError(_validation_message(exc)) from exc

    async def add_member(
        self,
        fields: MemberForm | Mapping[str, Any],
        year: Optional[int],
        month: Optional[int],
    ) -> bool:
        """Create a promoter joining this month plus its first monthly record.

        The two inserts are independent writes. If the record insert fails the
        promoter stays and shows up with zero days on the next load.
        """

        async def write() -> None:
            form = self._member_form(fields)
            selected_year, selected_month = _require_selection(year, month)
            if self.group_id is None:
                raise RosterValidationError("No group selected.")

            promoter = await run_in_threadpool(
                self.store.insert,
                "promoters",
                {
                    "group_id": self.group_id,
                    "name": form.name,
                    "phone": form.phone,
                    "upi_id": form.upi_id,
                    "join_date": first_of_month(selected_year, selected_month),
                },
            )
            try:
                await run_in_threadpool(
                    self.store.insert,
                    "monthly_records",
                    {
                        "promoter_id": promoter["id"],
                        "group_id": self.group_id,
                        "year": selected_year,
                        "month": selected_month,
                        "days": form.days,
                        "payment_completed": False,
                    },
                )
            except StoreError:
                logger.warning(
                    "[roster] promoter %s created without a record for %04d-%02d",
                    promoter["id"],
                    selected_year,
                    selected_month,
                )
                raise

            self.notify("success", "add member", "Member added successfully!")
            await self.load_roster(self.group_id, selected_year, selected_month)

        return await self._submit("add member", "Failed to add member.", write)

    async def edit_member(self, member: MergedMember, fields: MemberForm | Mapping[str, Any]) -> bool:
        """Update contact details and this month's days for a member."""

        async def write() -> None:
            form = self._member_form(fields)
            year, month = _require_selection(self.year, self.month)
            current = self._member_for_selection(member)

            await run_in_threadpool(
                self.store.update,
                "promoters",
                {"name": form.name, "phone": form.phone, "upi_id": form.upi_id},
                {"id": member.id},
            )
            if current.record_id is not None and not is_temp_record_id(current.record_id):
                await run_in_threadpool(
                    self.store.update,
                    "monthly_records",
                    {"days": form.days},
                    {"id": current.record_id, "year": year, "month": month},
                )
            else:
                await run_in_threadpool(
                    self.store.upsert,
                    "monthly_records",
                    {
                        "promoter_id": member.id,
                        "group_id": self.group_id,
                        "year": year,
                        "month": month,
                        "days": form.days,
                    },
                    MONTHLY_RECORD_UNIQUE_COLUMNS,
                )

            self.notify("success", "edit member", "Member updated successfully")
            await self.reload()

        return await self._submit("edit member", "Failed to update member.", write)

    async def remove_member(self, member_id: int, year: Optional[int], month: Optional[int]) -> bool:
        """Soft delete: the promoter leaves as of the first day of the month.

        Monthly records are kept, so earlier months still list the member.
        """

        async def write() -> None:
            selected_year, selected_month = _require_selection(year, month)
            await run_in_threadpool(
                self.store.update,
                "promoters",
                {"leave_date": first_of_month(selected_year, selected_month)},
                {"id": member_id},
            )
            self.notify("success", "remove member", "Member removed from this month onwards")
            if self.group_id is not None:
                await self.load_roster(self.group_id, selected_year, selected_month)

        return await self._submit("remove member", "Failed to remove member", write)


class RosterSessionRegistry:
    """One roster session per (user, group), held on ``app.state``."""

    def __init__(self) -> None:
        self._sessions: dict[tuple[int, int], RosterSession] = {}

    def get(self, user_id: int, group_id: int, store: RecordStore) -> RosterSession:
        key = (user_id, group_id)
        session = self._sessions.get(key)
        if session is None:
            session = RosterSession(store, group_id=group_id)
            self._sessions[key] = session
        else:
            session.store = store
        return session

    def discard_user(self, user_id: int) -> None:
        for key in [key for key in self._sessions if key[0] == user_id]:
            del self._sessions[key]

    def clear(self) -> None:
        self._sessions.clear()
