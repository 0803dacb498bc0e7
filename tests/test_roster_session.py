from __future__ import annotations

import asyncio
import threading
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.concurrency import run_in_threadpool

from promodesk.database import Base
from promodesk.models import MonthlyRecord
from promodesk.schemas import MergedMember
from promodesk.services import RosterSession, RosterSessionRegistry
from promodesk.store import RecordStore, StoreError


def _make_store():
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return RecordStore(factory), factory


def _seed_group(store, name="North Zone"):
    return store.insert("groups", {"name": name})["id"]


def _seed_promoter(store, group_id, name="Asha", join=date(2025, 1, 1), leave=None, **extra):
    row = {
        "group_id": group_id,
        "name": name,
        "phone": extra.pop("phone", "9876543210"),
        "upi_id": extra.pop("upi_id", f"{name.lower()}@upi"),
        "join_date": join,
        "leave_date": leave,
    }
    return store.insert("promoters", row)["id"]


def _record_count(factory, promoter_id, year, month):
    session = factory()
    try:
        return (
            session.query(MonthlyRecord)
            .filter(
                MonthlyRecord.promoter_id == promoter_id,
                MonthlyRecord.year == year,
                MonthlyRecord.month == month,
            )
            .count()
        )
    finally:
        session.close()


class FailingUpsertStore(RecordStore):
    def upsert(self, table, row, conflict_columns):
        raise StoreError("upsert", table, "connection lost")


class FailingSelectStore(RecordStore):
    def select(self, table, filters=None, in_filters=None, order_by=None):
        raise StoreError("select", table, "service unavailable")


class FailingRecordInsertStore(RecordStore):
    def insert(self, table, row):
        if table == "monthly_records":
            raise StoreError("insert", table, "record insert rejected")
        return super().insert(table, row)


class GatedStore:
    """Delegating store that can park the next call of an operation."""

    def __init__(self, inner: RecordStore) -> None:
        self.inner = inner
        self.calls: list[str] = []
        self._armed: dict[str, tuple[threading.Event, threading.Event]] = {}
        self._parked: dict[str, threading.Event] = {}

    def hold(self, operation: str) -> threading.Event:
        """Park the next ``operation`` call; the returned event fires once it is parked."""
        entered = threading.Event()
        self._armed[operation] = (threading.Event(), entered)
        return entered

    def release(self, operation: str) -> None:
        self._parked.pop(operation).set()

    def _pass(self, operation: str) -> None:
        self.calls.append(operation)
        gate = self._armed.pop(operation, None)
        if gate is None:
            return
        release, entered = gate
        self._parked[operation] = release
        entered.set()
        release.wait(5)

    def select(self, *args, **kwargs):
        self._pass("select")
        return self.inner.select(*args, **kwargs)

    def insert(self, *args, **kwargs):
        self._pass("insert")
        return self.inner.insert(*args, **kwargs)

    def update(self, *args, **kwargs):
        self._pass("update")
        return self.inner.update(*args, **kwargs)

    def upsert(self, *args, **kwargs):
        self._pass("upsert")
        return self.inner.upsert(*args, **kwargs)


def test_load_roster_merges_active_promoters_with_month_records():
    store, _ = _make_store()
    group_id = _seed_group(store)
    early = _seed_promoter(store, group_id, "Asha", join=date(2025, 1, 1))
    late = _seed_promoter(store, group_id, "Ravi", join=date(2025, 3, 1))
    store.insert(
        "monthly_records",
        {"promoter_id": early, "group_id": group_id, "year": 2025, "month": 2, "days": 18},
    )

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        february = await session.load_roster(group_id, 2025, 2)
        march = await session.load_roster(group_id, 2025, 3)
        return session, february, march

    session, february, march = asyncio.run(scenario())

    assert [(m.id, m.days) for m in february] == [(early, 18)]
    assert february[0].record_id is not None
    assert [m.id for m in march] == [early, late]
    assert all(m.days == 0 and m.record_id is None for m in march)
    assert session.loaded is True


def test_load_roster_applies_search_and_days_filters():
    store, _ = _make_store()
    group_id = _seed_group(store)
    asha = _seed_promoter(store, group_id, "Asha")
    ravi = _seed_promoter(store, group_id, "Ravi", phone="9123400000")
    store.insert("monthly_records", {"promoter_id": asha, "year": 2025, "month": 5, "days": 15})
    store.insert(
        "monthly_records",
        {"promoter_id": ravi, "year": 2025, "month": 5, "days": 4, "payment_completed": True},
    )

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        unpaid = await session.load_roster(group_id, 2025, 5, mode="unpaid")
        by_phone = session.view("91234")
        mid = session.view("", "11-20")
        return unpaid, by_phone, mid

    unpaid, by_phone, mid = asyncio.run(scenario())
    assert [m.id for m in unpaid] == [asha]
    assert [m.id for m in by_phone] == [ravi]
    assert [m.id for m in mid] == [asha]


def test_load_failure_leaves_roster_unloaded_with_notification():
    store, factory = _make_store()
    group_id = _seed_group(store)
    _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(FailingSelectStore(factory), group_id=group_id)
        members = await session.load_roster(group_id, 2025, 5)
        return session, members

    session, members = asyncio.run(scenario())
    assert members == []
    assert session.loaded is False
    notes = session.drain_notifications()
    assert [(n.level, n.action, n.message) for n in notes] == [
        ("error", "load roster", "service unavailable")
    ]


def test_load_without_selection_is_rejected_before_any_store_call():
    store, _ = _make_store()
    gated = GatedStore(store)

    async def scenario():
        session = RosterSession(gated, group_id=1)
        return session, await session.load_roster(1, None, 5)

    session, members = asyncio.run(scenario())
    assert members == []
    assert gated.calls == []
    assert session.drain_notifications()[0].message == "Please select a year and month first."


def test_stale_load_is_discarded_when_newer_selection_finishes_first():
    store, _ = _make_store()
    group_id = _seed_group(store)
    may_only = _seed_promoter(store, group_id, "Asha", join=date(2025, 1, 1), leave=date(2025, 6, 1))
    june_only = _seed_promoter(store, group_id, "Ravi", join=date(2025, 6, 1))
    gated = GatedStore(store)

    async def scenario():
        session = RosterSession(gated, group_id=group_id)
        entered = gated.hold("select")
        slow = asyncio.create_task(session.load_roster(group_id, 2025, 5))
        await run_in_threadpool(entered.wait, 5)
        fast = await session.load_roster(group_id, 2025, 6)
        gated.release("select")
        late = await slow
        return session, fast, late

    session, fast, late = asyncio.run(scenario())
    assert [m.id for m in fast] == [june_only]
    assert [m.id for m in late] == [june_only]
    assert (session.year, session.month) == (2025, 6)
    assert [p.id for p in session.promoters] == [june_only]
    assert may_only not in [m.id for m in session.view()]


def test_toggle_creates_record_and_retires_placeholder():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        member = session.find_member(pid)
        ok = await session.toggle_member_paid(member, True)
        return session, ok

    session, ok = asyncio.run(scenario())
    assert ok is True
    member = session.find_member(pid)
    assert member.payment_completed is True
    assert isinstance(member.record_id, int)
    assert [r.id for r in session.monthly_records] == [member.record_id]
    assert _record_count(factory, pid, 2025, 5) == 1
    assert session.drain_notifications()[-1].message == "Payment marked as completed"


def test_toggling_twice_to_same_state_keeps_a_single_row():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        first = await session.toggle_member_paid(session.find_member(pid), True)
        second = await session.toggle_member_paid(session.find_member(pid), True)
        return session, first, second

    session, first, second = asyncio.run(scenario())
    assert first is True and second is True
    assert _record_count(factory, pid, 2025, 5) == 1
    assert len(session.monthly_records) == 1

    rows = store.select("monthly_records", {"promoter_id": pid})
    assert rows[0]["payment_completed"] is True


def test_toggle_from_stale_placeholder_member_still_upserts_one_row():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        stale_member = session.find_member(pid)
        await session.toggle_member_paid(stale_member, True)
        # stale copy still has record_id None
        await session.toggle_member_paid(stale_member, False)
        return session

    session = asyncio.run(scenario())
    assert _record_count(factory, pid, 2025, 5) == 1
    assert session.find_member(pid).payment_completed is False


def test_failed_toggle_restores_exact_snapshot():
    store, factory = _make_store()
    group_id = _seed_group(store)
    with_record = _seed_promoter(store, group_id, "Asha")
    without_record = _seed_promoter(store, group_id, "Ravi")
    store.insert(
        "monthly_records",
        {"promoter_id": with_record, "group_id": group_id, "year": 2025, "month": 5, "days": 15},
    )

    async def scenario():
        session = RosterSession(FailingUpsertStore(factory), group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        before = list(session.monthly_records)
        before_dump = [record.model_dump() for record in before]
        results = []
        for pid in (with_record, without_record):
            results.append(await session.toggle_member_paid(session.find_member(pid), True))
        return session, before, before_dump, results

    session, before, before_dump, results = asyncio.run(scenario())
    assert results == [False, False]
    assert session.monthly_records == before
    assert [record.model_dump() for record in session.monthly_records] == before_dump
    assert not any(str(record.id).startswith("temp-") for record in session.monthly_records)
    assert session.find_member(with_record).payment_completed is False
    assert session.find_member(without_record).payment_completed is False
    assert not session.is_payment_pending(with_record)

    notes = session.drain_notifications()
    assert [(n.level, n.action, n.message) for n in notes] == [
        ("error", "update payment", "connection lost"),
        ("error", "update payment", "connection lost"),
    ]
    assert _record_count(factory, without_record, 2025, 5) == 0


def test_toggle_shows_optimistic_state_and_ignores_duplicate_request():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)
    gated = GatedStore(store)

    async def scenario():
        session = RosterSession(gated, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        member = session.find_member(pid)

        entered = gated.hold("upsert")
        first = asyncio.create_task(session.toggle_member_paid(member, True))
        await run_in_threadpool(entered.wait, 5)

        optimistic = session.find_member(pid)
        pending = session.is_payment_pending(pid)
        duplicate = await session.toggle_member_paid(member, False)

        gated.release("upsert")
        confirmed = await first
        return session, optimistic, pending, duplicate, confirmed

    session, optimistic, pending, duplicate, confirmed = asyncio.run(scenario())
    assert optimistic.payment_completed is True
    assert optimistic.record_id == f"temp-{pid}"
    assert pending is True
    assert duplicate is False
    assert confirmed is True
    assert gated.calls.count("upsert") == 1
    assert session.find_member(pid).payment_completed is True
    assert not session.is_payment_pending(pid)
    assert _record_count(factory, pid, 2025, 5) == 1


def test_toggle_without_selection_is_a_validation_error():
    store, _ = _make_store()
    gated = GatedStore(store)
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    member = MergedMember(id=pid, group_id=group_id, phone="9876543210")

    async def scenario():
        session = RosterSession(gated, group_id=group_id)
        return session, await session.toggle_member_paid(member, True)

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert "upsert" not in gated.calls
    assert session.drain_notifications()[0].action == "update payment"


def test_toggle_with_member_from_previous_month_keeps_that_months_record():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)
    may = store.insert(
        "monthly_records",
        {"promoter_id": pid, "group_id": group_id, "year": 2025, "month": 5, "days": 12},
    )

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        may_member = session.find_member(pid)
        await session.load_roster(group_id, 2025, 6)
        ok = await session.toggle_member_paid(may_member, True)
        return session, ok

    session, ok = asyncio.run(scenario())
    assert ok is True
    assert _record_count(factory, pid, 2025, 5) == 1
    assert _record_count(factory, pid, 2025, 6) == 1

    may_row = store.select("monthly_records", {"id": may["id"]})[0]
    assert (may_row["month"], may_row["days"], may_row["payment_completed"]) == (5, 12, False)

    june = session.find_member(pid)
    assert june.payment_completed is True
    assert june.days == 0
    assert june.record_id != may["id"]


def test_edit_with_member_from_previous_month_writes_selected_month():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)
    may = store.insert("monthly_records", {"promoter_id": pid, "year": 2025, "month": 5, "days": 12})

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        may_member = session.find_member(pid)
        await session.load_roster(group_id, 2025, 6)
        ok = await session.edit_member(
            may_member, {"name": "Asha", "phone": "9876543210", "upi_id": "asha@upi", "days": "20"}
        )
        return session, ok

    session, ok = asyncio.run(scenario())
    assert ok is True
    assert store.select("monthly_records", {"id": may["id"]})[0]["days"] == 12
    assert _record_count(factory, pid, 2025, 6) == 1
    assert session.find_member(pid).days == 20


def test_remove_member_keeps_history_for_earlier_months():
    store, factory = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id, join=date(2025, 1, 1))
    store.insert(
        "monthly_records",
        {"promoter_id": pid, "group_id": group_id, "year": 2025, "month": 4, "days": 20},
    )

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        ok = await session.remove_member(pid, 2025, 5)
        after_remove = session.view()
        april = await session.load_roster(group_id, 2025, 4)
        may = await session.load_roster(group_id, 2025, 5)
        july = await session.load_roster(group_id, 2025, 7)
        return ok, after_remove, april, may, july

    ok, after_remove, april, may, july = asyncio.run(scenario())
    assert ok is True
    assert after_remove == []
    assert [(m.id, m.days) for m in april] == [(pid, 20)]
    assert may == [] and july == []

    row = store.select("promoters", {"id": pid})[0]
    assert row["leave_date"] == date(2025, 5, 1)
    assert _record_count(factory, pid, 2025, 4) == 1


def test_remove_member_requires_selection():
    store, _ = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        return session, await session.remove_member(pid, None, None)

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert store.select("promoters", {"id": pid})[0]["leave_date"] is None
    note = session.drain_notifications()[0]
    assert (note.level, note.action) == ("error", "remove member")


def test_add_member_creates_promoter_and_first_record():
    store, factory = _make_store()
    group_id = _seed_group(store)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        ok = await session.add_member(
            {"name": "  Meera ", "phone": " 9000011111 ", "upi_id": "meera@upi", "days": "12"},
            2025,
            3,
        )
        return session, ok

    session, ok = asyncio.run(scenario())
    assert ok is True
    [member] = session.view()
    assert member.name == "Meera"
    assert member.phone == "9000011111"
    assert member.join_date == date(2025, 3, 1)
    assert member.days == 12
    assert member.payment_completed is False
    assert _record_count(factory, member.id, 2025, 3) == 1
    assert session.drain_notifications()[0].message == "Member added successfully!"


def test_add_member_unparsable_days_default_to_zero():
    store, _ = _make_store()
    group_id = _seed_group(store)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.add_member({"phone": "1", "upi_id": "x@upi", "days": "lots"}, 2025, 3)
        return session

    session = asyncio.run(scenario())
    assert session.view()[0].days == 0


def test_add_member_validation_errors_write_nothing():
    store, _ = _make_store()
    group_id = _seed_group(store)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        results = [
            await session.add_member({"phone": "  ", "upi_id": "a@upi"}, 2025, 3),
            await session.add_member({"phone": "9000011111", "upi_id": ""}, 2025, 3),
            await session.add_member({"phone": "9000011111", "upi_id": "a@upi"}, None, None),
        ]
        return session, results

    session, results = asyncio.run(scenario())
    assert results == [False, False, False]
    assert [n.message for n in session.drain_notifications()] == [
        "Phone number is required.",
        "UPI ID is required.",
        "Please select a year and month first.",
    ]
    assert store.select("promoters") == []


def test_add_member_partial_failure_leaves_promoter_without_record():
    store, factory = _make_store()
    group_id = _seed_group(store)
    failing = FailingRecordInsertStore(factory)

    async def scenario():
        session = RosterSession(failing, group_id=group_id)
        ok = await session.add_member({"phone": "9000011111", "upi_id": "a@upi", "days": "9"}, 2025, 3)
        notes = session.drain_notifications()
        members = await session.load_roster(group_id, 2025, 3)
        return ok, notes, members

    ok, notes, members = asyncio.run(scenario())
    assert ok is False
    assert [(n.action, n.message) for n in notes] == [("add member", "record insert rejected")]
    [member] = members
    assert (member.days, member.payment_completed, member.record_id) == (0, False, None)


def test_edit_member_updates_details_and_days():
    store, factory = _make_store()
    group_id = _seed_group(store)
    with_record = _seed_promoter(store, group_id, "Asha")
    without_record = _seed_promoter(store, group_id, "Ravi")
    store.insert("monthly_records", {"promoter_id": with_record, "year": 2025, "month": 5, "days": 2})

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        first = await session.edit_member(
            session.find_member(with_record),
            {"name": "", "phone": "9111111111", "upi_id": "new@upi", "days": "25"},
        )
        second = await session.edit_member(
            session.find_member(without_record),
            {"name": "Ravi K", "phone": "9222222222", "upi_id": "ravi@upi", "days": "7"},
        )
        return session, first, second

    session, first, second = asyncio.run(scenario())
    assert first is True and second is True

    edited = session.find_member(with_record)
    assert edited.name is None
    assert (edited.phone, edited.upi_id, edited.days) == ("9111111111", "new@upi", 25)

    created = session.find_member(without_record)
    assert created.name == "Ravi K"
    assert created.days == 7
    assert _record_count(factory, without_record, 2025, 5) == 1


def test_edit_member_requires_phone():
    store, _ = _make_store()
    group_id = _seed_group(store)
    pid = _seed_promoter(store, group_id)

    async def scenario():
        session = RosterSession(store, group_id=group_id)
        await session.load_roster(group_id, 2025, 5)
        ok = await session.edit_member(session.find_member(pid), {"phone": "", "upi_id": "a@upi"})
        return session, ok

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert session.drain_notifications()[0].message == "Phone number is required."
    assert session.find_member(pid).phone == "9876543210"


def test_fetch_group():
    store, _ = _make_store()
    group_id = _seed_group(store, "South Zone")

    async def scenario():
        session = RosterSession(store)
        return await session.fetch_group(group_id), await session.fetch_group(group_id + 100)

    found, missing = asyncio.run(scenario())
    assert found.name == "South Zone"
    assert missing is None


def test_registry_returns_one_session_per_user_and_group():
    store, _ = _make_store()
    registry = RosterSessionRegistry()

    first = registry.get(1, 10, store)
    assert registry.get(1, 10, store) is first
    assert registry.get(1, 11, store) is not first
    assert registry.get(2, 10, store) is not first
    assert first.group_id == 10

    registry.discard_user(1)
    assert registry.get(1, 10, store) is not first
