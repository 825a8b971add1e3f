"""
Tests for SignalStorage against a throwaway aiosqlite database.

Rows that need a specific creation instant are inserted directly with
insert_signal(); everything else goes through the public storage API.
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select

from conftest import insert_signal, signal_payload
from signal_desk.core import timezone as tz
from signal_desk.core.exceptions import InvalidSignalData
from signal_desk.models.signal import Log, Signal
from signal_desk.services import storage as storage_module

pytestmark = pytest.mark.anyio

# 11:30 IST on 2024-03-15
NOW = datetime(2024, 3, 15, 6, 0)


@pytest.fixture
def frozen_now(monkeypatch):
    monkeypatch.setattr(tz, "utcnow", lambda: NOW)
    return NOW


async def insert_log(session_factory, created_at, message="hello"):
    async with session_factory() as session:
        session.add(Log(source="test", message=message, created_at=created_at))
        await session.commit()


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ── create / read / update ─────────────────────────────────────────────────────

class TestCrud:

    async def test_create_stamps_id_and_timestamps(self, storage):
        signal = await storage.create_signal(signal_payload())
        assert signal.id
        assert signal.status == "active"
        assert signal.product_type == "INT"
        assert signal.created_at == signal.updated_at
        assert signal.pnl == 0

    async def test_create_rejects_unknown_instrument(self, storage):
        with pytest.raises(InvalidSignalData):
            await storage.create_signal(signal_payload(instrument="DOGECOIN"))

    async def test_get_signal_absent_returns_none(self, storage):
        assert await storage.get_signal("does-not-exist") is None

    async def test_get_signals_newest_first_and_filtered(self, storage, session_factory):
        old = await insert_signal(session_factory, NOW - timedelta(hours=2), strategy="EMA")
        new = await insert_signal(session_factory, NOW - timedelta(hours=1), strategy="ORB")
        newest = await insert_signal(session_factory, NOW, strategy="EMA")

        assert [s.id for s in await storage.get_signals()] == [newest.id, new.id, old.id]
        assert [s.id for s in await storage.get_signals("EMA")] == [newest.id, old.id]

    async def test_unknown_strategy_filter_rejected(self, storage):
        with pytest.raises(InvalidSignalData):
            await storage.get_signals("NOT_A_STRATEGY")

    async def test_active_signals_only(self, storage, session_factory):
        active = await insert_signal(session_factory, NOW)
        await insert_signal(session_factory, NOW, status="closed")
        await insert_signal(session_factory, NOW, status="target1_hit")
        assert [s.id for s in await storage.get_active_signals()] == [active.id]

    async def test_update_merges_and_refreshes_updated_at(self, storage, monkeypatch):
        signal = await storage.create_signal(signal_payload())
        later = signal.updated_at + timedelta(minutes=5)
        monkeypatch.setattr(storage_module, "utcnow", lambda: later)

        updated = await storage.update_signal(signal.id, {"currentPrice": 101.5, "status": "target1_hit"})

        assert updated.current_price == 101.5
        assert updated.status == "target1_hit"
        assert updated.entry_price == 100.0
        assert updated.updated_at == later
        assert updated.created_at == signal.created_at

    async def test_update_absent_returns_none(self, storage):
        assert await storage.update_signal("missing", {"pnl": 1.0}) is None

    @pytest.mark.parametrize("fields", [
        {"status": "exploded"},
        {"bogus": 1},
        {"status": None},
        {"entryPrice": None},
        {"strategy": None},
    ])
    async def test_update_validates_fields(self, storage, fields):
        signal = await storage.create_signal(signal_payload())
        with pytest.raises(InvalidSignalData):
            await storage.update_signal(signal.id, fields)

    async def test_update_clears_optional_fields(self, storage):
        signal = await storage.create_signal(signal_payload(target2=120.0))
        updated = await storage.update_signal(signal.id, {"target2": None})
        assert updated.target2 is None
        assert updated.status == "active"


# ── IST day windows ────────────────────────────────────────────────────────────

class TestDayWindows:

    async def test_today_window_edges(self, storage, session_factory, frozen_now):
        start, end = tz.ist_day_bounds("2024-03-15")
        first = await insert_signal(session_factory, start)
        last = await insert_signal(session_factory, end - timedelta(milliseconds=1))
        await insert_signal(session_factory, start - timedelta(seconds=1))
        await insert_signal(session_factory, end)

        today = await storage.get_today_signals()
        assert {s.id for s in today} == {first.id, last.id}

    async def test_today_with_strategy(self, storage, session_factory, frozen_now):
        ema = await insert_signal(session_factory, NOW, strategy="EMA")
        await insert_signal(session_factory, NOW, strategy="ORB")
        assert [s.id for s in await storage.get_today_signals("EMA")] == [ema.id]

    async def test_signals_by_date(self, storage, session_factory):
        inside = await insert_signal(session_factory, datetime(2024, 3, 10, 4, 0))
        await insert_signal(session_factory, datetime(2024, 3, 10, 19, 0))  # 11 Mar IST
        assert [s.id for s in await storage.get_signals_by_date("2024-03-10")] == [inside.id]

    async def test_clear_expired_only_touches_sl_and_expired_that_day(self, storage, session_factory):
        day = datetime(2024, 3, 10, 5, 0)
        keep_active = await insert_signal(session_factory, day, status="active")
        keep_closed = await insert_signal(session_factory, day, status="closed")
        await insert_signal(session_factory, day, status="sl_hit")
        await insert_signal(session_factory, day, status="expired")
        other_day = await insert_signal(session_factory, day + timedelta(days=1), status="sl_hit")

        deleted = await storage.clear_expired_signals("2024-03-10")

        assert deleted == 2
        remaining = {s.id for s in await storage.get_signals()}
        assert remaining == {keep_active.id, keep_closed.id, other_day.id}

    async def test_available_dates_capped_at_thirty(self, storage, session_factory):
        for offset in range(40):
            await insert_signal(session_factory, NOW - timedelta(days=offset))
        # second signal on the newest day must not produce a duplicate date
        await insert_signal(session_factory, NOW - timedelta(minutes=5))

        dates = await storage.get_available_signal_dates()

        expected = [(date(2024, 3, 15) - timedelta(days=i)).isoformat() for i in range(30)]
        assert dates == expected

    async def test_available_dates_use_ist_calendar(self, storage, session_factory):
        await insert_signal(session_factory, datetime(2024, 3, 14, 19, 0))
        assert await storage.get_available_signal_dates() == ["2024-03-15"]

    async def test_clear_today_data_counts(self, storage, session_factory, frozen_now):
        await insert_signal(session_factory, NOW)
        await insert_signal(session_factory, NOW - timedelta(hours=1))
        await insert_signal(session_factory, NOW - timedelta(days=1))
        await insert_log(session_factory, NOW)
        await insert_log(session_factory, NOW - timedelta(days=2))

        counts = await storage.clear_today_data()

        assert counts == {"signals_deleted": 2, "logs_deleted": 1}
        assert await count_rows(session_factory, Signal) == 1
        assert await count_rows(session_factory, Log) == 1


# ── exits ─────────────────────────────────────────────────────────────────────

class TestExits:

    async def test_exit_signal_nifty_example(self, storage):
        signal = await storage.create_signal(signal_payload(entryPrice=100.0, instrument="NIFTY"))

        closed = await storage.exit_signal(signal.id, 105.0)

        assert closed.status == "closed"
        assert closed.pnl == 250.0
        assert closed.exit_price == 105.0
        assert closed.current_price == 105.0
        assert closed.exit_reason == "Manual exit"
        assert closed.closed_time is not None

    @pytest.mark.parametrize("instrument,expected", [
        ("BANKNIFTY", -45.0),
        ("SENSEX", -3.0),
    ])
    async def test_exit_signal_lot_sizes(self, storage, instrument, expected):
        signal = await storage.create_signal(signal_payload(instrument=instrument, entryPrice=100.0))
        closed = await storage.exit_signal(signal.id, 97.0)
        assert closed.pnl == pytest.approx(expected)

    async def test_exit_absent_signal(self, storage):
        assert await storage.exit_signal("missing", 100.0) is None

    async def _mixed_book(self, session_factory):
        return {
            "profit": await insert_signal(session_factory, NOW, pnl=10.0),
            "loss": await insert_signal(session_factory, NOW, pnl=-5.0),
            "flat": await insert_signal(session_factory, NOW, pnl=0.0),
            "none": await insert_signal(session_factory, NOW, pnl=None),
            "closed": await insert_signal(session_factory, NOW, pnl=20.0, status="closed",
                                          exit_reason="Target hit"),
        }

    async def test_exit_profits_only_positive_active(self, storage, session_factory):
        book = await self._mixed_book(session_factory)

        assert await storage.exit_all_profit_signals() == 1

        profit = await storage.get_signal(book["profit"].id)
        assert profit.status == "closed"
        assert profit.exit_reason == "Manual exit"
        assert profit.closed_time is not None
        still_active = {s.id for s in await storage.get_active_signals()}
        assert still_active == {book["loss"].id, book["flat"].id, book["none"].id}
        assert (await storage.get_signal(book["closed"].id)).exit_reason == "Target hit"

    async def test_exit_losses_only_negative_active(self, storage, session_factory):
        book = await self._mixed_book(session_factory)

        assert await storage.exit_all_loss_signals() == 1

        still_active = {s.id for s in await storage.get_active_signals()}
        assert still_active == {book["profit"].id, book["flat"].id, book["none"].id}

    async def test_zero_and_missing_pnl_untouched_by_both(self, storage, session_factory):
        book = await self._mixed_book(session_factory)
        await storage.exit_all_profit_signals()
        await storage.exit_all_loss_signals()
        still_active = {s.id for s in await storage.get_active_signals()}
        assert still_active == {book["flat"].id, book["none"].id}

    async def test_exit_all(self, storage, session_factory):
        await self._mixed_book(session_factory)
        assert await storage.exit_all_signals() == 4
        assert await storage.get_active_signals() == []

    async def test_bulk_exits_on_empty_book(self, storage):
        assert await storage.exit_all_signals() == 0
        assert await storage.exit_all_profit_signals() == 0
        assert await storage.exit_all_loss_signals() == 0

    async def test_bulk_update_rechecks_status(self, storage, session_factory, monkeypatch):
        signal = await insert_signal(session_factory, NOW, pnl=10.0)
        stale_read = await storage.get_active_signals()

        # Another writer closes the signal between the read and the bulk update
        await storage.update_signal(signal.id, {"status": "target1_hit"})

        async def stale_active():
            return stale_read

        monkeypatch.setattr(storage, "get_active_signals", stale_active)
        assert await storage.exit_all_profit_signals() == 0
        assert (await storage.get_signal(signal.id)).status == "target1_hit"


class TestPriceTicks:

    async def test_tick_updates_live_pnl(self, storage):
        signal = await storage.create_signal(signal_payload(instrument="BANKNIFTY", entryPrice=200.0))
        ticked = await storage.record_price_tick(signal.id, 210.0)
        assert ticked.current_price == 210.0
        assert ticked.pnl == 150.0
        assert ticked.status == "active"

    async def test_tick_ignored_for_closed_or_missing(self, storage, session_factory):
        closed = await insert_signal(session_factory, NOW, status="closed")
        assert await storage.record_price_tick(closed.id, 120.0) is None
        assert await storage.record_price_tick("missing", 120.0) is None

    async def test_tick_rechecks_status(self, storage, session_factory, monkeypatch):
        signal = await insert_signal(session_factory, NOW)
        stale = await storage.get_signal(signal.id)

        # A manual exit commits between the tick's read and its write
        await storage.exit_signal(signal.id, 105.0)

        async def stale_get(signal_id):
            return stale

        monkeypatch.setattr(storage, "get_signal", stale_get)
        assert await storage.record_price_tick(signal.id, 90.0) is None

        closed = await storage_module.SignalStorage(session_factory).get_signal(signal.id)
        assert closed.status == "closed"
        assert closed.exit_price == 105.0
        assert closed.current_price == 105.0
        assert closed.pnl == 250.0


class TestMaintenance:

    async def test_backfill_closed_time(self, storage, session_factory):
        stamp = datetime(2024, 3, 1, 9, 0)
        closed = await insert_signal(session_factory, stamp, status="sl_hit", updated_at=stamp)
        active = await insert_signal(session_factory, stamp)

        assert await storage.backfill_closed_time() == 1
        assert (await storage.get_signal(closed.id)).closed_time == stamp
        assert (await storage.get_signal(active.id)).closed_time is None


class TestLogs:

    async def test_logs_newest_first_with_limit(self, storage, session_factory):
        for minutes, message in [(3, "old"), (2, "mid"), (1, "new")]:
            await insert_log(session_factory, NOW - timedelta(minutes=minutes), message)

        logs = await storage.get_logs(limit=2)
        assert [entry.message for entry in logs] == ["new", "mid"]

    async def test_create_log_defaults(self, storage):
        entry = await storage.create_log({"source": "engine", "message": "Engine started"})
        assert entry.id
        assert entry.level == "info"

    @pytest.mark.parametrize("payload", [
        {"source": "engine", "message": ""},
        {"source": "engine", "message": "x", "level": "fatal"},
    ])
    async def test_create_log_validates(self, storage, payload):
        with pytest.raises(InvalidSignalData):
            await storage.create_log(payload)
