"""Persistence for signals and logs.

All reads and writes go through ``SignalStorage``. Each call opens its own
session from the injected session factory; database errors propagate to
the caller unchanged. Day windows are IST calendar days (see
``signal_desk.core.timezone``).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, desc, func, select, update

from signal_desk.core.config import get_config
from signal_desk.core.db import AsyncSessionLocal
from signal_desk.core.exceptions import InvalidSignalData
from signal_desk.core.timezone import ist_date, ist_day_bounds, ist_today_bounds, utcnow
from signal_desk.models.signal import (
    CLEARABLE_STATUSES,
    MANUAL_EXIT_REASON,
    Log,
    Signal,
    SignalStatus,
    StrategyKey,
)
from signal_desk.schemas.signal import LogCreate, SignalCreate, SignalUpdate
from signal_desk.services.decorators import log_execution
from signal_desk.services.pnl import compute_pnl

logger = logging.getLogger(__name__)

MAX_AVAILABLE_DATES = 30


def _validate(model, data):
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidSignalData(
            f"Invalid {model.__name__} payload: {e}",
            e.errors(include_url=False, include_context=False),
        ) from e


def _naive_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _strategy_value(strategy: Union[str, StrategyKey]) -> str:
    try:
        return StrategyKey(strategy).value
    except ValueError as e:
        raise InvalidSignalData(f"Unknown strategy '{strategy}'") from e


class SignalStorage:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    # --- signals: reads ---

    async def get_signals(self, strategy: Optional[str] = None) -> List[Signal]:
        query = select(Signal)
        if strategy:
            query = query.where(Signal.strategy == _strategy_value(strategy))
        return await self._fetch_signals(query)

    async def get_today_signals(self, strategy: Optional[str] = None) -> List[Signal]:
        start, end = ist_today_bounds()
        query = select(Signal).where(Signal.created_at >= start, Signal.created_at < end)
        if strategy:
            query = query.where(Signal.strategy == _strategy_value(strategy))
        return await self._fetch_signals(query)

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        async with self._session_factory() as session:
            return await session.get(Signal, signal_id)

    async def get_active_signals(self) -> List[Signal]:
        query = select(Signal).where(Signal.status == SignalStatus.ACTIVE.value)
        return await self._fetch_signals(query)

    async def get_signals_by_date(self, day) -> List[Signal]:
        start, end = ist_day_bounds(day)
        query = select(Signal).where(Signal.created_at >= start, Signal.created_at < end)
        return await self._fetch_signals(query)

    async def get_available_signal_dates(self) -> List[str]:
        """Distinct IST dates that have signals, newest first, at most 30."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Signal.created_at).order_by(desc(Signal.created_at))
            )
            dates: List[str] = []
            for created_at in result.scalars():
                day = ist_date(created_at).isoformat()
                if not dates or dates[-1] != day:
                    dates.append(day)
                    if len(dates) == MAX_AVAILABLE_DATES:
                        break
            return dates

    async def _fetch_signals(self, query) -> List[Signal]:
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(desc(Signal.created_at)))
            return list(result.scalars().all())

    # --- signals: writes ---

    async def create_signal(self, data: Union[Dict[str, Any], SignalCreate]) -> Signal:
        payload = _validate(SignalCreate, data)
        values = {k: _naive_utc(v) for k, v in payload.model_dump().items()}
        now = utcnow()
        async with self._session_factory() as session:
            signal = Signal(**values, created_at=now, updated_at=now)
            session.add(signal)
            await session.commit()
            await session.refresh(signal)
            logger.info(f"Signal created: {signal.id} {signal.strategy} {signal.instrument}")
            return signal

    async def update_signal(
        self, signal_id: str, fields: Union[Dict[str, Any], SignalUpdate]
    ) -> Optional[Signal]:
        payload = _validate(SignalUpdate, fields)
        changes = {k: _naive_utc(v) for k, v in payload.model_dump(exclude_unset=True).items()}
        return await self._apply_changes(signal_id, changes)

    async def _apply_changes(self, signal_id: str, changes: Dict[str, Any], *conditions) -> Optional[Signal]:
        """UPDATE one row; ``conditions`` narrow the WHERE clause. Returns None when no row matched."""
        changes = dict(changes, updated_at=utcnow())
        async with self._session_factory() as session:
            result = await session.execute(
                update(Signal)
                .where(Signal.id == signal_id, *conditions)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(Signal, signal_id)

    @log_execution
    async def clear_expired_signals(self, day) -> int:
        start, end = ist_day_bounds(day)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Signal)
                .where(
                    Signal.created_at >= start,
                    Signal.created_at < end,
                    Signal.status.in_(CLEARABLE_STATUSES),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            logger.info(f"Cleared {result.rowcount} expired/SL signals for {day}")
            return result.rowcount

    async def backfill_closed_time(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Signal)
                .where(Signal.status != SignalStatus.ACTIVE.value, Signal.closed_time.is_(None))
                .values(closed_time=Signal.updated_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    # --- exits ---

    async def exit_signal(self, signal_id: str, exit_price: float) -> Optional[Signal]:
        signal = await self.get_signal(signal_id)
        if signal is None:
            return None

        _, money_pnl = compute_pnl(signal.entry_price, exit_price, signal.instrument)
        logger.info(f"Manual exit {signal_id} at {exit_price}: pnl={money_pnl}")
        return await self.update_signal(signal_id, {
            "status": SignalStatus.CLOSED.value,
            "current_price": exit_price,
            "pnl": money_pnl,
            "exit_price": exit_price,
            "exit_reason": MANUAL_EXIT_REASON,
            "closed_time": utcnow(),
        })

    async def record_price_tick(self, signal_id: str, price: float) -> Optional[Signal]:
        """Mark an active signal to ``price``; ignored for absent or closed signals."""
        signal = await self.get_signal(signal_id)
        if signal is None or signal.status != SignalStatus.ACTIVE.value:
            return None

        _, money_pnl = compute_pnl(signal.entry_price, price, signal.instrument)
        # An exit may have landed since the read; only an active row takes the tick
        return await self._apply_changes(
            signal_id,
            {"current_price": price, "pnl": money_pnl},
            Signal.status == SignalStatus.ACTIVE.value,
        )

    @log_execution
    async def exit_all_signals(self) -> int:
        active = await self.get_active_signals()
        if not active:
            return 0
        return await self._close_active()

    @log_execution
    async def exit_all_profit_signals(self) -> int:
        active = await self.get_active_signals()
        ids = [s.id for s in active if (s.pnl or 0) > 0]
        if not ids:
            return 0
        return await self._close_active(ids, func.coalesce(Signal.pnl, 0) > 0)

    @log_execution
    async def exit_all_loss_signals(self) -> int:
        active = await self.get_active_signals()
        ids = [s.id for s in active if (s.pnl or 0) < 0]
        if not ids:
            return 0
        return await self._close_active(ids, func.coalesce(Signal.pnl, 0) < 0)

    async def _close_active(self, ids: Optional[List[str]] = None, pnl_clause=None) -> int:
        # Status and pnl sign are re-checked in the WHERE clause so rows that
        # changed since the read above are left alone.
        now = utcnow()
        stmt = update(Signal).where(Signal.status == SignalStatus.ACTIVE.value)
        if ids is not None:
            stmt = stmt.where(Signal.id.in_(ids))
        if pnl_clause is not None:
            stmt = stmt.where(pnl_clause)
        stmt = stmt.values(
            status=SignalStatus.CLOSED.value,
            exit_reason=MANUAL_EXIT_REASON,
            closed_time=now,
            updated_at=now,
        ).execution_options(synchronize_session=False)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            logger.info(f"Bulk exit closed {result.rowcount} signals")
            return result.rowcount

    # --- logs ---

    async def get_logs(self, limit: Optional[int] = None) -> List[Log]:
        limit = limit or get_config().LOGS_LIMIT
        async with self._session_factory() as session:
            result = await session.execute(
                select(Log).order_by(desc(Log.created_at)).limit(limit)
            )
            return list(result.scalars().all())

    async def create_log(self, data: Union[Dict[str, Any], LogCreate]) -> Log:
        payload = _validate(LogCreate, data)
        async with self._session_factory() as session:
            entry = Log(**payload.model_dump(), created_at=utcnow())
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    @log_execution
    async def clear_today_data(self) -> Dict[str, int]:
        start, end = ist_today_bounds()
        async with self._session_factory() as session:
            signals_result = await session.execute(
                delete(Signal)
                .where(Signal.created_at >= start, Signal.created_at < end)
                .execution_options(synchronize_session=False)
            )
            logs_result = await session.execute(
                delete(Log)
                .where(Log.created_at >= start, Log.created_at < end)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        counts = {
            "signals_deleted": signals_result.rowcount,
            "logs_deleted": logs_result.rowcount,
        }
        logger.warning(f"Cleared today's data: {counts}")
        return counts


storage = SignalStorage()


def get_storage() -> SignalStorage:
    return storage
