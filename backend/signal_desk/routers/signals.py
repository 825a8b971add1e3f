from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
import logging

from signal_desk.core.cache import (
    SIGNAL_DATES_CACHE_KEY,
    get_cached_data,
    history_cache_key,
    invalidate_signal_cache,
    set_cached_data,
)
from signal_desk.core.timezone import parse_day
from signal_desk.core.websocket_manager import ConnectionManager, get_manager
from signal_desk.schemas.signal import (
    BulkResult,
    ClearTodayResult,
    ExitRequest,
    PriceTick,
    PriceUpdate,
    SignalCreate,
    SignalOut,
    SignalStats,
    SignalUpdate,
)
from signal_desk.services.stats import compute_signal_stats
from signal_desk.services.storage import SignalStorage, get_storage

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Signals"])


def serialize_signal(signal) -> dict:
    return SignalOut.model_validate(signal).model_dump(mode="json", by_alias=True)


def _require_day(value: str) -> str:
    try:
        return parse_day(value).isoformat()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


async def _after_write(manager: ConnectionManager, event_type: str, data):
    await invalidate_signal_cache()
    await manager.broadcast(event_type, data)


async def _audit(storage: SignalStorage, manager: ConnectionManager, message: str):
    # The write being audited has already committed
    try:
        entry = await storage.create_log({"level": "info", "source": "api", "message": message})
    except SQLAlchemyError as e:
        logger.error(f"Audit log failed for '{message}': {e}")
        return
    await manager.broadcast("log", {
        "id": entry.id, "level": entry.level, "source": entry.source, "message": entry.message,
    })


@router.get("/signals")
async def list_signals(
    strategy: Optional[str] = Query(None, description="Strategy key filter"),
    today: bool = Query(False, description="Only signals created today (IST)"),
    storage: SignalStorage = Depends(get_storage),
) -> List[dict]:
    if today:
        signals = await storage.get_today_signals(strategy)
    else:
        signals = await storage.get_signals(strategy)
    return [serialize_signal(s) for s in signals]


@router.get("/signals/active")
async def list_active_signals(storage: SignalStorage = Depends(get_storage)) -> List[dict]:
    return [serialize_signal(s) for s in await storage.get_active_signals()]


@router.get("/signals/stats")
async def signal_stats(
    today: bool = Query(True, description="Restrict to today's signals (IST)"),
    strategy: Optional[str] = Query(None),
    storage: SignalStorage = Depends(get_storage),
):
    if today:
        signals = await storage.get_today_signals(strategy)
    else:
        signals = await storage.get_signals(strategy)
    return SignalStats(**compute_signal_stats(signals)).model_dump(by_alias=True)


@router.get("/signals/dates")
async def available_dates(storage: SignalStorage = Depends(get_storage)) -> List[str]:
    cached = await get_cached_data(SIGNAL_DATES_CACHE_KEY)
    if cached is not None:
        logger.debug("Cache hit for signal dates")
        return cached

    dates = await storage.get_available_signal_dates()
    await set_cached_data(SIGNAL_DATES_CACHE_KEY, dates)
    return dates


@router.get("/signals/history")
async def signal_history(
    date: str = Query(..., description="IST calendar date (YYYY-MM-DD)"),
    storage: SignalStorage = Depends(get_storage),
) -> List[dict]:
    day = _require_day(date)
    cache_key = history_cache_key(day)
    cached = await get_cached_data(cache_key)
    if cached is not None:
        return cached

    result = [serialize_signal(s) for s in await storage.get_signals_by_date(day)]
    await set_cached_data(cache_key, result)
    return result


@router.get("/signals/{signal_id}")
async def get_signal(signal_id: str, storage: SignalStorage = Depends(get_storage)):
    signal = await storage.get_signal(signal_id)
    if signal is None:
        raise HTTPException(status_code=404, detail="Signal not found")
    return serialize_signal(signal)


@router.post("/signals", status_code=201)
async def create_signal(
    payload: SignalCreate,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    signal = await storage.create_signal(payload)
    data = serialize_signal(signal)
    await _after_write(manager, "signal_update", data)
    return data


@router.patch("/signals/{signal_id}")
async def update_signal(
    signal_id: str,
    payload: SignalUpdate,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    signal = await storage.update_signal(signal_id, payload)
    if signal is None:
        raise HTTPException(status_code=404, detail="Signal not found")
    data = serialize_signal(signal)
    await _after_write(manager, "signal_update", data)
    return data


@router.post("/signals/{signal_id}/exit")
async def exit_signal(
    signal_id: str,
    payload: ExitRequest,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    signal = await storage.exit_signal(signal_id, payload.exit_price)
    if signal is None:
        raise HTTPException(status_code=404, detail="Signal not found")
    data = serialize_signal(signal)
    await _after_write(manager, "signal_update", data)
    await _audit(storage, manager, f"Manual exit {signal.strategy} {signal.instrument} @ {payload.exit_price} (P&L {signal.pnl})")
    return data


@router.post("/signals/{signal_id}/price")
async def price_tick(
    signal_id: str,
    payload: PriceTick,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    signal = await storage.record_price_tick(signal_id, payload.price)
    if signal is None:
        raise HTTPException(status_code=404, detail="No active signal with that id")
    update = PriceUpdate(id=signal.id, current_price=signal.current_price, pnl=signal.pnl)
    data = update.model_dump(by_alias=True)
    await manager.broadcast("price_update", data)
    return data


async def _bulk_exit(operation, label: str, storage: SignalStorage, manager: ConnectionManager):
    count = await operation()
    if count:
        await _after_write(manager, "signal_update", {"bulk": label, "count": count})
        await _audit(storage, manager, f"Bulk {label}: {count} signals closed")
    return BulkResult(count=count).model_dump(by_alias=True)


@router.post("/signals/bulk/exit-all")
async def exit_all(
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    return await _bulk_exit(storage.exit_all_signals, "exit-all", storage, manager)


@router.post("/signals/bulk/exit-profits")
async def exit_profits(
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    return await _bulk_exit(storage.exit_all_profit_signals, "exit-profits", storage, manager)


@router.post("/signals/bulk/exit-losses")
async def exit_losses(
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    return await _bulk_exit(storage.exit_all_loss_signals, "exit-losses", storage, manager)


@router.post("/signals/clear/{date}")
async def clear_expired(
    date: str,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    day = _require_day(date)
    deleted = await storage.clear_expired_signals(day)
    if deleted:
        await _after_write(manager, "signal_update", {"cleared": day, "count": deleted})
    return {"deleted": deleted, "date": day}


@router.delete("/data/today")
async def clear_today(
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    counts = await storage.clear_today_data()
    result = ClearTodayResult(**counts).model_dump(by_alias=True)
    await _after_write(manager, "signal_update", {"clearedToday": True, **result})
    return result
