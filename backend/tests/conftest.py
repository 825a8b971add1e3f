"""
conftest.py – point the app at throwaway settings before anything imports
signal_desk.

The module-level engine in signal_desk.core.db is created from DATABASE_URL
at import time, so the environment has to be set here. Redis is disabled
so the read cache always misses.
"""
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="signal_desk_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/app.db"
os.environ["REDIS_URL"] = ""
os.environ["ENABLE_WS"] = "true"

from datetime import datetime

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from signal_desk.core.db import init_db
from signal_desk.models.signal import Signal
from signal_desk.services.storage import SignalStorage


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/signals.db"


@pytest.fixture
async def engine(db_url):
    engine = create_async_engine(db_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def storage(session_factory):
    return SignalStorage(session_factory)


def signal_payload(**overrides):
    data = {
        "strategy": "ORB",
        "instrument": "NIFTY",
        "optionType": "CE",
        "strikePrice": 22000,
        "entryPrice": 100.0,
        "target1": 110.0,
        "stoploss": 95.0,
    }
    data.update(overrides)
    return data


async def insert_signal(session_factory, created_at: datetime, **fields):
    """Insert a row directly, bypassing the now() stamping in create_signal."""
    values = {
        "strategy": "ORB",
        "instrument": "NIFTY",
        "option_type": "CE",
        "strike_price": 22000,
        "entry_price": 100.0,
        "target1": 110.0,
        "stoploss": 95.0,
        "status": "active",
        "created_at": created_at,
        "updated_at": created_at,
    }
    values.update(fields)
    async with session_factory() as session:
        signal = Signal(**values)
        session.add(signal)
        await session.commit()
        if "pnl" in fields and fields["pnl"] is None:
            # The ORM skips explicit None on insert and applies the column default
            await session.execute(update(Signal).where(Signal.id == signal.id).values(pnl=None))
            await session.commit()
        await session.refresh(signal)
        return signal
