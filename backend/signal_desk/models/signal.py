import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from signal_desk.core.db import Base
from signal_desk.core.timezone import utcnow


class SignalStatus(str, Enum):
    ACTIVE = "active"
    TARGET1_HIT = "target1_hit"
    TARGET2_HIT = "target2_hit"
    TARGET3_HIT = "target3_hit"
    SL_HIT = "sl_hit"
    EXPIRED = "expired"
    CLOSED = "closed"


class Instrument(str, Enum):
    NIFTY = "NIFTY"
    BANKNIFTY = "BANKNIFTY"
    SENSEX = "SENSEX"
    CRUDEOIL = "CRUDEOIL"
    NATURALGAS = "NATURALGAS"


class OptionType(str, Enum):
    CE = "CE"
    PE = "PE"


class ProductType(str, Enum):
    INT = "INT"
    CF = "CF"


class StrategyKey(str, Enum):
    ORB = "ORB"
    SMTR = "SMTR"
    EMA = "EMA"
    VWAP_PULLBACK = "VWAP_PULLBACK"
    VWAP_RSI = "VWAP_RSI"
    RSI = "RSI"
    RSI_RANGE = "RSI_RANGE"
    GAP_FADE = "GAP_FADE"
    CPR = "CPR"
    INSIDE_CANDLE = "INSIDE_CANDLE"
    EMA_VWAP_RSI = "EMA_VWAP_RSI"
    MARKET_TOP = "MARKET_TOP"
    SCALP = "SCALP"
    PRO_ORB = "PRO_ORB"
    VWAP_REVERSION = "VWAP_REVERSION"
    BREAKOUT_STRENGTH = "BREAKOUT_STRENGTH"
    REGIME_BASED = "REGIME_BASED"
    EMA_PULLBACK = "EMA_PULLBACK"
    AFTERNOON_VWAP_MOMENTUM = "AFTERNOON_VWAP_MOMENTUM"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


# Statuses removed by the per-date "clear" action
CLEARABLE_STATUSES = (SignalStatus.SL_HIT.value, SignalStatus.EXPIRED.value)

MANUAL_EXIT_REASON = "Manual exit"


def _new_id() -> str:
    return str(uuid.uuid4())


class Signal(Base):
    __tablename__ = "signals"

    id = Column(String, primary_key=True, default=_new_id)
    strategy = Column(String, nullable=False)
    instrument = Column(String, nullable=False)
    option_type = Column(String, nullable=False)
    product_type = Column(String, nullable=False, default=ProductType.INT.value)
    strike_price = Column(Integer, nullable=False)

    entry_price = Column(Float, nullable=False)
    current_price = Column(Float)
    target1 = Column(Float, nullable=False)
    target2 = Column(Float)
    target3 = Column(Float)
    stoploss = Column(Float, nullable=False)

    status = Column(String, nullable=False, default=SignalStatus.ACTIVE.value)
    pnl = Column(Float, default=0)
    confidence = Column(Integer, default=50)
    confidence_reason = Column(Text)
    telegram_sent = Column(Boolean, default=False)
    exit_price = Column(Float)
    exit_reason = Column(Text)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    closed_time = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Analytics written by the external strategy engine
    risk_reward_ratio = Column(Float)
    market_bias = Column(Text)  # BULLISH, BEARISH, NEUTRAL
    market_regime = Column(Text)  # SIDEWAYS, TRENDING, BREAKOUT
    regime_confidence = Column(Float, default=50)
    breakout_score = Column(Float)
    oi_confirmation = Column(Text)  # JSON
    vix_at_entry = Column(Float)
    bid_ask_spread = Column(Float)
    trailing_stop_active = Column(Boolean, default=False)

    __table_args__ = (
        Index("idx_signals_created_at", "created_at"),
        Index("idx_signals_status", "status"),
    )


class Log(Base):
    __tablename__ = "logs"

    id = Column(String, primary_key=True, default=_new_id)
    level = Column(String, nullable=False, default=LogLevel.INFO.value)
    source = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
