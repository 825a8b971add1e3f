"""Pydantic payloads for signals and logs.

Inbound models validate writes at the storage boundary; outbound models
serialize ORM rows to the camelCase wire format the dashboard reads.
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic.alias_generators import to_camel

from signal_desk.models.signal import (
    Instrument,
    LogLevel,
    OptionType,
    ProductType,
    SignalStatus,
    StrategyKey,
)


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class SignalCreate(WireModel):
    strategy: StrategyKey
    instrument: Instrument
    option_type: OptionType
    product_type: ProductType = ProductType.INT
    strike_price: int
    entry_price: float
    current_price: Optional[float] = None
    target1: float
    target2: Optional[float] = None
    target3: Optional[float] = None
    stoploss: float
    status: SignalStatus = SignalStatus.ACTIVE
    pnl: Optional[float] = 0
    confidence: Optional[int] = 50
    confidence_reason: Optional[str] = None
    telegram_sent: Optional[bool] = False
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    closed_time: Optional[datetime] = None
    risk_reward_ratio: Optional[float] = None
    market_bias: Optional[str] = None
    market_regime: Optional[str] = None
    regime_confidence: Optional[float] = 50
    breakout_score: Optional[float] = None
    oi_confirmation: Optional[str] = None
    vix_at_entry: Optional[float] = None
    bid_ask_spread: Optional[float] = None
    trailing_stop_active: Optional[bool] = False


# Columns that are NOT NULL in the signals table
REQUIRED_COLUMNS = (
    "strategy",
    "instrument",
    "option_type",
    "product_type",
    "strike_price",
    "entry_price",
    "target1",
    "stoploss",
    "status",
)


class SignalUpdate(WireModel):
    """Partial update; unknown fields and nulls on required columns are rejected."""

    model_config = ConfigDict(extra="forbid")

    strategy: Optional[StrategyKey] = None
    instrument: Optional[Instrument] = None
    option_type: Optional[OptionType] = None
    product_type: Optional[ProductType] = None
    strike_price: Optional[int] = None
    entry_price: Optional[float] = None
    current_price: Optional[float] = None
    target1: Optional[float] = None
    target2: Optional[float] = None
    target3: Optional[float] = None
    stoploss: Optional[float] = None
    status: Optional[SignalStatus] = None
    pnl: Optional[float] = None
    confidence: Optional[int] = None
    confidence_reason: Optional[str] = None
    telegram_sent: Optional[bool] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    closed_time: Optional[datetime] = None
    risk_reward_ratio: Optional[float] = None
    market_bias: Optional[str] = None
    market_regime: Optional[str] = None
    regime_confidence: Optional[float] = None
    breakout_score: Optional[float] = None
    oi_confirmation: Optional[str] = None
    vix_at_entry: Optional[float] = None
    bid_ask_spread: Optional[float] = None
    trailing_stop_active: Optional[bool] = None

    @model_validator(mode="after")
    def reject_null_required(self):
        nulled = [
            name for name in REQUIRED_COLUMNS
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if nulled:
            raise ValueError(f"Fields cannot be null: {', '.join(nulled)}")
        return self


def _as_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class SignalOut(SignalCreate):
    model_config = ConfigDict(from_attributes=True)

    id: str
    strategy: str
    instrument: str
    option_type: str
    product_type: str
    status: str
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at", "closed_time")
    def serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return _as_utc(value)


class LogCreate(WireModel):
    level: LogLevel = LogLevel.INFO
    source: str = Field(min_length=1)
    message: str = Field(min_length=1)
    data: Optional[str] = None


class LogOut(WireModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    level: str
    source: str
    message: str
    data: Optional[str] = None
    created_at: datetime

    @field_serializer("created_at")
    def serialize_timestamp(self, value: datetime) -> Optional[str]:
        return _as_utc(value)


class ExitRequest(WireModel):
    exit_price: float


class PriceTick(WireModel):
    price: float


class PriceUpdate(WireModel):
    id: str
    current_price: Optional[float] = None
    pnl: Optional[float] = None


class BulkResult(WireModel):
    count: int


class ClearTodayResult(WireModel):
    signals_deleted: int
    logs_deleted: int


class SignalStats(WireModel):
    total: int
    active: int
    target_hits: int
    sl_hits: int
    expired: int
    closed: int
    total_pnl: float
    win_rate: float
    avg_confidence: float
    avg_regime_confidence: float
