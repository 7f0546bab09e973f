"""
SQLAlchemy models for the grid engine database.
Defines tables for grid strategies and their append-only trade history.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    DECIMAL,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


position_side_enum = Enum("LONG", "SHORT", "BOTH", name="grid_position_side")
strategy_status_enum = Enum("RUNNING", "PAUSED", "STOPPED", "DELETED", name="grid_strategy_status")
margin_type_enum = Enum("CROSSED", "ISOLATED", name="grid_margin_type")
trade_direction_enum = Enum("OPEN", "CLOSE", name="grid_trade_direction")
order_side_enum = Enum("BUY", "SELL", name="grid_order_side")


class GridStrategy(Base):
    """Hedged grid strategy configuration and runtime state"""

    __tablename__ = "grid_strategies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_key: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Grid configuration
    trading_pair: Mapped[str] = mapped_column(String(30), nullable=False)
    position_side: Mapped[str] = mapped_column(position_side_enum, default="BOTH", nullable=False)
    exchange: Mapped[str] = mapped_column(String(20), default="BINANCE", nullable=False)
    exchange_type: Mapped[str] = mapped_column(String(20), default="USDT-M", nullable=False)
    grid_price_difference: Mapped[Decimal] = mapped_column(DECIMAL(20, 8), nullable=False)
    grid_trade_quantity: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    grid_long_open_quantity: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    grid_long_close_quantity: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    grid_short_open_quantity: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    grid_short_close_quantity: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    max_open_position_quantity: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    min_open_position_quantity: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    fall_prevention_coefficient: Mapped[Decimal] = mapped_column(
        DECIMAL(20, 8), default=Decimal("0"), nullable=False
    )
    polling_interval: Mapped[int] = mapped_column(Integer, default=10000, nullable=False)
    price_precision: Mapped[int] = mapped_column(Integer, default=8, nullable=False)
    quantity_precision: Mapped[int] = mapped_column(Integer, default=8, nullable=False)
    leverage: Mapped[int] = mapped_column(Integer, default=20, nullable=False)
    margin_type: Mapped[str] = mapped_column(margin_type_enum, default="ISOLATED", nullable=False)

    # Risk controls
    stop_loss_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    take_profit_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    gt_limitation_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    lt_limitation_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    is_above_open_price: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_below_open_price: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority_close_on_trend: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(strategy_status_enum, default="RUNNING", nullable=False)
    paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pause_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
    stop_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Runtime state for restart recovery
    next_expected_rise_price_long: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    next_expected_fall_price_long: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    next_expected_rise_price_short: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    next_expected_fall_price_short: Mapped[Decimal | None] = mapped_column(
        DECIMAL(20, 8), nullable=True
    )
    total_open_position_quantity: Mapped[Decimal] = mapped_column(
        DECIMAL(20, 8), default=Decimal("0"), nullable=False
    )
    total_pairing_times: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_profit_loss: Mapped[Decimal] = mapped_column(
        DECIMAL(20, 8), default=Decimal("0"), nullable=False
    )
    total_trades: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_trades: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_trades: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_trade_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Indexes
    __table_args__ = (
        Index("idx_grid_strategy_owner_pair", "api_key", "trading_pair"),
        Index("idx_grid_strategy_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status != "DELETED"

    def __repr__(self) -> str:
        return (
            f"<GridStrategy(id={self.id}, pair={self.trading_pair}, "
            f"side={self.position_side}, status={self.status})>"
        )


class GridTradeHistory(Base):
    """Append-only record of an executed grid fill"""

    __tablename__ = "grid_trade_history"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    # Soft reference: rows outlive their strategy
    grid_id: Mapped[int] = mapped_column(Integer, nullable=False)
    trading_pair: Mapped[str] = mapped_column(String(30), nullable=False)
    api_key: Mapped[str] = mapped_column(String(128), nullable=False)
    position_side: Mapped[str] = mapped_column(position_side_enum, nullable=False)
    trade_direction: Mapped[str] = mapped_column(trade_direction_enum, nullable=False)
    side: Mapped[str] = mapped_column(order_side_enum, nullable=False)
    entry_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    exit_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entry_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    exit_price: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    entry_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exit_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    position_quantity: Mapped[Decimal] = mapped_column(DECIMAL(20, 8), nullable=False)
    grid_price_difference: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    grid_trade_quantity: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    profit_loss: Mapped[Decimal | None] = mapped_column(DECIMAL(20, 8), nullable=True)
    leverage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED", nullable=False)
    execution_type: Mapped[str] = mapped_column(String(20), default="CONFIRMED", nullable=False)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_grid_trade_grid_id", "grid_id"),
        Index("idx_grid_trade_owner_created", "api_key", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<GridTradeHistory(id={self.id}, grid_id={self.grid_id}, "
            f"direction={self.trade_direction}, side={self.side}, qty={self.position_quantity})>"
        )
