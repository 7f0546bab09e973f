"""
Database Manager with async operations and connection pooling.
Provides the strategy repository used by the service and the grid runners.
"""

import asyncio
import math
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hedgegrid.core.exceptions import DuplicateStrategyError, NotFoundError, PersistenceError
from hedgegrid.database.models import Base, GridStrategy, GridTradeHistory
from hedgegrid.utils.logger import LoggerMixin

T = TypeVar("T", bound=Base)
ItemT = TypeVar("ItemT")


@dataclass
class Page(Generic[ItemT]):
    """One page of a filtered query"""

    items: list[ItemT]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "total_pages": self.total_pages,
            "page": self.page,
            "page_size": self.page_size,
            "items": list(self.items),
        }


def _sides_conflict(existing: str, requested: str) -> bool:
    # LONG and SHORT on the same pair are separate strategies; BOTH owns the pair
    return existing == "BOTH" or requested == "BOTH" or existing == requested


class DatabaseManager(LoggerMixin):
    """
    Async database manager with connection pooling.

    Features:
    - Async SQLAlchemy with asyncpg (aiosqlite for tests)
    - Context managers for sessions that commit or roll back
    - Strategy repository with the one-active-strategy-per-pair rule
    - Atomic fill recording (history row + runtime state)
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
        echo: bool = False,
    ) -> None:
        """
        Initialize Database Manager.

        Args:
            database_url: Connection URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)
            pool_size: Number of connections to maintain
            max_overflow: Maximum overflow connections beyond pool_size
            pool_pre_ping: Enable connection health checks
            echo: Whether to log all SQL statements
        """
        self.database_url = database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_pre_ping = pool_pre_ping
        self._echo = echo
        self._create_locks: dict[tuple[str, str], asyncio.Lock] = {}

        self.logger.info(
            "database_manager_created",
            pool_size=pool_size,
            max_overflow=max_overflow,
        )

    @property
    def engine(self) -> AsyncEngine | None:
        return self._engine

    async def initialize(self) -> None:
        """Initialize database engine and session factory"""
        try:
            if self.database_url.startswith("sqlite"):
                # One shared connection keeps an in-memory database alive across sessions
                self._engine = create_async_engine(
                    self.database_url,
                    echo=self._echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                self._engine = create_async_engine(
                    self.database_url,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                    pool_pre_ping=self._pool_pre_ping,
                    echo=self._echo,
                )

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            self.logger.info("database_engine_initialized")

        except Exception as e:
            self.logger.error("database_initialize_failed", error=str(e))
            raise

    async def close(self) -> None:
        """Close database connections"""
        if self._engine:
            await self._engine.dispose()
            self.logger.info("database_connections_closed")

    async def health_check(self) -> bool:
        """
        Perform a health check on the database connection.

        Returns:
            True if database is accessible, False otherwise
        """
        try:
            async with self.session() as session:
                await session.execute(select(1))
            return True
        except Exception as e:
            self.logger.error("database_health_check_failed", error=str(e))
            return False

    async def create_all_tables(self) -> None:
        """Create all tables in the database"""
        if not self._engine:
            raise RuntimeError("Database not initialized")

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            self.logger.info("database_tables_created")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for database sessions.

        Commits on success and rolls back on any error. SQLAlchemy errors
        surface as PersistenceError.

        Usage:
            async with db.session() as session:
                # Use session
                pass
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                self.logger.error("database_transaction_failed", error=str(e))
                raise PersistenceError(str(e)) from e
            except Exception:
                await session.rollback()
                raise

    # Strategy Operations

    def _create_lock(self, api_key: str, trading_pair: str) -> asyncio.Lock:
        return self._create_locks.setdefault((api_key, trading_pair), asyncio.Lock())

    async def create_strategy(self, strategy: GridStrategy) -> GridStrategy:
        """
        Insert a strategy unless an active one already owns the pair.

        The duplicate check and the insert share one transaction, and
        creates for the same owner and pair are serialized: in process by
        a lock held until commit, across processes on PostgreSQL by a
        transaction-scoped advisory lock.
        """
        lock = self._create_lock(strategy.api_key, strategy.trading_pair)
        async with lock, self.session() as session:
            if self._engine is not None and self._engine.dialect.name == "postgresql":
                await session.execute(
                    select(
                        func.pg_advisory_xact_lock(
                            func.hashtext(f"{strategy.api_key}:{strategy.trading_pair}")
                        )
                    )
                )
            result = await session.execute(
                select(GridStrategy).where(
                    GridStrategy.api_key == strategy.api_key,
                    GridStrategy.trading_pair == strategy.trading_pair,
                    GridStrategy.status != "DELETED",
                )
            )
            requested_side = strategy.position_side or "BOTH"
            for existing in result.scalars():
                if _sides_conflict(existing.position_side, requested_side):
                    raise DuplicateStrategyError(
                        f"Active strategy {existing.id} already trades "
                        f"{strategy.trading_pair} ({existing.position_side})"
                    )

            session.add(strategy)
            await session.flush()
            await session.refresh(strategy)

        self.logger.info(
            "strategy_created",
            strategy_id=strategy.id,
            trading_pair=strategy.trading_pair,
            position_side=strategy.position_side,
        )
        return strategy

    async def get_strategy(
        self, strategy_id: int, api_key: str | None = None, include_deleted: bool = False
    ) -> GridStrategy | None:
        """Get a strategy by ID, optionally scoped to its owner"""
        async with self.session() as session:
            query = select(GridStrategy).where(GridStrategy.id == strategy_id)
            if api_key is not None:
                query = query.where(GridStrategy.api_key == api_key)
            if not include_deleted:
                query = query.where(GridStrategy.status != "DELETED")
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def update_strategy(
        self, strategy_id: int, values: dict[str, Any], api_key: str | None = None
    ) -> GridStrategy:
        """Apply column values to an active strategy and return the fresh row"""
        async with self.session() as session:
            query = select(GridStrategy).where(
                GridStrategy.id == strategy_id,
                GridStrategy.status != "DELETED",
            )
            if api_key is not None:
                query = query.where(GridStrategy.api_key == api_key)
            strategy = (await session.execute(query)).scalar_one_or_none()
            if strategy is None:
                raise NotFoundError(f"Strategy {strategy_id} not found")

            for key, value in values.items():
                setattr(strategy, key, value)
            strategy.updated_at = datetime.now(timezone.utc)
            await session.flush()
            await session.refresh(strategy)
            return strategy

    async def soft_delete_strategies(self, api_key: str, strategy_ids: list[int]) -> int:
        """Mark strategies DELETED. History rows are kept."""
        if not strategy_ids:
            return 0
        now = datetime.now(timezone.utc)
        async with self.session() as session:
            result = await session.execute(
                update(GridStrategy)
                .where(
                    GridStrategy.api_key == api_key,
                    GridStrategy.id.in_(strategy_ids),
                    GridStrategy.status != "DELETED",
                )
                .values(status="DELETED", deleted_at=now, updated_at=now)
            )
            deleted = result.rowcount or 0

        self.logger.info("strategies_deleted", count=deleted, ids=strategy_ids)
        return deleted

    async def list_strategies(
        self,
        api_key: str,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[GridStrategy]:
        """
        Filtered, paginated strategies of one owner, newest id first.

        Filters: id, ids, status, trading_pair, position_side, start_time, end_time.
        DELETED rows only appear when asked for by status.
        """
        filters = filters or {}
        conditions = [GridStrategy.api_key == api_key]

        if filters.get("id") is not None:
            conditions.append(GridStrategy.id == filters["id"])
        if filters.get("ids"):
            conditions.append(GridStrategy.id.in_(filters["ids"]))
        if filters.get("status"):
            conditions.append(GridStrategy.status == filters["status"])
        else:
            conditions.append(GridStrategy.status != "DELETED")
        if filters.get("trading_pair"):
            conditions.append(GridStrategy.trading_pair == filters["trading_pair"])
        if filters.get("position_side"):
            conditions.append(GridStrategy.position_side == filters["position_side"])
        if filters.get("start_time"):
            conditions.append(GridStrategy.created_at >= filters["start_time"])
        if filters.get("end_time"):
            conditions.append(GridStrategy.created_at <= filters["end_time"])

        return await self._paginate(
            GridStrategy, conditions, [GridStrategy.id.desc()], page, page_size
        )

    async def get_recoverable_strategies(self) -> list[GridStrategy]:
        """
        Strategies a restart must bring back, oldest first.

        RUNNING rows plus rows the price guard paused on its own; manually
        paused and stopped rows stay down.
        """
        async with self.session() as session:
            result = await session.execute(
                select(GridStrategy)
                .where(
                    or_(
                        and_(GridStrategy.status == "RUNNING", GridStrategy.paused.is_(False)),
                        and_(
                            GridStrategy.status == "PAUSED",
                            GridStrategy.paused.is_(False),
                            GridStrategy.pause_reason == "auto",
                        ),
                    )
                )
                .order_by(GridStrategy.id.asc())
            )
            return list(result.scalars().all())

    async def save_runtime_state(self, strategy_id: int, state: dict[str, Any]) -> None:
        """Persist runner state columns (targets, totals, counters)"""
        async with self.session() as session:
            await session.execute(
                update(GridStrategy)
                .where(GridStrategy.id == strategy_id)
                .values(**state, updated_at=datetime.now(timezone.utc))
            )

    async def record_error(self, strategy_id: int, message: str) -> None:
        """Bump the error counter and remember the last error"""
        async with self.session() as session:
            await session.execute(
                update(GridStrategy)
                .where(GridStrategy.id == strategy_id)
                .values(
                    error_count=GridStrategy.error_count + 1,
                    last_error_message=message[:2000],
                    last_error_time=datetime.now(timezone.utc),
                )
            )

    # Trade History Operations

    async def record_fill(
        self,
        history: GridTradeHistory,
        state: dict[str, Any],
    ) -> GridTradeHistory:
        """
        Append a trade history row and update the strategy's runtime state
        in a single transaction.
        """
        async with self.session() as session:
            session.add(history)
            await session.execute(
                update(GridStrategy)
                .where(GridStrategy.id == history.grid_id)
                .values(**state, updated_at=datetime.now(timezone.utc))
            )
            await session.flush()
            await session.refresh(history)

        self.logger.debug(
            "fill_recorded",
            grid_id=history.grid_id,
            direction=history.trade_direction,
            quantity=str(history.position_quantity),
        )
        return history

    async def list_trade_history(
        self,
        api_key: str,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[GridTradeHistory]:
        """
        Filtered, paginated fills of one owner, newest first.

        Filters: grid_id, trading_pair, trade_direction, start_time, end_time.
        """
        filters = filters or {}
        conditions = [GridTradeHistory.api_key == api_key]

        if filters.get("grid_id") is not None:
            conditions.append(GridTradeHistory.grid_id == filters["grid_id"])
        if filters.get("trading_pair"):
            conditions.append(GridTradeHistory.trading_pair == filters["trading_pair"])
        if filters.get("trade_direction"):
            conditions.append(GridTradeHistory.trade_direction == filters["trade_direction"])
        if filters.get("start_time"):
            conditions.append(GridTradeHistory.created_at >= filters["start_time"])
        if filters.get("end_time"):
            conditions.append(GridTradeHistory.created_at <= filters["end_time"])

        return await self._paginate(
            GridTradeHistory,
            conditions,
            [GridTradeHistory.created_at.desc(), GridTradeHistory.id.desc()],
            page,
            page_size,
        )

    async def _paginate(
        self,
        model: type[T],
        conditions: list[Any],
        order_by: list[Any],
        page: int,
        page_size: int,
    ) -> Page[T]:
        page = max(1, page)
        page_size = max(1, page_size)
        async with self.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(model).where(*conditions)
            )
            result = await session.execute(
                select(model)
                .where(*conditions)
                .order_by(*order_by)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list(result.scalars().all())

        return Page(items=items, total=total or 0, page=page, page_size=page_size)
