"""
GridStrategyService - the async lifecycle surface of the engine.

Creates, updates, pauses, resumes and deletes strategies, owns their
GridRunner tasks, and passes batch order operations through to the
HedgeOrderExecutor. Credentials are supplied per call.
"""

import asyncio
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hedgegrid.api.client_pool import Credential, ExchangeClientPool
from hedgegrid.api.exceptions import CredentialError
from hedgegrid.config.schemas import (
    GridStrategyCreate,
    GridStrategyUpdate,
    LeverageSettingModel,
    OptimizeRequest,
)
from hedgegrid.core.exceptions import NotFoundError, ValidationError
from hedgegrid.core.grid_runner import GridRunner
from hedgegrid.core.hedge_executor import HedgeOrderExecutor
from hedgegrid.core.models import (
    BatchResult,
    GridConfig,
    ImbalancedHedge,
    LeverageBatchResult,
    LeverageSetting,
    OrderIntent,
    PauseReason,
    StrategyStatus,
)
from hedgegrid.core.price_feed import PriceFeedSubscriber
from hedgegrid.core.state_machine import StrategyStateMachine
from hedgegrid.database.manager import DatabaseManager, Page
from hedgegrid.database.models import GridStrategy, GridTradeHistory
from hedgegrid.optimizer import GridParameterOptimizer, OptimizationResult
from hedgegrid.utils.logger import LoggerMixin

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _validate(schema: type[SchemaT], payload: Any) -> SchemaT:
    """Validate a payload, raising the engine's ValidationError."""
    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


def _column_values(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


class GridStrategyService(LoggerMixin):
    """
    Strategy lifecycle and batch order operations.

    Args:
        db: strategy repository
        client_pool: per-credential exchange clients
        price_feed: shared price subscription registry
        executor: batched hedge order executor
        optimizer: grid parameter optimizer
        runner_options: keyword arguments for every GridRunner
    """

    def __init__(
        self,
        db: DatabaseManager,
        client_pool: ExchangeClientPool,
        price_feed: PriceFeedSubscriber,
        executor: HedgeOrderExecutor,
        optimizer: GridParameterOptimizer | None = None,
        runner_options: dict[str, Any] | None = None,
    ) -> None:
        self._db = db
        self._pool = client_pool
        self._feed = price_feed
        self._executor = executor
        self._optimizer = optimizer or GridParameterOptimizer()
        self._runner_options = runner_options or {}
        self._runners: dict[int, GridRunner] = {}

    @property
    def runners(self) -> dict[int, GridRunner]:
        return dict(self._runners)

    # =========================================================================
    # Strategy lifecycle
    # =========================================================================

    async def create(
        self, credential: Credential, config: dict[str, Any] | GridStrategyCreate
    ) -> GridStrategy:
        """
        Validate, persist with status RUNNING and start a runner.

        Raises:
            ValidationError: invalid configuration
            DuplicateStrategyError: an active strategy already trades the pair
            CredentialError: the exchange rejected the credential at startup

        A strategy whose runner fails to start is left STOPPED with the
        failure as its stop reason.
        """
        payload = _validate(GridStrategyCreate, config)
        strategy = GridStrategy(
            api_key=credential.api_key,
            status=StrategyStatus.RUNNING.value,
            paused=False,
            **_column_values(payload.model_dump()),
        )
        strategy = await self._db.create_strategy(strategy)

        try:
            await self._start_runner(strategy, credential)
        except CredentialError as e:
            await self._db.update_strategy(
                strategy.id,
                {"status": StrategyStatus.STOPPED.value, "stop_reason": "credential_rejected"},
            )
            self.logger.error(
                "strategy_start_rejected",
                strategy_id=strategy.id,
                api_key=credential.masked_key,
                error=str(e),
            )
            raise
        except Exception as e:
            await self._db.update_strategy(
                strategy.id,
                {"status": StrategyStatus.STOPPED.value, "stop_reason": "startup_failed"},
            )
            self.logger.error(
                "strategy_start_failed",
                strategy_id=strategy.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        self.logger.info(
            "strategy_started",
            strategy_id=strategy.id,
            trading_pair=strategy.trading_pair,
            position_side=strategy.position_side,
            api_key=credential.masked_key,
        )
        return strategy

    async def update(
        self,
        credential: Credential,
        strategy_id: int,
        partial: dict[str, Any] | GridStrategyUpdate,
    ) -> GridStrategy:
        """
        Apply the provided fields, revalidate the merged configuration and
        hot-swap it into the running runner.
        """
        changes = _validate(GridStrategyUpdate, partial).model_dump(exclude_unset=True)
        existing = await self._get_owned(credential, strategy_id)

        merged = {
            name: getattr(existing, name)
            for name in GridStrategyCreate.model_fields
            if hasattr(existing, name)
        }
        merged.update(changes)
        validated = _column_values(_validate(GridStrategyCreate, merged).model_dump())
        values = {name: validated[name] for name in changes}

        strategy = await self._db.update_strategy(strategy_id, values, api_key=credential.api_key)

        runner = self._runners.get(strategy_id)
        if runner is not None:
            runner.update_config(GridConfig.from_strategy(strategy))

        self.logger.info("strategy_updated", strategy_id=strategy_id, fields=sorted(values))
        return strategy

    async def pause(self, credential: Credential, strategy_id: int) -> GridStrategy:
        """
        Manually pause. Pausing a paused strategy is a no-op.

        The row is written before the runner's state changes, so a failed
        write leaves the strategy running.
        """
        strategy = await self._get_owned(credential, strategy_id)
        machine = self._state_machine(strategy)
        machine.require_transition(StrategyStatus.PAUSED)

        strategy = await self._db.update_strategy(
            strategy_id,
            {
                "status": StrategyStatus.PAUSED.value,
                "paused": True,
                "pause_reason": PauseReason.MANUAL.value,
            },
            api_key=credential.api_key,
        )
        machine.pause(PauseReason.MANUAL)
        self.logger.info("strategy_paused", strategy_id=strategy_id)
        return strategy

    async def resume(self, credential: Credential, strategy_id: int) -> GridStrategy:
        """
        Resume a paused strategy. Resuming a running strategy is a no-op.

        Raises:
            InvalidTransitionError: the strategy is STOPPED
        """
        strategy = await self._get_owned(credential, strategy_id)
        machine = self._state_machine(strategy)
        machine.require_transition(StrategyStatus.RUNNING)

        strategy = await self._db.update_strategy(
            strategy_id,
            {"status": StrategyStatus.RUNNING.value, "paused": False, "pause_reason": None},
            api_key=credential.api_key,
        )
        machine.resume()
        if strategy_id not in self._runners:
            await self._start_runner(strategy, credential)

        self.logger.info("strategy_resumed", strategy_id=strategy_id)
        return strategy

    async def delete(self, credential: Credential, strategy_ids: list[int]) -> int:
        """Soft delete strategies, stopping their runners. Trade history is kept."""
        for strategy_id in strategy_ids:
            runner = self._runners.get(strategy_id)
            if runner is None or runner.config.api_key != credential.api_key:
                continue
            del self._runners[strategy_id]
            await runner.stop()

        return await self._db.soft_delete_strategies(credential.api_key, list(strategy_ids))

    async def restore_strategy(self, strategy: GridStrategy, credential: Credential) -> GridRunner:
        """Start a runner for a persisted strategy (startup recovery)."""
        if strategy.id in self._runners:
            return self._runners[strategy.id]
        return await self._start_runner(strategy, credential)

    async def get_status(self, strategy_id: int) -> dict[str, Any]:
        runner = self._runners.get(strategy_id)
        if runner is not None:
            return runner.get_status()

        strategy = await self._db.get_strategy(strategy_id)
        if strategy is None:
            raise NotFoundError(f"Strategy {strategy_id} not found")
        return {
            "strategy_id": strategy.id,
            "symbol": strategy.trading_pair,
            "position_side": strategy.position_side,
            "status": strategy.status,
            "pause_reason": strategy.pause_reason,
            "stop_reason": strategy.stop_reason,
            "running": False,
        }

    async def shutdown(self) -> None:
        """Stop every runner; persisted statuses are left for recovery."""
        runners = list(self._runners.values())
        self._runners.clear()
        await asyncio.gather(*(runner.stop() for runner in runners), return_exceptions=True)
        await self._executor.shutdown()
        self.logger.info("strategy_service_shutdown", runners=len(runners))

    async def _start_runner(self, strategy: GridStrategy, credential: Credential) -> GridRunner:
        runner = GridRunner.from_strategy(
            strategy,
            credential,
            self._feed,
            self._executor,
            self._db,
            **self._runner_options,
        )
        await runner.start()
        self._runners[strategy.id] = runner
        return runner

    async def _get_owned(self, credential: Credential, strategy_id: int) -> GridStrategy:
        strategy = await self._db.get_strategy(strategy_id, api_key=credential.api_key)
        if strategy is None:
            raise NotFoundError(f"Strategy {strategy_id} not found")
        return strategy

    def _state_machine(self, strategy: GridStrategy) -> StrategyStateMachine:
        runner = self._runners.get(strategy.id)
        if runner is not None:
            return runner.state
        return StrategyStateMachine(
            status=StrategyStatus(strategy.status),
            pause_reason=PauseReason(strategy.pause_reason) if strategy.pause_reason else None,
            strategy_id=strategy.id,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_strategies(
        self,
        credential: Credential,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[GridStrategy]:
        return await self._db.list_strategies(
            credential.api_key, _column_values(filters or {}), page, page_size
        )

    async def list_trade_history(
        self,
        credential: Credential,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[GridTradeHistory]:
        return await self._db.list_trade_history(
            credential.api_key, _column_values(filters or {}), page, page_size
        )

    # =========================================================================
    # Optimizer
    # =========================================================================

    async def optimize_parameters(
        self,
        credential: Credential,
        symbol: str,
        interval: str,
        total_capital: float,
        optimize_target: str = "profit",
        min_trade_value: float = 20,
        max_trade_value: float = 100,
        enable_boundary_defense: bool = False,
    ) -> OptimizationResult:
        request = _validate(
            OptimizeRequest,
            {
                "symbol": symbol,
                "interval": interval,
                "total_capital": total_capital,
                "optimize_target": optimize_target,
                "min_trade_value": min_trade_value,
                "max_trade_value": max_trade_value,
                "enable_boundary_defense": enable_boundary_defense,
            },
        )
        self._optimizer.validate_request(
            request.interval,
            request.total_capital,
            request.optimize_target,
            request.min_trade_value,
            request.max_trade_value,
        )
        client = await self._pool.get(credential)
        return await self._optimizer.optimize(client, **request.model_dump())

    # =========================================================================
    # Executor pass-throughs
    # =========================================================================

    async def build_positions(
        self, credential: Credential, intents: list[OrderIntent]
    ) -> BatchResult:
        return await self._executor.build_positions(credential, intents)

    async def close_positions(
        self, credential: Credential, intents: list[OrderIntent], mode: str = "quantity"
    ) -> BatchResult:
        return await self._executor.close_positions(credential, intents, mode)

    async def set_leverage(
        self,
        credential: Credential,
        settings: list[LeverageSetting | dict[str, Any]],
        delay: float | None = None,
    ) -> LeverageBatchResult:
        parsed = []
        for item in settings:
            if isinstance(item, LeverageSetting):
                parsed.append(item)
            else:
                model = _validate(LeverageSettingModel, item)
                parsed.append(LeverageSetting(symbol=model.symbol, leverage=model.leverage))
        return await self._executor.set_leverage(credential, parsed, delay)

    async def inspect_hedge_symmetry(self, credential: Credential) -> list[ImbalancedHedge]:
        return await self._executor.inspect_hedge_symmetry(credential)
