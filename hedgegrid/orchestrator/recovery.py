"""
Startup recovery of running strategies.

Strategies that were RUNNING, or paused by the price guard rather than
by their owner, when the process stopped are restarted at a bounded rate
so a large book does not hit the exchange rate limits all at once.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from hedgegrid.api.client_pool import Credential
from hedgegrid.core.models import PositionSide
from hedgegrid.database.manager import DatabaseManager
from hedgegrid.database.models import GridStrategy
from hedgegrid.orchestrator.strategy_service import GridStrategyService
from hedgegrid.utils.logger import LoggerMixin

CredentialProvider = Callable[[str], Awaitable[Credential | None]]

_VALID_SIDES = {side.value for side in PositionSide}


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass"""

    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float = 0.0
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> str:
        attempted = self.total - self.skipped
        if attempted <= 0:
            return "0.00%"
        return f"{self.success / attempted * 100:.2f}%"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration": round(self.duration, 3),
            "success_rate": self.success_rate,
            "failures": list(self.failures),
        }


class StrategyRecovery(LoggerMixin):
    """
    Restores persisted strategies through the service.

    Args:
        db: strategy repository
        service: strategy service that owns the runners
        credential_provider: async callable returning the credential for an api key
        strategies_per_second: strategies restored per batch
        batch_delay: seconds between batches
    """

    def __init__(
        self,
        db: DatabaseManager,
        service: GridStrategyService,
        credential_provider: CredentialProvider,
        strategies_per_second: int = 2,
        batch_delay: float = 1.0,
    ) -> None:
        self._db = db
        self._service = service
        self._credential_provider = credential_provider
        self.strategies_per_second = max(1, strategies_per_second)
        self.batch_delay = batch_delay

    async def restore(self) -> RecoveryReport:
        started = time.monotonic()
        report = RecoveryReport()

        strategies = await self._db.get_recoverable_strategies()
        report.total = len(strategies)
        self.logger.info("strategy_recovery_started", total=report.total)

        candidates: list[tuple[GridStrategy, Credential]] = []
        for strategy in strategies:
            if strategy.position_side not in _VALID_SIDES:
                report.skipped += 1
                self.logger.warning(
                    "strategy_recovery_skipped",
                    strategy_id=strategy.id,
                    reason="invalid_position_side",
                    position_side=strategy.position_side,
                )
                continue

            credential = await self._credential_provider(strategy.api_key)
            if credential is None:
                report.skipped += 1
                self.logger.warning(
                    "strategy_recovery_skipped",
                    strategy_id=strategy.id,
                    reason="no_credential",
                )
                continue
            candidates.append((strategy, credential))

        for offset in range(0, len(candidates), self.strategies_per_second):
            if offset > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            batch = candidates[offset : offset + self.strategies_per_second]
            outcomes = await asyncio.gather(
                *(self._service.restore_strategy(s, c) for s, c in batch),
                return_exceptions=True,
            )
            for (strategy, _), outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    report.failed += 1
                    report.failures.append({"strategy_id": strategy.id, "error": str(outcome)})
                    self.logger.error(
                        "strategy_recovery_failed",
                        strategy_id=strategy.id,
                        trading_pair=strategy.trading_pair,
                        error=str(outcome),
                    )
                else:
                    report.success += 1

        report.duration = time.monotonic() - started
        self.logger.info("strategy_recovery_completed", **report.to_dict())
        return report
