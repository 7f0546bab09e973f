"""
Strategy lifecycle state machine.

Owns the RUNNING / PAUSED / STOPPED / DELETED transitions of one strategy and
evaluates the per-tick risk rules in order: price limits, stop-loss and
take-profit, pause conditions.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from hedgegrid.core.exceptions import InvalidTransitionError
from hedgegrid.core.models import (
    GridConfig,
    IntentAction,
    LegState,
    OrderIntent,
    PauseReason,
    PositionSide,
    StrategyStatus,
)
from hedgegrid.utils.logger import LoggerMixin

ALLOWED_TRANSITIONS: dict[StrategyStatus, set[StrategyStatus]] = {
    StrategyStatus.CREATED: {StrategyStatus.RUNNING, StrategyStatus.DELETED},
    StrategyStatus.RUNNING: {StrategyStatus.PAUSED, StrategyStatus.STOPPED, StrategyStatus.DELETED},
    StrategyStatus.PAUSED: {StrategyStatus.RUNNING, StrategyStatus.STOPPED, StrategyStatus.DELETED},
    StrategyStatus.STOPPED: {StrategyStatus.DELETED},
    StrategyStatus.DELETED: set(),
}


@dataclass
class Evaluation:
    """Outcome of one tick's rule evaluation"""

    status: StrategyStatus
    can_trade: bool
    reason: str | None = None
    close_all: list[OrderIntent] = field(default_factory=list)
    changed: bool = False


def weighted_entry_price(legs: list[LegState]) -> Decimal | None:
    """Quantity-weighted average entry of legs holding a position."""
    total_qty = Decimal("0")
    total_cost = Decimal("0")
    for leg in legs:
        if leg.quantity > 0 and leg.entry_price:
            total_qty += leg.quantity
            total_cost += leg.quantity * leg.entry_price
    if total_qty <= 0:
        return None
    return total_cost / total_qty


class StrategyStateMachine(LoggerMixin):
    """Lifecycle of one strategy"""

    def __init__(
        self,
        status: StrategyStatus = StrategyStatus.CREATED,
        pause_reason: PauseReason | None = None,
        strategy_id: int | None = None,
    ) -> None:
        self.status = StrategyStatus(status)
        self.pause_reason = PauseReason(pause_reason) if pause_reason else None
        self.stop_reason: str | None = None
        self.strategy_id = strategy_id

        if self.status == StrategyStatus.PAUSED and self.pause_reason is None:
            self.pause_reason = PauseReason.MANUAL

    @property
    def is_terminal(self) -> bool:
        return self.status in (StrategyStatus.STOPPED, StrategyStatus.DELETED)

    @property
    def manually_paused(self) -> bool:
        return self.status == StrategyStatus.PAUSED and self.pause_reason == PauseReason.MANUAL

    def can_transition(self, target: StrategyStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def require_transition(self, target: StrategyStatus) -> None:
        """
        Raise InvalidTransitionError unless the strategy is at ``target`` or
        may move there. Leaves the state untouched.
        """
        if self.status == target:
            return
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot move strategy {self.strategy_id} from {self.status.value} "
                f"to {target.value}"
            )

    def _transition(self, target: StrategyStatus, reason: str | None = None) -> None:
        self.require_transition(target)
        previous = self.status
        self.status = target
        self.logger.info(
            "strategy_transition",
            strategy_id=self.strategy_id,
            from_status=previous.value,
            to_status=target.value,
            reason=reason,
        )

    # =========================================================================
    # Explicit transitions
    # =========================================================================

    def start(self) -> None:
        """Promote CREATED to RUNNING."""
        if self.status == StrategyStatus.RUNNING:
            return
        self._transition(StrategyStatus.RUNNING, "created")

    def pause(self, reason: PauseReason = PauseReason.MANUAL) -> bool:
        """
        Pause the strategy. Returns False when it was already paused.

        A manual pause on an auto-paused strategy pins it so it will not
        auto-resume.
        """
        if self.status == StrategyStatus.PAUSED:
            if reason == PauseReason.MANUAL:
                self.pause_reason = PauseReason.MANUAL
            return False
        self._transition(StrategyStatus.PAUSED, reason.value)
        self.pause_reason = reason
        return True

    def resume(self) -> bool:
        """Resume a paused strategy. Returns False when it was already running."""
        if self.status == StrategyStatus.RUNNING:
            return False
        self._transition(StrategyStatus.RUNNING, "resume")
        self.pause_reason = None
        return True

    def stop(self, reason: str) -> bool:
        if self.status == StrategyStatus.STOPPED:
            return False
        self._transition(StrategyStatus.STOPPED, reason)
        self.stop_reason = reason
        self.pause_reason = None
        return True

    def delete(self) -> bool:
        if self.status == StrategyStatus.DELETED:
            return False
        self._transition(StrategyStatus.DELETED, "deleted")
        self.pause_reason = None
        return True

    # =========================================================================
    # Per-tick evaluation
    # =========================================================================

    def evaluate(
        self,
        price: Decimal,
        config: GridConfig,
        legs: dict[PositionSide, LegState],
    ) -> Evaluation:
        """Apply the risk rules for a tick and report whether intents may be emitted."""
        if self.is_terminal or self.status == StrategyStatus.CREATED:
            return Evaluation(status=self.status, can_trade=False)

        # Manual pause ignores every rule until resumed
        if self.manually_paused:
            return Evaluation(status=self.status, can_trade=False, reason="manual_pause")

        # 1. Hard price limits
        if config.lt_limitation_price is not None and price <= config.lt_limitation_price:
            return self._stopped("lower_price_limit", price)
        if config.gt_limitation_price is not None and price >= config.gt_limitation_price:
            return self._stopped("upper_price_limit", price)

        # 2. Stop-loss / take-profit
        managed = [legs[side] for side in config.managed_sides if side in legs]
        exit_reason = self._exit_reason(price, config)
        if exit_reason is not None:
            evaluation = self._stopped(exit_reason, price)
            evaluation.close_all = [
                OrderIntent(
                    symbol=config.trading_pair,
                    position_side=leg.side,
                    action=IntentAction.CLOSE,
                    quantity=leg.quantity,
                    strategy_id=config.strategy_id,
                    reason=exit_reason,
                )
                for leg in managed
                if leg.quantity > 0
            ]
            return evaluation

        # 3. Pause conditions against the open price
        open_price = weighted_entry_price(managed)
        pause_reason = None
        if open_price is not None:
            if config.is_above_open_price and price >= open_price:
                pause_reason = "price_above_open"
            elif config.is_below_open_price and price <= open_price:
                pause_reason = "price_below_open"

        if pause_reason is not None:
            changed = self.pause(PauseReason.AUTO)
            return Evaluation(
                status=self.status, can_trade=False, reason=pause_reason, changed=changed
            )

        # 4. Back to running (auto pauses only)
        changed = False
        if self.status == StrategyStatus.PAUSED:
            changed = self.resume()
        return Evaluation(status=self.status, can_trade=True, changed=changed)

    @staticmethod
    def _exit_reason(price: Decimal, config: GridConfig) -> str | None:
        sl = config.stop_loss_price
        tp = config.take_profit_price
        if config.position_side == PositionSide.SHORT:
            if sl is not None and price >= sl:
                return "stop_loss"
            if tp is not None and price <= tp:
                return "take_profit"
        else:
            if sl is not None and price <= sl:
                return "stop_loss"
            if tp is not None and price >= tp:
                return "take_profit"
        return None

    def _stopped(self, reason: str, price: Decimal) -> Evaluation:
        self.stop(reason)
        self.logger.warning(
            "strategy_stopped_by_rule",
            strategy_id=self.strategy_id,
            reason=reason,
            price=str(price),
        )
        return Evaluation(status=self.status, can_trade=False, reason=reason, changed=True)
