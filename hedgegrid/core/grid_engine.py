"""
GridEngine - hedged infinite-grid decision logic.

Decides, for each hedge leg, whether the current price calls for opening
or closing a grid slice, and advances the leg's rise/fall targets after
fills. Holds no I/O; the GridRunner feeds it prices and fills.
"""

from dataclasses import dataclass
from decimal import Decimal

from hedgegrid.core.models import (
    GridConfig,
    IntentAction,
    LegState,
    OpenFill,
    OrderIntent,
    PositionSide,
    floor_to_precision,
)
from hedgegrid.utils.logger import get_logger

logger = get_logger(__name__)

ESTIMATE_FEE_RATE = Decimal("0.001")  # per side, for the logged grid profit estimate


@dataclass(frozen=True)
class FillOutcome:
    """What a fill did to a leg"""

    realized_pnl: Decimal | None
    matched_entry_price: Decimal | None = None
    matched_order_id: str | None = None


class GridEngine:
    """
    Per-strategy grid decision engine.

    Rules per leg, evaluated in order:
    - no open fills on record and below max: open, unless priority-close-on-trend holds
    - LONG: price above rise target closes, price below fall target opens
    - SHORT: price below fall target closes, price above rise target opens
    - at or above max: never open
    - at or below min: open
    """

    def __init__(self, config: GridConfig) -> None:
        self.config = config

    def update_config(self, config: GridConfig) -> None:
        self.config = config

    # =========================================================================
    # Quantities
    # =========================================================================

    def open_quantity(self, leg: LegState) -> Decimal:
        """Open size for the leg, damped by fall prevention after a losing close."""
        base = self.config.open_quantity(leg.side)
        quantity = base / leg.open_divisor if leg.open_divisor > 0 else base
        return floor_to_precision(quantity, self.config.quantity_precision)

    def close_quantity(self, leg: LegState) -> Decimal:
        quantity = self.config.close_quantity(leg.side)
        if leg.quantity > 0:
            quantity = min(quantity, leg.quantity)
        return floor_to_precision(quantity, self.config.quantity_precision)

    def _below_max(self, leg: LegState) -> bool:
        maximum = self.config.max_open_position_quantity
        return maximum is None or leg.quantity < maximum

    # =========================================================================
    # Decisions
    # =========================================================================

    def priority_close_holds(self, price: Decimal, leg: LegState, open_qty: Decimal) -> bool:
        """
        True when the price is trending with the position, so the leg should
        wait for a close instead of adding exposure.
        """
        if not self.config.priority_close_on_trend:
            return False
        if leg.fall_target is None or leg.entry_price is None:
            return False
        if leg.quantity < open_qty:
            return False

        if leg.side == PositionSide.LONG:
            return price >= leg.fall_target and price >= leg.entry_price
        return (
            leg.rise_target is not None
            and price <= leg.rise_target
            and price <= leg.entry_price
        )

    def decide(self, price: Decimal, leg: LegState) -> OrderIntent | None:
        """Return the intent for one leg at this price, if any."""
        cfg = self.config
        open_qty = self.open_quantity(leg)
        below_max = self._below_max(leg)
        min_qty = cfg.min_open_position_quantity or Decimal("0")

        if not leg.has_history and below_max:
            if self.priority_close_holds(price, leg, open_qty):
                logger.debug(
                    "grid_priority_close_skip_open",
                    strategy_id=cfg.strategy_id,
                    side=leg.side.value,
                    price=str(price),
                    quantity=str(leg.quantity),
                )
            else:
                return self._intent(leg, IntentAction.OPEN, open_qty, "initial_open")

        if (leg.rise_target is None or leg.fall_target is None) and leg.last_fill_price:
            self.reset_targets(leg, leg.last_fill_price)

        rise, fall = leg.rise_target, leg.fall_target
        can_close = leg.quantity > 0 and leg.quantity >= min_qty

        if leg.side == PositionSide.LONG:
            if rise is not None and price > rise and can_close:
                return self._intent(leg, IntentAction.CLOSE, self.close_quantity(leg), "price_rise")
            if fall is not None and price < fall and below_max:
                return self._intent(leg, IntentAction.OPEN, open_qty, "price_fall")
        else:
            if fall is not None and price < fall and can_close:
                return self._intent(leg, IntentAction.CLOSE, self.close_quantity(leg), "price_fall")
            if rise is not None and price > rise and below_max:
                return self._intent(leg, IntentAction.OPEN, open_qty, "price_rise")

        if not below_max and leg.quantity > 0:
            return None

        if cfg.min_open_position_quantity and leg.quantity <= cfg.min_open_position_quantity:
            return self._intent(leg, IntentAction.OPEN, open_qty, "below_min_position")

        return None

    def decide_all(self, price: Decimal, legs: dict[PositionSide, LegState]) -> list[OrderIntent]:
        intents = []
        for side in self.config.managed_sides:
            intent = self.decide(price, legs[side])
            if intent is not None:
                intents.append(intent)
        return intents

    def _intent(
        self, leg: LegState, action: IntentAction, quantity: Decimal, reason: str
    ) -> OrderIntent | None:
        if quantity <= 0:
            return None
        return OrderIntent(
            symbol=self.config.trading_pair,
            position_side=leg.side,
            action=action,
            quantity=quantity,
            strategy_id=self.config.strategy_id,
            reason=reason,
        )

    # =========================================================================
    # Fills and targets
    # =========================================================================

    def reset_targets(self, leg: LegState, fill_price: Decimal) -> None:
        """
        Set the next rise/fall targets around a fill price.

        Fall prevention widens the re-entry side by
        c = d * (quantity / max) * coefficient.
        """
        cfg = self.config
        d = cfg.grid_price_difference
        coefficient = cfg.fall_prevention_coefficient or Decimal("0")
        maximum = cfg.max_open_position_quantity
        c = d * (leg.quantity / maximum) * coefficient if maximum else Decimal("0")

        if leg.side == PositionSide.LONG:
            leg.rise_target = fill_price + d
            leg.fall_target = fill_price - d - c
        else:
            leg.fall_target = fill_price - d
            leg.rise_target = fill_price + d + c

    def apply_fill(
        self,
        leg: LegState,
        action: IntentAction,
        price: Decimal,
        quantity: Decimal,
        order_id: str | None = None,
    ) -> FillOutcome:
        """Update a leg after a confirmed fill and return the realized result."""
        outcome = FillOutcome(realized_pnl=None)

        if action == IntentAction.OPEN:
            leg.open_fills.append(OpenFill(price=price, quantity=quantity, order_id=order_id))
            new_quantity = leg.quantity + quantity
            if leg.entry_price and leg.quantity > 0:
                leg.entry_price = (leg.entry_price * leg.quantity + price * quantity) / new_quantity
            else:
                leg.entry_price = price
            leg.quantity = new_quantity
        else:
            matched = leg.open_fills.pop() if leg.open_fills else None
            basis = matched.price if matched else leg.entry_price
            pnl = None
            if basis is not None:
                if leg.side == PositionSide.LONG:
                    pnl = (price - basis) * quantity
                else:
                    pnl = (basis - price) * quantity
            leg.quantity = max(Decimal("0"), leg.quantity - quantity)
            if leg.quantity == 0:
                leg.entry_price = None

            coefficient = self.config.fall_prevention_coefficient or Decimal("0")
            if pnl is not None and pnl < 0 and coefficient > 0:
                leg.open_divisor = Decimal("1") + coefficient
            elif pnl is not None and pnl > 0:
                leg.open_divisor = Decimal("1")

            outcome = FillOutcome(
                realized_pnl=pnl,
                matched_entry_price=basis,
                matched_order_id=matched.order_id if matched else None,
            )

        leg.last_fill_price = price
        self.reset_targets(leg, price)
        return outcome

    def grid_profit_estimate(self, price: Decimal, side: PositionSide) -> Decimal:
        """Profit of the next grid round trip at this price, less 0.1% fee per side."""
        quantity = self.config.close_quantity(side)
        d = self.config.grid_price_difference
        open_cost = price * quantity
        if side == PositionSide.LONG:
            close_value = (price + d) * quantity
            gross = close_value - open_cost
        else:
            close_value = (price - d) * quantity
            gross = open_cost - close_value
        return gross - open_cost * ESTIMATE_FEE_RATE - close_value * ESTIMATE_FEE_RATE
