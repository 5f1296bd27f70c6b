"""
Threshold rebalancing.

Compares each holding's actual weight with its target and emits a corrective
market order for every holding that drifted further than the threshold.
One pass only: orders are sized from the current valuation and never
re-evaluated after execution.

Classes:
    RebalancePlan: Orders and amounts of one rebalance
    RebalanceRecommendation: Per-holding preview row
    RebalancePreview: Preview rows plus totals

Example:
    >>> holdings = [TargetHolding("TCS", 10, 50), TargetHolding("INFY", 40, 50)]
    >>> prices = {"NSE:TCS": 4000.0, "NSE:INFY": 1500.0}
    >>> total = calculate_portfolio_value(holdings, prices)
    >>> plan = calculate_rebalance_orders(holdings, prices, total, threshold=5)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from stockbasket.execution.broker_interface import (
    Order,
    OrderType,
    ProductType,
    TargetHolding,
    TransactionType,
)
from stockbasket.execution.exceptions import ValidationError
from stockbasket.portfolio.sizing import resolve_price
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 5.0


class RebalanceAction(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass
class RebalancePlan:
    """
    Corrective orders for one rebalance.

    Attributes:
        orders: SELL orders for over-weight and BUY orders for under-weight holdings
        buy_amount: Value of the BUY orders
        sell_amount: Value of the SELL orders (after capping at the held quantity)
    """

    orders: List[Order] = field(default_factory=list)
    buy_amount: float = 0.0
    sell_amount: float = 0.0

    @property
    def net_amount(self) -> float:
        """Cash needed (positive) or released (negative)."""
        return self.buy_amount - self.sell_amount


@dataclass
class RebalanceRecommendation:
    """Preview of one holding."""

    symbol: str
    exchange: str
    target_weight: float
    actual_weight: float
    deviation: float
    action: RebalanceAction
    quantity: int
    amount: float
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "targetWeight": self.target_weight,
            "actualWeight": self.actual_weight,
            "deviation": self.deviation,
            "action": self.action.value,
            "quantity": self.quantity,
            "amount": self.amount,
            "price": self.price,
        }


@dataclass
class RebalancePreview:
    """Preview rows sorted by |deviation| descending, with totals."""

    total_value: float
    threshold: float
    recommendations: List[RebalanceRecommendation] = field(default_factory=list)
    buy_amount: float = 0.0
    sell_amount: float = 0.0

    @property
    def net_amount(self) -> float:
        return self.buy_amount - self.sell_amount

    @property
    def rebalance_needed(self) -> bool:
        return any(r.action != RebalanceAction.HOLD for r in self.recommendations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalValue": self.total_value,
            "threshold": self.threshold,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "summary": {
                "buyAmount": self.buy_amount,
                "sellAmount": self.sell_amount,
                "netAmount": self.net_amount,
                "rebalanceNeeded": self.rebalance_needed,
            },
        }


def _valuation_price(holding: TargetHolding, prices: Mapping[str, Any]) -> Optional[float]:
    price = resolve_price(prices, holding.key)
    if price is None and holding.average_price:
        return holding.average_price
    return price


def calculate_portfolio_value(holdings: Sequence[TargetHolding], prices: Mapping[str, Any]) -> float:
    """
    Current value of the holdings.

    Each holding is valued at its last price, falling back to its average
    buy price when no quote is available.

    Args:
        holdings: Held basket stocks
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float

    Returns:
        Total value
    """
    total = 0.0
    for holding in holdings:
        price = _valuation_price(holding, prices)
        if price is None:
            logger.warning(f"No price or average price for {holding.key}; valued at 0")
            continue
        total += holding.quantity * price
    return total


def _check_inputs(holdings: Sequence[TargetHolding], total_value: float, threshold: float) -> None:
    if total_value <= 0:
        raise ValidationError(f"Portfolio value must be positive, got {total_value}")
    if threshold < 0:
        raise ValidationError(f"Threshold must not be negative, got {threshold}")
    for holding in holdings:
        if holding.target_weight <= 0:
            raise ValidationError(
                f"Target weight for {holding.symbol} must be positive, got {holding.target_weight}"
            )


def calculate_rebalance_orders(
    holdings: Sequence[TargetHolding],
    prices: Mapping[str, Any],
    total_value: float,
    threshold: float = DEFAULT_THRESHOLD,
) -> RebalancePlan:
    """
    Calculate corrective orders for drifted holdings.

    For each priced holding: actual = value / total * 100 and
    deviation = actual - target. Holdings within the threshold are left
    alone. Otherwise quantity = floor(|target value - current value| / price);
    over-weight holdings SELL min(quantity, held), under-weight ones BUY.

    Args:
        holdings: Held basket stocks with target weights
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float
        total_value: Portfolio value the weights are measured against
        threshold: Tolerated deviation in percentage points

    Returns:
        RebalancePlan

    Raises:
        ValidationError: Non-positive total value or target weight
    """
    _check_inputs(holdings, total_value, threshold)
    plan = RebalancePlan()

    for holding in holdings:
        price = resolve_price(prices, holding.key)
        if price is None:
            logger.warning(f"No price for {holding.key}, skipping")
            continue

        current_value = holding.quantity * price
        deviation = current_value / total_value * 100 - holding.target_weight
        if abs(deviation) <= threshold:
            continue

        target_value = holding.target_weight / 100 * total_value
        quantity = math.floor(abs(target_value - current_value) / price)
        if quantity <= 0:
            continue

        if deviation > 0:
            quantity = min(quantity, holding.quantity)
            if quantity <= 0:
                continue
            side = TransactionType.SELL
            plan.sell_amount += quantity * price
        else:
            side = TransactionType.BUY
            plan.buy_amount += quantity * price

        plan.orders.append(
            Order(
                symbol=holding.symbol,
                exchange=holding.exchange,
                transaction_type=side,
                quantity=quantity,
                order_type=OrderType.MARKET,
                product=ProductType.CNC,
            )
        )

    logger.debug(
        f"Rebalance: {len(plan.orders)} orders, buy {plan.buy_amount:.2f}, "
        f"sell {plan.sell_amount:.2f}"
    )
    return plan


def preview_rebalance(
    holdings: Sequence[TargetHolding],
    prices: Mapping[str, Any],
    threshold: float = DEFAULT_THRESHOLD,
) -> RebalancePreview:
    """
    Per-holding rebalance recommendations without placing anything.

    Uses the same rules as calculate_rebalance_orders, but values holdings
    with the average-price fallback and reports every holding, HOLD included.

    Args:
        holdings: Held basket stocks with target weights
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float
        threshold: Tolerated deviation in percentage points

    Returns:
        RebalancePreview sorted by |deviation| descending
    """
    total_value = calculate_portfolio_value(holdings, prices)
    _check_inputs(holdings, total_value, threshold)
    preview = RebalancePreview(total_value=total_value, threshold=threshold)

    for holding in holdings:
        price = _valuation_price(holding, prices) or 0.0
        current_value = holding.quantity * price
        actual_weight = current_value / total_value * 100
        deviation = actual_weight - holding.target_weight

        action, quantity = RebalanceAction.HOLD, 0
        if abs(deviation) > threshold and price > 0:
            target_value = holding.target_weight / 100 * total_value
            quantity = math.floor(abs(target_value - current_value) / price)
            if deviation > 0:
                quantity = min(quantity, holding.quantity)
                action = RebalanceAction.SELL if quantity > 0 else RebalanceAction.HOLD
            else:
                action = RebalanceAction.BUY if quantity > 0 else RebalanceAction.HOLD

        amount = quantity * price
        if action == RebalanceAction.SELL:
            preview.sell_amount += amount
        elif action == RebalanceAction.BUY:
            preview.buy_amount += amount

        preview.recommendations.append(
            RebalanceRecommendation(
                symbol=holding.symbol,
                exchange=holding.exchange,
                target_weight=holding.target_weight,
                actual_weight=actual_weight,
                deviation=deviation,
                action=action,
                quantity=quantity,
                amount=amount,
                price=price,
            )
        )

    preview.recommendations.sort(key=lambda r: abs(r.deviation), reverse=True)
    return preview
