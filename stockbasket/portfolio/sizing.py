"""
Basket order sizing.

Turns an investment amount and a weighted basket into whole-share market
orders. Quantities are always rounded down; the leftover cash is reported,
never reinvested.

Functions:
    calculate_basket_orders: Size BUY orders for a basket purchase
    calculate_min_investment: Smallest amount that buys one share of each stock
    validate_basket: Check basket weights and size
    calculate_equal_weights: Equal (or one-fixed) weight split

Example:
    >>> stocks = [BasketStock("TCS", 50), BasketStock("INFY", 50)]
    >>> prices = {"NSE:TCS": 4000.0, "NSE:INFY": 1500.0}
    >>> plan = calculate_basket_orders(stocks, prices, 50000)
    >>> plan.shares
    {'NSE:TCS': 6, 'NSE:INFY': 16}
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from stockbasket.execution.broker_interface import (
    BasketStock,
    Order,
    OrderType,
    ProductType,
    TransactionType,
)
from stockbasket.execution.exceptions import ValidationError
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

WEIGHT_TOLERANCE = 0.01
MAX_BASKET_STOCKS = 20


def resolve_price(prices: Mapping[str, Any], key: str) -> Optional[float]:
    """
    Last price for an instrument key.

    Price map values may be LTP/Quote objects or plain numbers. Missing and
    non-positive prices count as unavailable.

    Args:
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float
        key: Instrument key

    Returns:
        Price, or None when unavailable
    """
    value = prices.get(key)
    if value is None:
        return None
    price = float(getattr(value, "last_price", value))
    return price if price > 0 else None


@dataclass
class BasketOrderPlan:
    """
    Sized basket purchase.

    Attributes:
        orders: BUY orders (only stocks with quantity > 0)
        total_amount: Cost of the orders at the quoted prices
        unused_amount: Investment amount left unspent
        shares: "EXCHANGE:SYMBOL" -> quantity for every priced stock, zeros included
    """

    orders: List[Order] = field(default_factory=list)
    total_amount: float = 0.0
    unused_amount: float = 0.0
    shares: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders": [o.to_dict() for o in self.orders],
            "totalAmount": self.total_amount,
            "unusedAmount": self.unused_amount,
            "shares": dict(self.shares),
        }


def _share_count(amount: float, weight: float, price: float) -> int:
    return math.floor(amount * weight / 100 / price)


def calculate_basket_orders(
    stocks: Sequence[BasketStock],
    prices: Mapping[str, Any],
    investment_amount: float,
) -> BasketOrderPlan:
    """
    Size market BUY orders for a basket purchase.

    For each stock: allocation = amount * weight / 100 and
    quantity = floor(allocation / last price). Stocks without a price are
    skipped; stocks whose quantity rounds to zero get no order.

    Args:
        stocks: Basket constituents with weights in percent
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float
        investment_amount: Cash to invest

    Returns:
        BasketOrderPlan

    Raises:
        ValidationError: Non-positive amount or weight
    """
    if investment_amount <= 0:
        raise ValidationError(f"Investment amount must be positive, got {investment_amount}")

    plan = BasketOrderPlan()

    for stock in stocks:
        if stock.weight <= 0:
            raise ValidationError(f"Weight for {stock.symbol} must be positive, got {stock.weight}")

        price = resolve_price(prices, stock.key)
        if price is None:
            logger.warning(f"No price for {stock.key}, skipping")
            continue

        quantity = _share_count(investment_amount, stock.weight, price)
        plan.shares[stock.key] = quantity

        if quantity > 0:
            plan.total_amount += quantity * price
            plan.orders.append(
                Order(
                    symbol=stock.symbol,
                    exchange=stock.exchange,
                    transaction_type=TransactionType.BUY,
                    quantity=quantity,
                    order_type=OrderType.MARKET,
                    product=ProductType.CNC,
                )
            )

    plan.unused_amount = investment_amount - plan.total_amount

    logger.debug(
        f"Basket sized: {len(plan.orders)} orders, {plan.total_amount:.2f} used, "
        f"{plan.unused_amount:.2f} unused"
    )
    return plan


def _min_amount_for_one_share(weight: float, price: float) -> int:
    amount = max(1, math.ceil(round(price * 100 / weight, 9)))
    # settle float noise against the sizing formula itself
    while amount > 1 and _share_count(amount - 1, weight, price) >= 1:
        amount -= 1
    while _share_count(amount, weight, price) < 1:
        amount += 1
    return amount


def calculate_min_investment(stocks: Sequence[BasketStock], prices: Mapping[str, Any]) -> int:
    """
    Smallest investment that buys at least one share of every priced stock.

    Args:
        stocks: Basket constituents
        prices: "EXCHANGE:SYMBOL" -> LTP, Quote or float

    Returns:
        Smallest whole amount for which calculate_basket_orders gives every
        priced stock a quantity of at least 1, or 0 when nothing is priced

    Raises:
        ValidationError: Non-positive weight
    """
    minimum = 0
    for stock in stocks:
        if stock.weight <= 0:
            raise ValidationError(f"Weight for {stock.symbol} must be positive, got {stock.weight}")
        price = resolve_price(prices, stock.key)
        if price is not None:
            minimum = max(minimum, _min_amount_for_one_share(stock.weight, price))
    return minimum


def validate_basket(stocks: Sequence[BasketStock], max_stocks: int = MAX_BASKET_STOCKS) -> None:
    """
    Validate basket size and weights.

    Args:
        stocks: Basket constituents
        max_stocks: Largest allowed basket

    Raises:
        ValidationError: Empty or oversized basket, non-positive weight,
            or weights not summing to 100 (within 0.01)
    """
    if not stocks:
        raise ValidationError("Basket must contain at least one stock")

    if len(stocks) > max_stocks:
        raise ValidationError(f"Basket has {len(stocks)} stocks; maximum is {max_stocks}")

    for stock in stocks:
        if stock.weight <= 0:
            raise ValidationError(f"Weight for {stock.symbol} must be positive, got {stock.weight}")

    total = sum(s.weight for s in stocks)
    if abs(total - 100) > WEIGHT_TOLERANCE:
        raise ValidationError(f"Basket weights must sum to 100, got {total:.2f}")


def calculate_equal_weights(
    stocks: Sequence[BasketStock],
    fixed_index: Optional[int] = None,
    fixed_weight: Optional[float] = None,
    max_stocks: int = MAX_BASKET_STOCKS,
) -> List[BasketStock]:
    """
    Split 100% equally across a basket.

    Weights are rounded to 2 decimals. Without a fixed stock, the rounding
    remainder goes to the last stock. With ``fixed_index``/``fixed_weight``,
    that stock keeps its weight, the rest share ``100 - fixed_weight`` and
    the remainder goes to the first other stock.

    Args:
        stocks: Basket constituents (existing weights ignored)
        fixed_index: Position of the stock whose weight is pinned
        fixed_weight: Pinned weight in percent
        max_stocks: Largest allowed basket

    Returns:
        New BasketStock list summing to exactly 100

    Raises:
        ValidationError: Empty/oversized basket or invalid fixed stock
    """
    count = len(stocks)
    if count == 0:
        raise ValidationError("At least one stock is required")
    if count > max_stocks:
        raise ValidationError(f"Maximum {max_stocks} stocks allowed")

    if (fixed_index is None) != (fixed_weight is None):
        raise ValidationError("fixed_index and fixed_weight must be given together")

    if fixed_index is None:
        share = round(100 / count, 2)
        weights = [share] * count
        weights[-1] = round(100 - share * (count - 1), 2)
    else:
        if not 0 <= fixed_index < count:
            raise ValidationError(f"fixed_index {fixed_index} out of range")
        if count == 1:
            if abs(fixed_weight - 100) > WEIGHT_TOLERANCE:
                raise ValidationError("A single-stock basket must weigh 100")
        elif not 0 < fixed_weight < 100:
            raise ValidationError(f"fixed_weight must be between 0 and 100, got {fixed_weight}")

        others = count - 1
        share = round((100 - fixed_weight) / others, 2) if others else 0.0
        weights = [share] * count
        weights[fixed_index] = fixed_weight
        if others:
            adjust = 1 if fixed_index == 0 else 0
            weights[adjust] = round(100 - fixed_weight - share * (others - 1), 2)

    return [
        BasketStock(symbol=s.symbol, exchange=s.exchange, weight=w)
        for s, w in zip(stocks, weights)
    ]
