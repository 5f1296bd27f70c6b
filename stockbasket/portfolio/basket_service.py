"""
Basket operations for one broker account.

Ties the pieces together: fetch prices through the account's adapter, size
or rebalance with the portfolio engines, then place the orders through the
batch executor. Persistence of the results is left to the caller.

Classes:
    BasketExecution: Plan plus per-order outcomes
    BasketService: Buy, preview and rebalance baskets on one adapter

Example:
    >>> service = BasketService(broker)
    >>> execution = await service.buy_basket(stocks, 50000)
    >>> execution.status
    <BatchStatus.COMPLETED: 'COMPLETED'>
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from stockbasket.execution.broker_interface import (
    LTP,
    BasketStock,
    BrokerInterface,
    TargetHolding,
)
from stockbasket.execution.exceptions import BrokerError, InsufficientAmountError
from stockbasket.execution.order_manager import (
    BatchOrderExecutor,
    BatchStatus,
    OrderOutcome,
    classify_batch,
)
from stockbasket.portfolio.rebalance import (
    RebalancePlan,
    RebalancePreview,
    calculate_portfolio_value,
    calculate_rebalance_orders,
    preview_rebalance,
)
from stockbasket.portfolio.sizing import (
    BasketOrderPlan,
    calculate_basket_orders,
    calculate_min_investment,
    resolve_price,
    validate_basket,
)
from stockbasket.utils.helpers import format_currency
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

Plan = Union[BasketOrderPlan, RebalancePlan]


@dataclass
class BasketExecution:
    """Outcome of executing a basket plan."""

    plan: Plan
    outcomes: List[OrderOutcome] = field(default_factory=list)
    status: BatchStatus = BatchStatus.COMPLETED

    @property
    def succeeded(self) -> List[OrderOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[OrderOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "orders": [o.to_dict() for o in self.outcomes],
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
        }


class BasketService:
    """
    Basket buy and rebalance for one account.

    Attributes:
        broker: Authenticated adapter of the account
        executor: Batch executor bound to the same adapter
        rebalance_threshold: Default deviation tolerance
        max_stocks: Largest allowed basket
    """

    def __init__(self, broker: BrokerInterface, executor: Optional[BatchOrderExecutor] = None):
        self.broker = broker
        self.executor = executor or BatchOrderExecutor(broker)
        self.rebalance_threshold = broker.settings.rebalance_threshold
        self.max_stocks = broker.settings.max_basket_stocks

    async def _prices(self, instruments: Sequence[Any]) -> Dict[str, LTP]:
        pairs = list(dict.fromkeys((i.symbol, i.exchange) for i in instruments))
        return await self.broker.get_ltp(pairs)

    async def _basket_prices(self, stocks: Sequence[BasketStock]) -> Dict[str, LTP]:
        prices = await self._prices(stocks)
        if all(resolve_price(prices, s.key) is None for s in stocks):
            raise BrokerError(
                f"No prices available for {', '.join(s.key for s in stocks)}",
                broker=self.broker.broker_type.value,
            )
        return prices

    async def min_investment(self, stocks: Sequence[BasketStock]) -> int:
        """Smallest amount that buys one share of every stock at current prices."""
        return calculate_min_investment(stocks, await self._basket_prices(stocks))

    async def plan_basket_buy(self, stocks: Sequence[BasketStock], amount: float) -> BasketOrderPlan:
        """
        Size a basket purchase at current prices.

        Args:
            stocks: Basket constituents
            amount: Cash to invest

        Returns:
            BasketOrderPlan

        Raises:
            ValidationError: Invalid basket
            BrokerError: No basket stock could be priced
            InsufficientAmountError: Amount too small to buy any share
        """
        validate_basket(stocks, max_stocks=self.max_stocks)
        prices = await self._basket_prices(stocks)
        plan = calculate_basket_orders(stocks, prices, amount)

        if not plan.orders:
            minimum = calculate_min_investment(stocks, prices)
            raise InsufficientAmountError(
                f"{format_currency(amount)} cannot buy a single share; "
                f"minimum investment is {format_currency(minimum, decimals=0)}",
                broker=self.broker.broker_type.value,
            )

        return plan

    async def buy_basket(self, stocks: Sequence[BasketStock], amount: float) -> BasketExecution:
        """
        Size and place a basket purchase.

        Returns:
            BasketExecution with one outcome per order
        """
        plan = await self.plan_basket_buy(stocks, amount)
        logger.info(
            f"Buying basket on {self.broker.display_name}: {len(plan.orders)} orders, "
            f"{format_currency(plan.total_amount)}"
        )
        return await self._execute(plan)

    async def preview_rebalance(
        self, holdings: Sequence[TargetHolding], threshold: Optional[float] = None
    ) -> RebalancePreview:
        """Rebalance recommendations at current prices."""
        threshold = self.rebalance_threshold if threshold is None else threshold
        return preview_rebalance(holdings, await self._prices(holdings), threshold)

    async def plan_rebalance(
        self, holdings: Sequence[TargetHolding], threshold: Optional[float] = None
    ) -> RebalancePlan:
        """Rebalance orders at current prices."""
        threshold = self.rebalance_threshold if threshold is None else threshold
        prices = await self._prices(holdings)
        total_value = calculate_portfolio_value(holdings, prices)
        return calculate_rebalance_orders(holdings, prices, total_value, threshold)

    async def rebalance(
        self, holdings: Sequence[TargetHolding], threshold: Optional[float] = None
    ) -> BasketExecution:
        """
        Plan and place rebalance orders.

        SELL and BUY orders go out in holding order, as planned.

        Returns:
            BasketExecution (COMPLETED with no outcomes when nothing drifted)
        """
        plan = await self.plan_rebalance(holdings, threshold)
        if not plan.orders:
            logger.info("Portfolio within threshold; nothing to rebalance")
        return await self._execute(plan)

    async def _execute(self, plan: Plan) -> BasketExecution:
        outcomes = await self.executor.place_multiple_orders(plan.orders)
        return BasketExecution(plan=plan, outcomes=outcomes, status=classify_batch(outcomes))
