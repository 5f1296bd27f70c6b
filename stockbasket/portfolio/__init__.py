"""
Portfolio engines.

- sizing: basket purchase quantities
- rebalance: threshold rebalancing
- basket_service: price, size and execute baskets on one account
"""

from stockbasket.portfolio.basket_service import BasketExecution, BasketService
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
    calculate_equal_weights,
    calculate_min_investment,
    validate_basket,
)

__all__ = [
    "BasketExecution",
    "BasketService",
    "RebalancePlan",
    "RebalancePreview",
    "calculate_portfolio_value",
    "calculate_rebalance_orders",
    "preview_rebalance",
    "BasketOrderPlan",
    "calculate_basket_orders",
    "calculate_equal_weights",
    "calculate_min_investment",
    "validate_basket",
]
