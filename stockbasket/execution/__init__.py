"""
Execution layer for StockBasket.

This module provides the broker abstraction and order execution. Zerodha
Kite and Angel One are supported through one async interface.

Components:
    - BrokerInterface: Abstract base class defining the broker contract
    - KiteBroker: Zerodha Kite Connect implementation
    - AngelOneBroker: Angel One SmartAPI implementation
    - SymbolMapper: Canonical/native symbol conversion and token registry
    - BatchOrderExecutor: Sequential, rate-limited order placement
    - BrokerFactory: Factory for building adapters from credentials

Example:
    >>> from stockbasket.execution import BrokerFactory, Order, TransactionType
    >>> broker = BrokerFactory().create("zerodha", {"api_key": "...", "api_secret": "..."})
    >>> await broker.create_session(request_token)
    >>> order = Order(symbol="RELIANCE", exchange="NSE",
    ...               transaction_type=TransactionType.BUY, quantity=10)
    >>> result = await broker.place_order(order)
"""

from stockbasket.execution.broker_interface import (
    BasketStock,
    BrokerCredentials,
    BrokerInterface,
    BrokerSession,
    BrokerType,
    Funds,
    Holding,
    LTP,
    Order,
    OrderResult,
    OrderType,
    Position,
    ProductType,
    Quote,
    TargetHolding,
    TransactionType,
    UnifiedSymbol,
)
from stockbasket.execution.exceptions import (
    AuthError,
    BrokerError,
    BrokerRejectionError,
    InsufficientAmountError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from stockbasket.execution.order_manager import (
    BatchOrderExecutor,
    BatchStatus,
    OrderOutcome,
    classify_batch,
)
from stockbasket.execution.broker_factory import BrokerFactory

__all__ = [
    "BasketStock",
    "BrokerCredentials",
    "BrokerInterface",
    "BrokerSession",
    "BrokerType",
    "Funds",
    "Holding",
    "LTP",
    "Order",
    "OrderResult",
    "OrderType",
    "Position",
    "ProductType",
    "Quote",
    "TargetHolding",
    "TransactionType",
    "UnifiedSymbol",
    "AuthError",
    "BrokerError",
    "BrokerRejectionError",
    "InsufficientAmountError",
    "NetworkError",
    "RateLimitError",
    "ValidationError",
    "BatchOrderExecutor",
    "BatchStatus",
    "OrderOutcome",
    "classify_batch",
    "BrokerFactory",
]
