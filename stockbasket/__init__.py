"""
StockBasket multi-broker trading core.

Unifies broker integrations behind one async contract:
- Zerodha Kite Connect (redirect login)
- Angel One SmartAPI (client code + MPIN + TOTP login)
- Basket sizing and rebalance calculations
- Sequential, rate-limited batch order execution
"""

__version__ = "0.1.0"

from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)
logger.debug(f"StockBasket trading core v{__version__} loaded")
