"""
Test Suite for StockBasket.

- Unit tests for individual modules
- Integration tests for basket and rebalance flows
"""

__version__ = "0.1.0"
