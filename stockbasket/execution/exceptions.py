"""Broker error hierarchy for the StockBasket trading core."""

from typing import Optional


class BrokerError(Exception):
    """
    Base error for every failure surfaced by the trading core.

    Attributes:
        message: Human readable reason
        broker: Broker variant that raised it (None for local checks)
        code: Broker error code or HTTP status, when known
    """

    def __init__(
        self,
        message: str,
        broker: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.broker = broker
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(BrokerError, ValueError):
    """Malformed credentials, basket or order rejected before any network call."""
    pass


class InsufficientAmountError(ValidationError):
    """Investment amount cannot buy a single share of any basket stock."""
    pass


class AuthError(BrokerError):
    """Invalid or expired token, or a failed login handshake."""
    pass


class NetworkError(BrokerError):
    """Transport failure talking to the broker."""
    pass


class RateLimitError(NetworkError):
    """Broker refused the call for exceeding its request rate."""
    pass


class BrokerRejectionError(BrokerError):
    """Broker-side business rejection (funds, lot size, market closed)."""
    pass
