"""
Abstract broker interface for the StockBasket trading core.

This module defines the contract that all broker implementations must follow.
It ensures a consistent async API across brokers (Zerodha Kite, Angel One)
so callers never branch on broker internals.

Classes:
    BrokerType: Supported broker variants
    TransactionType, OrderType, ProductType, OrderVariety, OrderValidity:
        Order enumerations
    InstrumentType: Catalog instrument classes
    UnifiedSymbol: Broker-independent catalog entry
    Quote, LTP: Market data snapshots
    Order, OrderResult: Order request and placement result
    Holding, Position, Funds: Portfolio views
    BrokerSession, BrokerCredentials: Authentication data
    BasketStock, TargetHolding: Basket inputs for the portfolio engines
    BrokerInterface: Abstract base class for all brokers
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stockbasket.execution.exceptions import AuthError, ValidationError
from stockbasket.execution.rate_limiter import RateLimiter
from stockbasket.utils.logging_config import get_logger
from stockbasket.utils.settings import TradingSettings

logger = get_logger(__name__)

# (symbol, exchange) pair used to request quotes
Instrument = Tuple[str, str]


class BrokerType(Enum):
    """Supported broker variants."""

    ZERODHA = "zerodha"
    ANGELONE = "angelone"

    @classmethod
    def parse(cls, value: "BrokerType | str") -> "BrokerType":
        """Resolve a broker type from its name, case-insensitively."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            supported = ", ".join(b.value for b in cls)
            raise ValidationError(
                f"Unsupported broker type: {value}. Supported: {supported}"
            ) from None


class TransactionType(Enum):
    """Order side (buy/sell)."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    """Order types supported by brokers."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SL = "SL"
    SL_M = "SL-M"


class ProductType(Enum):
    """Product types (delivery, intraday, carry-forward)."""

    CNC = "CNC"
    MIS = "MIS"
    NRML = "NRML"


class OrderVariety(Enum):
    """Order varieties."""

    REGULAR = "regular"
    AMO = "amo"
    BO = "bo"
    CO = "co"
    ICEBERG = "iceberg"


class OrderValidity(Enum):
    """Order validity."""

    DAY = "DAY"
    IOC = "IOC"
    TTL = "TTL"


class InstrumentType(Enum):
    """Instrument classes kept in the unified catalog."""

    EQ = "EQ"
    INDEX = "INDEX"
    FUT = "FUT"
    CE = "CE"
    PE = "PE"


def instrument_key(symbol: str, exchange: str) -> str:
    """Key used by quote, LTP and price maps ("NSE:TCS")."""
    return f"{exchange}:{symbol}"


@dataclass
class UnifiedSymbol:
    """
    Broker-independent catalog entry.

    Attributes:
        symbol: Canonical symbol (e.g., "RELIANCE", "NIFTY")
        broker_symbol: Broker's native trading symbol
        exchange: Unified exchange ("NSE", "BSE", "NSE_INDEX", "BSE_INDEX")
        broker_exchange: Broker's native exchange
        token: Broker instrument token
        name: Company/instrument name
        instrument_type: EQ or INDEX
        lot_size: Minimum tradable lot
        tick_size: Price step in currency units
        expiry: Expiry as DD-MMM-YY (derivatives only)
        strike: Strike price in currency units (options only)
    """

    symbol: str
    broker_symbol: str
    exchange: str
    broker_exchange: str
    token: str
    name: str = ""
    instrument_type: InstrumentType = InstrumentType.EQ
    lot_size: int = 1
    tick_size: float = 0.05
    expiry: Optional[str] = None
    strike: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str, str, Optional[str], Optional[float]]:
        """Uniqueness key within one catalog generation."""
        return (self.symbol, self.exchange, self.instrument_type.value, self.expiry, self.strike)


@dataclass
class LTP:
    """Last traded price for one instrument."""

    symbol: str
    exchange: str
    last_price: float


@dataclass
class Quote:
    """
    Market quote snapshot.

    Attributes:
        symbol: Canonical symbol
        exchange: Unified exchange
        last_price: Last traded price
        open, high, low, close: Day OHLC (close is previous close)
        volume: Traded volume
        change: Absolute change vs close
        change_percent: Percentage change vs close
        timestamp: Last trade time
    """

    symbol: str
    exchange: str
    last_price: float
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: int = 0
    change: float = 0.0
    change_percent: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Order:
    """
    Universal order representation.

    Each broker translates this to its native format. The canonical symbol
    and unified exchange are used here; adapters convert them.

    Attributes:
        symbol: Canonical trading symbol (e.g., "TCS")
        exchange: NSE or BSE
        transaction_type: BUY or SELL
        quantity: Number of shares (integer > 0)
        order_type: MARKET, LIMIT, SL or SL-M
        product: CNC (delivery), MIS (intraday) or NRML (F&O)
        price: Limit price (LIMIT and SL)
        trigger_price: Trigger price (SL and SL-M)
        validity: DAY, IOC or TTL
        variety: regular, amo, bo, co or iceberg
        tag: Optional tag for order identification
    """

    symbol: str
    exchange: str
    transaction_type: TransactionType
    quantity: int
    order_type: OrderType = OrderType.MARKET
    product: ProductType = ProductType.CNC
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    validity: OrderValidity = OrderValidity.DAY
    variety: OrderVariety = OrderVariety.REGULAR
    tag: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate order parameters."""
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValidationError(f"Quantity must be an integer, got {self.quantity!r}")

        if self.quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {self.quantity}")

        if self.order_type == OrderType.LIMIT and self.price is None:
            raise ValidationError("LIMIT order requires price")

        if self.order_type in (OrderType.SL, OrderType.SL_M) and self.trigger_price is None:
            raise ValidationError("Stop loss order requires trigger_price")

        if self.price is not None and self.price <= 0:
            raise ValidationError(f"Price must be positive, got {self.price}")

        if self.trigger_price is not None and self.trigger_price <= 0:
            raise ValidationError(f"Trigger price must be positive, got {self.trigger_price}")

    @property
    def key(self) -> str:
        """Instrument key of the order ("NSE:TCS")."""
        return instrument_key(self.symbol, self.exchange)

    def to_dict(self) -> Dict[str, Any]:
        """Order submission fields as exchanged with collaborators."""
        payload: Dict[str, Any] = {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "transactionType": self.transaction_type.value,
            "orderType": self.order_type.value,
            "quantity": self.quantity,
            "product": self.product.value,
        }
        if self.price is not None:
            payload["price"] = self.price
        if self.trigger_price is not None:
            payload["triggerPrice"] = self.trigger_price
        if self.validity is not None:
            payload["validity"] = self.validity.value
        if self.tag:
            payload["tag"] = self.tag
        return payload


@dataclass
class OrderResult:
    """Broker acknowledgement of a placed, modified or cancelled order."""

    order_id: str
    status: str
    message: Optional[str] = None


@dataclass
class Holding:
    """
    Delivery holding in the demat account.

    Attributes:
        symbol: Canonical symbol
        exchange: Exchange
        quantity: Shares held
        average_price: Average buy price
        last_price: Current market price
        pnl: Broker-reported P&L
    """

    symbol: str
    exchange: str
    quantity: int
    average_price: float
    last_price: float
    pnl: float = 0.0

    @property
    def value(self) -> float:
        """Current market value."""
        return self.quantity * self.last_price

    @property
    def pnl_percent(self) -> float:
        """P&L relative to average price."""
        if not self.average_price:
            return 0.0
        return (self.last_price - self.average_price) / self.average_price * 100


@dataclass
class Position:
    """
    Net position for the day.

    Attributes:
        symbol: Canonical symbol
        exchange: Exchange
        quantity: Net quantity (positive=long, negative=short)
        average_price: Average entry price
        last_price: Current market price
        pnl: Realized + unrealized P&L
        product: CNC, MIS or NRML
        overnight: Carried forward from a previous session
    """

    symbol: str
    exchange: str
    quantity: int
    average_price: float
    last_price: float
    pnl: float
    product: ProductType = ProductType.MIS
    overnight: bool = False


@dataclass
class Funds:
    """
    Account balance and margin information.

    Attributes:
        available_cash: Cash available for trading
        used_margin: Margin currently used
        total_balance: Net account value
        collateral: Collateral available
    """

    available_cash: float
    used_margin: float
    total_balance: float
    collateral: float = 0.0

    @property
    def free_margin(self) -> float:
        """Calculate free margin."""
        return self.available_cash - self.used_margin


@dataclass
class BrokerSession:
    """
    Authenticated session with a broker.

    Owned by the adapter instance that created it; never share it across
    accounts.
    """

    broker: BrokerType
    user_id: str
    access_token: str
    user_name: str = ""
    email: Optional[str] = None
    refresh_token: Optional[str] = None
    feed_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        """Whether the session is past its expiry."""
        return self.expires_at is not None and datetime.now() >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"BrokerSession(broker={self.broker.value!r}, user_id={self.user_id!r}, "
            f"expires_at={self.expires_at!r})"
        )


@dataclass
class BrokerCredentials:
    """
    Already-decrypted broker credentials.

    Which fields are required depends on the broker; see
    BrokerFactory.validate_credentials.
    """

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    client_code: Optional[str] = None
    mpin: Optional[str] = None
    totp: Optional[str] = None
    totp_secret: Optional[str] = None

    def __repr__(self) -> str:
        present = [name for name, value in vars(self).items() if value]
        return f"BrokerCredentials(fields={present})"


@dataclass
class BasketStock:
    """Basket constituent with its target weight in percent."""

    symbol: str
    weight: float
    exchange: str = "NSE"

    @property
    def key(self) -> str:
        return instrument_key(self.symbol, self.exchange)


@dataclass
class TargetHolding:
    """Held basket stock with its target weight, input to rebalancing."""

    symbol: str
    quantity: int
    target_weight: float
    exchange: str = "NSE"
    average_price: Optional[float] = None

    @property
    def key(self) -> str:
        return instrument_key(self.symbol, self.exchange)


class BrokerInterface(ABC):
    """
    Abstract base class for broker implementations.

    All broker implementations must inherit from this class and implement
    all abstract methods. Every remote operation is a coroutine.

    The interface defines:
    - Authentication (login URL, session creation)
    - Catalog download and symbol conversion
    - Quotes and LTP
    - Order placement, modification, cancellation
    - Orders, holdings, positions, funds and profile retrieval

    Attributes:
        broker_type: Variant implemented by the subclass
        display_name: Human readable broker name
        api_key: Broker API key
        settings: Trading settings
        order_limiter: Per-account order pacing
    """

    broker_type: BrokerType
    display_name: str = ""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        settings: Optional[TradingSettings] = None,
        order_limiter: Optional[RateLimiter] = None,
    ):
        if not api_key:
            raise ValidationError("API key is required", broker=self.broker_type.value)

        self.api_key = api_key
        self.api_secret = api_secret
        self.settings = settings or TradingSettings()
        self.order_limiter = order_limiter or RateLimiter(
            rate=self.settings.order_rate_for(self.broker_type.value),
            capacity=1,
        )
        self._access_token: Optional[str] = None
        self._session: Optional[BrokerSession] = None

    @property
    def session(self) -> Optional[BrokerSession]:
        """Session created by the last successful login, if any."""
        return self._session

    def set_access_token(self, access_token: str) -> None:
        """
        Set an access token obtained earlier (e.g., restored by the caller).

        Args:
            access_token: Broker access token
        """
        self._access_token = access_token
        logger.info(f"Access token set for {self.display_name}")

    def has_access_token(self) -> bool:
        """Check if an access token is available."""
        return bool(self._access_token)

    def _require_token(self) -> str:
        """Return the access token or fail before any network call."""
        if not self._access_token:
            raise AuthError(
                "Access token not set. Please login first.",
                broker=self.broker_type.value,
            )
        return self._access_token

    def _session_expiry(self) -> datetime:
        return datetime.now() + timedelta(hours=self.settings.token_expiry_hours)

    def load_catalog(self, symbols: Sequence[UnifiedSymbol]) -> None:
        """
        Register an already-persisted catalog for symbol/token lookups.

        Args:
            symbols: Catalog entries produced by an earlier download
        """
        self.symbols.load(symbols)

    async def place_multiple_orders(self, orders: Sequence[Order]) -> List[Any]:
        """
        Place orders sequentially through this account's rate limiter.

        Args:
            orders: Orders in submission order

        Returns:
            One OrderOutcome per input order, in input order
        """
        from stockbasket.execution.order_manager import BatchOrderExecutor

        return await BatchOrderExecutor(self).place_multiple_orders(orders)

    @abstractmethod
    def get_login_url(self, redirect_url: Optional[str] = None) -> str:
        """
        Build the broker login URL (no side effects).

        Args:
            redirect_url: Optional redirect after login

        Returns:
            Login URL
        """
        pass

    @abstractmethod
    async def create_session(self, *auth_artifact: str) -> BrokerSession:
        """
        Exchange an auth artifact for an access token.

        Returns:
            BrokerSession

        Raises:
            AuthError: If the artifact is invalid, expired or malformed
        """
        pass

    @abstractmethod
    async def download_catalog(self) -> List[UnifiedSymbol]:
        """
        Download and normalize the broker's instrument master.

        Full refresh, safe to retry. Only equity and index rows of NSE/BSE
        are kept; rows that fail to parse are skipped.

        Returns:
            Unified catalog
        """
        pass

    @abstractmethod
    def to_unified_symbol(self, broker_symbol: str, exchange: str) -> str:
        """Convert a native symbol to its canonical form."""
        pass

    @abstractmethod
    def to_broker_symbol(self, symbol: str, exchange: str) -> str:
        """Convert a canonical symbol to the broker's native form."""
        pass

    @abstractmethod
    async def get_quotes(self, instruments: Sequence[Instrument]) -> Dict[str, Quote]:
        """
        Get full quotes for instruments.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            Quotes keyed by "EXCHANGE:SYMBOL"

        Raises:
            NetworkError, RateLimitError: On transport failure
        """
        pass

    @abstractmethod
    async def get_ltp(self, instruments: Sequence[Instrument]) -> Dict[str, LTP]:
        """
        Get last traded prices for instruments.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            LTPs keyed by "EXCHANGE:SYMBOL"

        Raises:
            NetworkError, RateLimitError: On transport failure
        """
        pass

    @abstractmethod
    async def place_order(self, order: Order) -> OrderResult:
        """
        Place a new order with the broker.

        Args:
            order: Order to place

        Returns:
            OrderResult with the broker order ID

        Raises:
            BrokerRejectionError: Insufficient funds, invalid lot, market closed
            NetworkError, RateLimitError: On transport failure
        """
        pass

    @abstractmethod
    async def modify_order(
        self,
        order_id: str,
        order_type: Optional[OrderType] = None,
        quantity: Optional[int] = None,
        price: Optional[float] = None,
        trigger_price: Optional[float] = None,
        validity: Optional[OrderValidity] = None,
        variety: OrderVariety = OrderVariety.REGULAR,
    ) -> OrderResult:
        """Modify an open order."""
        pass

    @abstractmethod
    async def cancel_order(
        self, order_id: str, variety: OrderVariety = OrderVariety.REGULAR
    ) -> OrderResult:
        """Cancel an open order."""
        pass

    @abstractmethod
    async def get_orders(self) -> List[Dict[str, Any]]:
        """Get the day's order book as returned by the broker."""
        pass

    @abstractmethod
    async def get_order_history(self, order_id: str) -> List[Dict[str, Any]]:
        """
        Get the state transitions of one order, oldest first.

        Args:
            order_id: Broker order ID (Angel One: the unique order ID)

        Returns:
            Order records as returned by the broker
        """
        pass

    @abstractmethod
    async def get_holdings(self) -> List[Holding]:
        """Get demat holdings."""
        pass

    @abstractmethod
    async def get_positions(self) -> List[Position]:
        """Get net positions."""
        pass

    @abstractmethod
    async def get_funds(self) -> Funds:
        """Get funds and margins."""
        pass

    @abstractmethod
    async def get_profile(self) -> Dict[str, Any]:
        """Get the user profile."""
        pass
