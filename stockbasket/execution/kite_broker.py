"""
Kite Connect broker implementation.

This module implements the BrokerInterface for Zerodha's Kite Connect API
on top of the official ``kiteconnect`` SDK. The SDK is blocking, so every
call runs in a worker thread via ``asyncio.to_thread``.

Classes:
    KiteBroker: Kite Connect broker implementation

Example:
    >>> from stockbasket.execution.kite_broker import KiteBroker
    >>> broker = KiteBroker(api_key="your_api_key", api_secret="your_api_secret")
    >>> print(broker.get_login_url())
    >>> session = await broker.create_session(request_token)
    >>> quotes = await broker.get_ltp([("RELIANCE", "NSE"), ("NIFTY", "NSE_INDEX")])

Note:
    Kite Connect redirects to the URL registered for the app with a
    one-time ``request_token``. See: https://kite.trade/docs/connect/v3/
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from kiteconnect import KiteConnect
from kiteconnect import exceptions as kite_exceptions

from stockbasket.execution.broker_interface import (
    LTP,
    BrokerInterface,
    BrokerSession,
    BrokerType,
    Funds,
    Holding,
    Instrument,
    InstrumentType,
    Order,
    OrderResult,
    OrderType,
    OrderValidity,
    OrderVariety,
    Position,
    ProductType,
    Quote,
    UnifiedSymbol,
    instrument_key,
)
from stockbasket.execution.exceptions import (
    AuthError,
    BrokerError,
    BrokerRejectionError,
    NetworkError,
    RateLimitError,
)
from stockbasket.execution.rate_limiter import RateLimiter
from stockbasket.execution.symbol_mapper import (
    EXCHANGES,
    SymbolMapper,
    broker_exchange,
    format_expiry,
    index_exchange,
)
from stockbasket.utils.helpers import chunks
from stockbasket.utils.logging_config import get_logger
from stockbasket.utils.settings import TradingSettings

logger = get_logger(__name__)

# Offsite basket form (orders confirmed by the user on kite.zerodha.com)
BASKET_URL = "https://kite.zerodha.com/connect/basket"

# Instruments per remote call
QUOTE_BATCH_SIZE = 500
LTP_BATCH_SIZE = 1000

# Error context for _api_call
AUTH, ORDER, DATA = "auth", "order", "data"


class KiteBroker(BrokerInterface):
    """
    Kite Connect broker implementation.

    Attributes:
        kite: KiteConnect SDK client (one per account)
        symbols: Symbol mapper and token registry for this account
    """

    broker_type = BrokerType.ZERODHA
    display_name = "Zerodha Kite"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        access_token: Optional[str] = None,
        settings: Optional[TradingSettings] = None,
        order_limiter: Optional[RateLimiter] = None,
        kite: Optional[KiteConnect] = None,
    ):
        """
        Initialize Kite Connect broker.

        Args:
            api_key: Kite Connect API key
            api_secret: Kite Connect API secret (used to sign the session request)
            access_token: Access token from an earlier login (optional)
            settings: Trading settings
            order_limiter: Order pacing (default: 10 orders/s)
            kite: Pre-built SDK client (default: new KiteConnect)
        """
        super().__init__(api_key, api_secret, settings=settings, order_limiter=order_limiter)

        self.symbols = SymbolMapper(self.broker_type.value)
        self.kite = kite or KiteConnect(
            api_key=api_key, timeout=int(self.settings.request_timeout)
        )

        if access_token:
            self.set_access_token(access_token)

    def set_access_token(self, access_token: str) -> None:
        """
        Set access token for API authentication.

        Args:
            access_token: Kite Connect access token
        """
        self.kite.set_access_token(access_token)
        super().set_access_token(access_token)

    def get_login_url(self, redirect_url: Optional[str] = None) -> str:
        """
        Get the Kite login URL.

        Kite always redirects to the URL registered with the app, so
        ``redirect_url`` is not part of the URL.

        Returns:
            Login URL
        """
        return self.kite.login_url()

    async def create_session(self, request_token: str) -> BrokerSession:
        """
        Exchange a request token for an access token.

        Args:
            request_token: One-time token from the login redirect

        Returns:
            BrokerSession

        Raises:
            AuthError: Missing, expired or invalid request token
        """
        if not request_token:
            raise AuthError("Request token is required", broker=self.broker_type.value)
        if not self.api_secret:
            raise AuthError("API secret is required to create a session", broker=self.broker_type.value)

        data = await self._api_call(
            self.kite.generate_session, request_token, api_secret=self.api_secret, context=AUTH
        )

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise AuthError("Kite session response has no access token", broker=self.broker_type.value)

        self.set_access_token(access_token)
        self._session = BrokerSession(
            broker=self.broker_type,
            user_id=data.get("user_id", ""),
            user_name=data.get("user_name", ""),
            email=data.get("email"),
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expires_at=self._session_expiry(),
        )

        logger.info(f"Kite session created for {self._session.user_id}")
        return self._session

    def to_unified_symbol(self, broker_symbol: str, exchange: str) -> str:
        return self.symbols.to_unified(broker_symbol, exchange)

    def to_broker_symbol(self, symbol: str, exchange: str) -> str:
        return self.symbols.to_broker(symbol, exchange)

    async def download_catalog(self) -> List[UnifiedSymbol]:
        """
        Download the Kite instrument dump for NSE and BSE.

        Keeps equity rows of the NSE/BSE segments and index rows of the
        INDICES segment. The adapter registry is replaced with the result.

        Returns:
            Unified catalog
        """
        rows: List[Dict[str, Any]] = []
        for exchange in EXCHANGES:
            rows.extend(await self._api_call(self.kite.instruments, exchange) or [])

        parsed: List[UnifiedSymbol] = []
        skipped = 0
        for row in rows:
            try:
                entry = self._parse_instrument(row)
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.debug(f"Skipping unparseable Kite instrument row: {e}")
                continue
            if entry is not None:
                parsed.append(entry)

        catalog = self.symbols.deduplicate(parsed)
        self.symbols.load(catalog)

        logger.info(
            f"Kite catalog: {len(catalog)} instruments from {len(rows)} rows "
            f"({skipped} unparseable)"
        )
        return catalog

    def _parse_instrument(self, row: Dict[str, Any]) -> Optional[UnifiedSymbol]:
        """Convert one instrument dump row, or None when filtered out."""
        exchange = row.get("exchange")
        segment = row.get("segment")
        is_index = segment == "INDICES"

        if exchange not in EXCHANGES:
            return None
        if not (is_index or (segment in EXCHANGES and row.get("instrument_type") == "EQ")):
            return None

        broker_symbol = str(row["tradingsymbol"]).strip()
        if not broker_symbol:
            raise ValueError("empty tradingsymbol")

        strike = float(row.get("strike") or 0)

        return UnifiedSymbol(
            symbol=self.to_unified_symbol(broker_symbol, exchange),
            broker_symbol=broker_symbol,
            exchange=index_exchange(exchange) if is_index else exchange,
            broker_exchange=exchange,
            token=str(row["instrument_token"]),
            name=str(row.get("name") or ""),
            instrument_type=InstrumentType.INDEX if is_index else InstrumentType.EQ,
            lot_size=int(row.get("lot_size") or 1),
            tick_size=float(row.get("tick_size") or 0.05),
            expiry=format_expiry(row.get("expiry")),
            strike=strike if strike > 0 else None,
        )

    def _instrument_map(self, instruments: Sequence[Instrument]) -> Dict[str, List[Instrument]]:
        """
        Kite instrument string ("NSE:NIFTY 50") -> requested (symbol, exchange) pairs.

        Several requests can name the same Kite instrument, e.g. ("NIFTY", "NSE")
        and ("NIFTY", "NSE_INDEX"); each of them gets its own entry in the result.
        """
        requested: Dict[str, List[Instrument]] = {}
        for symbol, exchange in instruments:
            kite_key = f"{broker_exchange(exchange)}:{self.to_broker_symbol(symbol, exchange)}"
            pairs = requested.setdefault(kite_key, [])
            if (symbol, exchange) not in pairs:
                pairs.append((symbol, exchange))
        return requested

    async def get_quotes(self, instruments: Sequence[Instrument]) -> Dict[str, Quote]:
        """
        Get full quotes, batched 500 instruments per call.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            Quotes keyed by "EXCHANGE:SYMBOL"
        """
        if not instruments:
            return {}

        requested = self._instrument_map(instruments)
        result: Dict[str, Quote] = {}

        for batch in chunks(list(requested), QUOTE_BATCH_SIZE):
            data = await self._api_call(self.kite.quote, batch) or {}
            for kite_key, raw in data.items():
                for symbol, exchange in requested.get(kite_key, []):
                    result[instrument_key(symbol, exchange)] = self._parse_quote(symbol, exchange, raw)

        return result

    @staticmethod
    def _parse_quote(symbol: str, exchange: str, raw: Dict[str, Any]) -> Quote:
        ohlc = raw.get("ohlc") or {}
        last_price = float(raw.get("last_price") or 0.0)
        close = float(ohlc.get("close") or 0.0)
        change = raw.get("net_change") or (last_price - close if close else 0.0)

        return Quote(
            symbol=symbol,
            exchange=exchange,
            last_price=last_price,
            open=float(ohlc.get("open") or 0.0),
            high=float(ohlc.get("high") or 0.0),
            low=float(ohlc.get("low") or 0.0),
            close=close,
            volume=int(raw.get("volume") or 0),
            change=float(change),
            change_percent=(last_price - close) / close * 100 if close else 0.0,
            timestamp=raw.get("last_trade_time") or datetime.now(),
        )

    async def get_ltp(self, instruments: Sequence[Instrument]) -> Dict[str, LTP]:
        """
        Get last traded prices, batched 1000 instruments per call.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            LTPs keyed by "EXCHANGE:SYMBOL"
        """
        if not instruments:
            return {}

        requested = self._instrument_map(instruments)
        result: Dict[str, LTP] = {}

        for batch in chunks(list(requested), LTP_BATCH_SIZE):
            data = await self._api_call(self.kite.ltp, batch) or {}
            for kite_key, raw in data.items():
                for symbol, exchange in requested.get(kite_key, []):
                    result[instrument_key(symbol, exchange)] = LTP(
                        symbol=symbol,
                        exchange=exchange,
                        last_price=float(raw.get("last_price") or 0.0),
                    )

        return result

    async def place_order(self, order: Order) -> OrderResult:
        """
        Place order with Kite Connect.

        Args:
            order: Order to place

        Returns:
            OrderResult with the Kite order ID

        Raises:
            BrokerRejectionError: Order rejected by Kite
        """
        kite_order: Dict[str, Any] = {
            "variety": order.variety.value,
            "tradingsymbol": self.to_broker_symbol(order.symbol, order.exchange),
            "exchange": broker_exchange(order.exchange),
            "transaction_type": order.transaction_type.value,
            "quantity": order.quantity,
            "order_type": order.order_type.value,
            "product": order.product.value,
            "validity": order.validity.value,
        }

        if order.price is not None:
            kite_order["price"] = order.price
        if order.trigger_price is not None:
            kite_order["trigger_price"] = order.trigger_price
        if order.tag:
            kite_order["tag"] = order.tag

        logger.info(
            f"Placing order: {order.symbol} {order.transaction_type.value} "
            f"{order.quantity} @ {order.order_type.value}"
        )

        order_id = await self._api_call(self.kite.place_order, context=ORDER, **kite_order)
        if not order_id:
            raise BrokerRejectionError("Kite returned no order ID", broker=self.broker_type.value)

        logger.info(f"Order placed successfully: {order_id}")
        return OrderResult(order_id=str(order_id), status="PLACED")

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
        """
        Modify an open order. Only the given fields change.

        Returns:
            OrderResult with status MODIFIED
        """
        changes: Dict[str, Any] = {}
        if order_type is not None:
            changes["order_type"] = order_type.value
        if quantity is not None:
            changes["quantity"] = quantity
        if price is not None:
            changes["price"] = price
        if trigger_price is not None:
            changes["trigger_price"] = trigger_price
        if validity is not None:
            changes["validity"] = validity.value

        logger.info(f"Modifying order {order_id}")
        result = await self._api_call(
            self.kite.modify_order,
            variety=variety.value,
            order_id=order_id,
            context=ORDER,
            **changes,
        )
        return OrderResult(order_id=str(result or order_id), status="MODIFIED")

    async def cancel_order(
        self, order_id: str, variety: OrderVariety = OrderVariety.REGULAR
    ) -> OrderResult:
        """
        Cancel an open order.

        Returns:
            OrderResult with status CANCELLED
        """
        logger.info(f"Cancelling order {order_id}")
        result = await self._api_call(
            self.kite.cancel_order, variety=variety.value, order_id=order_id, context=ORDER
        )
        return OrderResult(order_id=str(result or order_id), status="CANCELLED")

    async def get_orders(self) -> List[Dict[str, Any]]:
        return await self._api_call(self.kite.orders) or []

    async def get_order_history(self, order_id: str) -> List[Dict[str, Any]]:
        return await self._api_call(self.kite.order_history, order_id=order_id) or []

    def basket_order_payload(self, orders: Sequence[Order], readonly: bool = False) -> Dict[str, Any]:
        """
        Build the form that places a basket on Kite's own site.

        The caller POSTs ``form_data`` to ``url`` from the user's browser; the
        user reviews and confirms the orders on Kite. No session is needed.

        Args:
            orders: Orders in the basket
            readonly: Show the basket without letting the user edit it

        Returns:
            {"url": ..., "form_data": {"api_key": ..., "data": JSON list of orders}}
        """
        basket = [
            {
                "variety": order.variety.value,
                "tradingsymbol": self.to_broker_symbol(order.symbol, order.exchange),
                "exchange": broker_exchange(order.exchange),
                "transaction_type": order.transaction_type.value,
                "order_type": order.order_type.value,
                "quantity": order.quantity,
                "product": order.product.value,
                "price": order.price or 0,
                "readonly": readonly,
            }
            for order in orders
        ]
        return {
            "url": BASKET_URL,
            "form_data": {"api_key": self.api_key, "data": json.dumps(basket)},
        }

    async def get_holdings(self) -> List[Holding]:
        """Get demat holdings."""
        data = await self._api_call(self.kite.holdings) or []
        return [
            Holding(
                symbol=self.to_unified_symbol(h["tradingsymbol"], h["exchange"]),
                exchange=h["exchange"],
                quantity=int(h.get("quantity") or 0),
                average_price=float(h.get("average_price") or 0.0),
                last_price=float(h.get("last_price") or 0.0),
                pnl=float(h.get("pnl") or 0.0),
            )
            for h in data
        ]

    async def get_positions(self) -> List[Position]:
        """Get net positions (Kite returns both 'net' and 'day')."""
        data = await self._api_call(self.kite.positions) or {}
        return [
            Position(
                symbol=self.to_unified_symbol(p["tradingsymbol"], p["exchange"]),
                exchange=p["exchange"],
                quantity=int(p.get("quantity") or 0),
                average_price=float(p.get("average_price") or 0.0),
                last_price=float(p.get("last_price") or 0.0),
                pnl=float(p.get("pnl") or 0.0),
                product=self._parse_product(p.get("product")),
                overnight=(p.get("overnight_quantity") or 0) > 0,
            )
            for p in data.get("net", [])
        ]

    async def get_funds(self) -> Funds:
        """Get equity segment funds."""
        margins = await self._api_call(self.kite.margins) or {}
        equity = margins.get("equity") or {}
        available = equity.get("available") or {}

        return Funds(
            available_cash=float(available.get("cash") or 0.0),
            used_margin=float((equity.get("utilised") or {}).get("debits") or 0.0),
            total_balance=float(equity.get("net") or 0.0),
            collateral=float(available.get("collateral") or 0.0),
        )

    async def get_profile(self) -> Dict[str, Any]:
        return await self._api_call(self.kite.profile) or {}

    @staticmethod
    def _parse_product(product: Optional[str]) -> ProductType:
        """Parse Kite product type; unknown products are treated as MIS."""
        try:
            return ProductType(product)
        except ValueError:
            return ProductType.MIS

    async def _api_call(self, func: Callable, *args: Any, context: str = DATA, **kwargs: Any) -> Any:
        """
        Run a blocking SDK call and translate its failures.

        Args:
            func: SDK method
            *args: Positional arguments for the method
            context: AUTH (login), ORDER (order calls) or DATA
            **kwargs: Keyword arguments for the method

        Returns:
            SDK response

        Raises:
            AuthError, RateLimitError, NetworkError, BrokerRejectionError, BrokerError
        """
        if context != AUTH:
            self._require_token()

        name = getattr(func, "__name__", "api_call")
        broker = self.broker_type.value

        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except kite_exceptions.TokenException as e:
            logger.error(f"Kite {name} failed: token rejected: {e}")
            raise AuthError(str(e), broker=broker, code=str(e.code)) from e
        except kite_exceptions.NetworkException as e:
            if e.code == 429:
                logger.warning(f"Kite {name} rate limited: {e}")
                raise RateLimitError(str(e), broker=broker, code="429") from e
            logger.error(f"Kite {name} network error: {e}")
            raise NetworkError(str(e), broker=broker, code=str(e.code)) from e
        except (
            kite_exceptions.OrderException,
            kite_exceptions.InputException,
            kite_exceptions.PermissionException,
        ) as e:
            logger.error(f"Kite {name} rejected: {e}")
            if context == ORDER:
                raise BrokerRejectionError(str(e), broker=broker, code=str(e.code)) from e
            if context == AUTH:
                raise AuthError(str(e), broker=broker, code=str(e.code)) from e
            raise BrokerError(str(e), broker=broker, code=str(e.code)) from e
        except kite_exceptions.KiteException as e:
            logger.error(f"Kite {name} failed: {e}")
            if context == AUTH:
                raise AuthError(str(e), broker=broker, code=str(e.code)) from e
            raise BrokerError(str(e), broker=broker, code=str(e.code)) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Kite {name} transport error: {e}")
            raise NetworkError(str(e), broker=broker) from e
