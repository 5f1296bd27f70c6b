"""
Angel One SmartAPI broker implementation.

This module implements the BrokerInterface for Angel One's SmartAPI over raw
REST with ``httpx``. Login is a challenge flow (client code + MPIN + TOTP);
the TOTP can be generated locally with ``pyotp`` when the account's TOTP
secret is configured.

SmartAPI addresses instruments by token, so quotes and orders need the
catalog loaded first (``download_catalog`` or ``load_catalog``).

Classes:
    AngelOneBroker: SmartAPI broker implementation

Example:
    >>> async with AngelOneBroker(api_key, api_secret, totp_secret=seed) as broker:
    ...     await broker.create_session("A123456", "1234")
    ...     await broker.download_catalog()
    ...     ltp = await broker.get_ltp([("SBIN", "NSE")])

Note:
    See: https://smartapi.angelbroking.com/docs
"""

import binascii
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
import pyotp

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
    ValidationError,
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

BASE_URL = "https://apiconnect.angelbroking.com"
LOGIN_URL = "https://smartapi.angelbroking.com/publisher-login"
SCRIP_MASTER_URL = (
    "https://margincalculator.angelbroking.com/OpenAPI_File/files/OpenAPIScripMaster.json"
)

ROUTES = {
    "login": "/rest/auth/angelbroking/user/v1/loginByPassword",
    "generate_tokens": "/rest/auth/angelbroking/jwt/v1/generateTokens",
    "logout": "/rest/secure/angelbroking/user/v1/logout",
    "profile": "/rest/secure/angelbroking/user/v1/getProfile",
    "funds": "/rest/secure/angelbroking/user/v1/getRMS",
    "quote": "/rest/secure/angelbroking/market/v1/quote/",
    "place_order": "/rest/secure/angelbroking/order/v1/placeOrder",
    "modify_order": "/rest/secure/angelbroking/order/v1/modifyOrder",
    "cancel_order": "/rest/secure/angelbroking/order/v1/cancelOrder",
    "orders": "/rest/secure/angelbroking/order/v1/getOrderBook",
    "order_details": "/rest/secure/angelbroking/order/v1/details/",
    "holdings": "/rest/secure/angelbroking/portfolio/v1/getHolding",
    "positions": "/rest/secure/angelbroking/order/v1/getPosition",
}

# Tokens per quote call
QUOTE_BATCH_SIZE = 50

# Error codes meaning the token or login is invalid
AUTH_ERROR_CODES = {
    "AG8001", "AG8002", "AG8003",
    "AB1000", "AB1010", "AB1011",
    "AB1050", "AB1051", "AB8050", "AB8051",
}
RATE_LIMIT_MARKER = "access rate"

# Catalog instrument types kept (empty = cash equity)
CATALOG_TYPES = {"EQ", "AMXIDX", ""}
INDEX_TYPE = "AMXIDX"

PRODUCT_MAP = {
    ProductType.CNC: "DELIVERY",
    ProductType.MIS: "INTRADAY",
    ProductType.NRML: "CARRYFORWARD",
}
REVERSE_PRODUCT_MAP = {v: k for k, v in PRODUCT_MAP.items()}

ORDER_TYPE_MAP = {
    OrderType.MARKET: "MARKET",
    OrderType.LIMIT: "LIMIT",
    OrderType.SL: "STOPLOSS_LIMIT",
    OrderType.SL_M: "STOPLOSS_MARKET",
}

VARIETY_MAP = {
    OrderVariety.REGULAR: "NORMAL",
    OrderVariety.AMO: "AMO",
    OrderVariety.BO: "ROBO",
    OrderVariety.CO: "NORMAL",
    OrderVariety.ICEBERG: "NORMAL",
}
STOPLOSS_VARIETY = "STOPLOSS"

# Error context for _request
AUTH, ORDER, DATA = "auth", "order", "data"


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


class AngelOneBroker(BrokerInterface):
    """
    Angel One SmartAPI broker implementation.

    Attributes:
        client_code: Angel One client code (set at login if not given)
        client: httpx.AsyncClient (closed by aclose() unless injected)
        symbols: Symbol mapper and token registry for this account
    """

    broker_type = BrokerType.ANGELONE
    display_name = "Angel One"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        client_code: Optional[str] = None,
        access_token: Optional[str] = None,
        mpin: Optional[str] = None,
        totp: Optional[str] = None,
        totp_secret: Optional[str] = None,
        settings: Optional[TradingSettings] = None,
        order_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize SmartAPI broker.

        Args:
            api_key: SmartAPI private key (sent as X-PrivateKey)
            api_secret: SmartAPI secret
            client_code: Angel One client code
            access_token: JWT from an earlier login (optional)
            mpin: Account MPIN used by create_session() when not passed
            totp: One-time code for the next login only
            totp_secret: Base32 TOTP seed used when no code is supplied
            settings: Trading settings (client headers, timeout)
            order_limiter: Order pacing (default: 20 orders/s)
            client: Pre-built HTTP client (default: owned AsyncClient)
        """
        super().__init__(api_key, api_secret, settings=settings, order_limiter=order_limiter)

        self.client_code = client_code
        self.totp_secret = totp_secret
        self._mpin = mpin
        self._pending_totp = totp
        self.symbols = SymbolMapper(self.broker_type.value)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=BASE_URL, timeout=self.settings.request_timeout
        )

        if access_token:
            self.set_access_token(access_token)

    async def __aenter__(self) -> "AngelOneBroker":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self.client.aclose()

    def set_access_token(self, access_token: str) -> None:
        super().set_access_token(_strip_bearer(access_token))

    def get_login_url(self, redirect_url: Optional[str] = None) -> str:
        """
        Get the SmartAPI publisher login URL.

        Args:
            redirect_url: Optional redirect after login

        Returns:
            Login URL
        """
        params = {"api_key": self.api_key}
        if redirect_url:
            params["redirect_url"] = redirect_url
        return f"{LOGIN_URL}?{urlencode(params)}"

    async def create_session(
        self,
        client_code: Optional[str] = None,
        mpin: Optional[str] = None,
        totp: Optional[str] = None,
    ) -> BrokerSession:
        """
        Log in with client code, MPIN and one-time code.

        Args:
            client_code: Angel One client code (default: the configured one)
            mpin: Account MPIN (default: the configured one)
            totp: Current 6-digit code (default: generated from totp_secret,
                else the code given at construction)

        Returns:
            BrokerSession with JWT, refresh and feed tokens

        Raises:
            AuthError: Missing or rejected credentials
        """
        broker = self.broker_type.value
        client_code = client_code or self.client_code
        mpin = mpin or self._mpin
        if not client_code or not mpin:
            raise AuthError("Client code and MPIN are required", broker=broker)

        totp = totp or self._generate_totp() or self._pending_totp
        self._pending_totp = None
        if not totp:
            raise AuthError("TOTP is required (no TOTP secret configured)", broker=broker)

        data = await self._request(
            "POST",
            ROUTES["login"],
            json={"clientcode": client_code, "password": mpin, "totp": totp},
            auth=False,
            context=AUTH,
        ) or {}

        jwt_token = data.get("jwtToken")
        if not jwt_token:
            raise AuthError("Login response has no JWT", broker=broker)

        self.client_code = client_code
        self.set_access_token(jwt_token)
        self._session = BrokerSession(
            broker=self.broker_type,
            user_id=client_code,
            user_name=data.get("name") or client_code,
            email=data.get("email"),
            access_token=self._access_token,
            refresh_token=data.get("refreshToken"),
            feed_token=data.get("feedToken"),
            expires_at=self._session_expiry(),
        )

        logger.info(f"Angel One session created for {client_code}")
        return self._session

    def _generate_totp(self) -> Optional[str]:
        if not self.totp_secret:
            return None
        try:
            return pyotp.TOTP(self.totp_secret).now()
        except (binascii.Error, ValueError) as e:
            raise AuthError("Invalid TOTP secret", broker=self.broker_type.value) from e

    async def refresh_session(self) -> BrokerSession:
        """
        Exchange the refresh token for a fresh JWT.

        Returns:
            Updated BrokerSession

        Raises:
            AuthError: No session to refresh, or refresh rejected
        """
        if self._session is None or not self._session.refresh_token:
            raise AuthError("No refresh token available", broker=self.broker_type.value)

        data = await self._request(
            "POST",
            ROUTES["generate_tokens"],
            json={"refreshToken": self._session.refresh_token},
            context=AUTH,
        ) or {}

        if not data.get("jwtToken"):
            raise AuthError("Token refresh returned no JWT", broker=self.broker_type.value)

        self.set_access_token(data["jwtToken"])
        self._session.access_token = self._access_token
        self._session.refresh_token = data.get("refreshToken") or self._session.refresh_token
        self._session.feed_token = data.get("feedToken") or self._session.feed_token
        self._session.expires_at = self._session_expiry()

        logger.info(f"Angel One session refreshed for {self._session.user_id}")
        return self._session

    async def logout(self) -> None:
        """Terminate the session and forget its tokens."""
        await self._request("POST", ROUTES["logout"], json={"clientcode": self.client_code})
        self._access_token = None
        self._session = None
        logger.info(f"Angel One session closed for {self.client_code}")

    def to_unified_symbol(self, broker_symbol: str, exchange: str) -> str:
        return self.symbols.to_unified(broker_symbol, exchange)

    def to_broker_symbol(self, symbol: str, exchange: str) -> str:
        return self.symbols.to_broker(symbol, exchange)

    async def download_catalog(self) -> List[UnifiedSymbol]:
        """
        Download the public scrip master and normalize it.

        Keeps NSE/BSE rows whose instrument type is EQ, AMXIDX or empty.
        Tick size and strike are converted from paise. The adapter registry
        is replaced with the result.

        Returns:
            Unified catalog
        """
        rows = await self._request_public(SCRIP_MASTER_URL)
        if not isinstance(rows, list):
            raise NetworkError("Scrip master is not a JSON list", broker=self.broker_type.value)

        parsed: List[UnifiedSymbol] = []
        skipped = 0
        for row in rows:
            try:
                entry = self._parse_instrument(row)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.debug(f"Skipping unparseable Angel One scrip row: {e}")
                continue
            if entry is not None:
                parsed.append(entry)

        catalog = self.symbols.deduplicate(parsed)
        self.symbols.load(catalog)

        logger.info(
            f"Angel One catalog: {len(catalog)} instruments from {len(rows)} rows "
            f"({skipped} unparseable)"
        )
        return catalog

    def _parse_instrument(self, row: Dict[str, Any]) -> Optional[UnifiedSymbol]:
        """Convert one scrip master row, or None when filtered out."""
        exchange = row.get("exch_seg")
        instrument_type = row.get("instrumenttype") or ""

        if exchange not in EXCHANGES or instrument_type not in CATALOG_TYPES:
            return None

        broker_symbol = str(row["symbol"]).strip()
        token = str(row["token"]).strip()
        if not broker_symbol or not token:
            raise ValueError("missing symbol or token")

        is_index = instrument_type == INDEX_TYPE
        tick_size = float(row.get("tick_size") or 0) / 100
        strike = float(row.get("strike") or 0) / 100

        return UnifiedSymbol(
            symbol=self.to_unified_symbol(broker_symbol, exchange),
            broker_symbol=broker_symbol,
            exchange=index_exchange(exchange) if is_index else exchange,
            broker_exchange=exchange,
            token=token,
            name=str(row.get("name") or ""),
            instrument_type=InstrumentType.INDEX if is_index else InstrumentType.EQ,
            lot_size=int(float(row.get("lotsize") or 1)),
            tick_size=tick_size if tick_size > 0 else 0.05,
            expiry=format_expiry(row.get("expiry")),
            strike=strike if strike > 0 else None,
        )

    def _resolve_tokens(
        self, instruments: Sequence[Instrument]
    ) -> Dict[Tuple[str, str], Instrument]:
        """(native exchange, token) -> requested (symbol, exchange); unknown ones skipped."""
        resolved: Dict[Tuple[str, str], Instrument] = {}
        for symbol, exchange in instruments:
            token = self.symbols.token_for(symbol, exchange)
            if token is None:
                logger.warning(f"No Angel One token for {exchange}:{symbol}, skipping")
                continue
            resolved[(broker_exchange(exchange), token)] = (symbol, exchange)
        return resolved

    async def _fetch_market_data(
        self, instruments: Sequence[Instrument], mode: str
    ) -> List[Tuple[Instrument, Dict[str, Any]]]:
        """Run quote calls of 50 tokens each; returns (requested, raw row) pairs."""
        resolved = self._resolve_tokens(instruments)
        fetched: List[Tuple[Instrument, Dict[str, Any]]] = []

        for batch in chunks(list(resolved), QUOTE_BATCH_SIZE):
            exchange_tokens: Dict[str, List[str]] = {}
            for exchange, token in batch:
                exchange_tokens.setdefault(exchange, []).append(token)

            data = await self._request(
                "POST", ROUTES["quote"], json={"mode": mode, "exchangeTokens": exchange_tokens}
            ) or {}

            for raw in data.get("fetched") or []:
                requested = resolved.get((raw.get("exchange"), str(raw.get("symbolToken"))))
                if requested is not None:
                    fetched.append((requested, raw))

            if data.get("unfetched"):
                logger.warning(f"Angel One could not quote {len(data['unfetched'])} instruments")

        return fetched

    async def get_quotes(self, instruments: Sequence[Instrument]) -> Dict[str, Quote]:
        """
        Get full quotes, batched 50 tokens per call.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            Quotes keyed by "EXCHANGE:SYMBOL"
        """
        if not instruments:
            return {}

        result: Dict[str, Quote] = {}
        for (symbol, exchange), raw in await self._fetch_market_data(instruments, "FULL"):
            result[instrument_key(symbol, exchange)] = Quote(
                symbol=symbol,
                exchange=exchange,
                last_price=_to_float(raw.get("ltp")),
                open=_to_float(raw.get("open")),
                high=_to_float(raw.get("high")),
                low=_to_float(raw.get("low")),
                close=_to_float(raw.get("close")),
                volume=_to_int(raw.get("tradeVolume")),
                change=_to_float(raw.get("netChange")),
                change_percent=_to_float(raw.get("percentChange")),
                timestamp=_parse_timestamp(raw.get("exchFeedTime")),
            )
        return result

    async def get_ltp(self, instruments: Sequence[Instrument]) -> Dict[str, LTP]:
        """
        Get last traded prices, batched 50 tokens per call.

        Args:
            instruments: (symbol, exchange) pairs

        Returns:
            LTPs keyed by "EXCHANGE:SYMBOL"
        """
        if not instruments:
            return {}

        return {
            instrument_key(symbol, exchange): LTP(
                symbol=symbol, exchange=exchange, last_price=_to_float(raw.get("ltp"))
            )
            for (symbol, exchange), raw in await self._fetch_market_data(instruments, "LTP")
        }

    async def place_order(self, order: Order) -> OrderResult:
        """
        Place order with SmartAPI.

        Args:
            order: Order to place

        Returns:
            OrderResult with the Angel One order ID

        Raises:
            ValidationError: Instrument token unknown (catalog not loaded)
            BrokerRejectionError: Order rejected by Angel One
        """
        token = self.symbols.token_for(order.symbol, order.exchange)
        if token is None:
            raise ValidationError(
                f"No instrument token for {order.key}; load the catalog first",
                broker=self.broker_type.value,
            )

        payload: Dict[str, Any] = {
            "variety": self._variety(order.variety, order.order_type),
            "tradingsymbol": self.to_broker_symbol(order.symbol, order.exchange),
            "symboltoken": token,
            "transactiontype": order.transaction_type.value,
            "exchange": broker_exchange(order.exchange),
            "ordertype": ORDER_TYPE_MAP[order.order_type],
            "producttype": PRODUCT_MAP[order.product],
            "duration": order.validity.value,
            "price": str(order.price) if order.price is not None else "0",
            "squareoff": "0",
            "stoploss": "0",
            "quantity": str(order.quantity),
        }
        if order.trigger_price is not None:
            payload["triggerprice"] = str(order.trigger_price)
        if order.tag:
            payload["ordertag"] = order.tag

        logger.info(
            f"Placing order: {order.symbol} {order.transaction_type.value} "
            f"{order.quantity} @ {order.order_type.value}"
        )

        data = await self._request("POST", ROUTES["place_order"], json=payload, context=ORDER) or {}
        order_id = data.get("orderid")
        if not order_id:
            raise BrokerRejectionError("Angel One returned no order ID", broker=self.broker_type.value)

        logger.info(f"Order placed successfully: {order_id}")
        return OrderResult(order_id=str(order_id), status="PLACED")

    @staticmethod
    def _variety(variety: OrderVariety, order_type: Optional[OrderType] = None) -> str:
        if order_type in (OrderType.SL, OrderType.SL_M):
            return STOPLOSS_VARIETY
        return VARIETY_MAP[variety]

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
        payload: Dict[str, Any] = {
            "variety": self._variety(variety, order_type),
            "orderid": order_id,
        }
        if order_type is not None:
            payload["ordertype"] = ORDER_TYPE_MAP[order_type]
        if quantity is not None:
            payload["quantity"] = str(quantity)
        if price is not None:
            payload["price"] = str(price)
        if trigger_price is not None:
            payload["triggerprice"] = str(trigger_price)
        if validity is not None:
            payload["duration"] = validity.value

        logger.info(f"Modifying order {order_id}")
        data = await self._request("POST", ROUTES["modify_order"], json=payload, context=ORDER) or {}
        return OrderResult(order_id=str(data.get("orderid") or order_id), status="MODIFIED")

    async def cancel_order(
        self, order_id: str, variety: OrderVariety = OrderVariety.REGULAR
    ) -> OrderResult:
        """
        Cancel an open order.

        Returns:
            OrderResult with status CANCELLED
        """
        logger.info(f"Cancelling order {order_id}")
        data = await self._request(
            "POST",
            ROUTES["cancel_order"],
            json={"variety": VARIETY_MAP[variety], "orderid": order_id},
            context=ORDER,
        ) or {}
        return OrderResult(order_id=str(data.get("orderid") or order_id), status="CANCELLED")

    async def get_orders(self) -> List[Dict[str, Any]]:
        return await self._request("GET", ROUTES["orders"]) or []

    async def get_order_history(self, order_id: str) -> List[Dict[str, Any]]:
        """SmartAPI returns the latest state of the order under its unique order ID."""
        data = await self._request("GET", f"{ROUTES['order_details']}{order_id}")
        if not data:
            return []
        return data if isinstance(data, list) else [data]

    async def get_holdings(self) -> List[Holding]:
        """Get demat holdings."""
        data = await self._request("GET", ROUTES["holdings"]) or []
        return [
            Holding(
                symbol=self.to_unified_symbol(h["tradingsymbol"], h["exchange"]),
                exchange=h["exchange"],
                quantity=_to_int(h.get("quantity")),
                average_price=_to_float(h.get("averageprice")),
                last_price=_to_float(h.get("ltp")),
                pnl=_to_float(h.get("profitandloss")),
            )
            for h in data
        ]

    async def get_positions(self) -> List[Position]:
        """Get net positions."""
        data = await self._request("GET", ROUTES["positions"]) or []
        return [
            Position(
                symbol=self.to_unified_symbol(p["tradingsymbol"], p["exchange"]),
                exchange=p["exchange"],
                quantity=_to_int(p.get("netqty")),
                average_price=_to_float(p.get("averageprice")),
                last_price=_to_float(p.get("ltp")),
                pnl=_to_float(p.get("pnl")),
                product=REVERSE_PRODUCT_MAP.get(p.get("producttype"), ProductType.MIS),
                overnight=_to_int(p.get("cfbuyqty")) > 0 or _to_int(p.get("cfsellqty")) > 0,
            )
            for p in data
        ]

    async def get_funds(self) -> Funds:
        """Get funds from the RMS limits."""
        data = await self._request("GET", ROUTES["funds"]) or {}
        return Funds(
            available_cash=_to_float(data.get("availablecash")),
            used_margin=_to_float(data.get("utiliseddebits")),
            total_balance=_to_float(data.get("net")),
            collateral=_to_float(data.get("collateral")),
        )

    async def get_profile(self) -> Dict[str, Any]:
        return await self._request("GET", ROUTES["profile"]) or {}

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        client = self.settings.angelone
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": client.user_type,
            "X-SourceID": client.source_id,
            "X-ClientLocalIP": client.local_ip,
            "X-ClientPublicIP": client.public_ip,
            "X-MACAddress": client.mac_address,
            "X-PrivateKey": self.api_key,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Angel One {url} {type(e).__name__}: {e}")
            raise NetworkError(str(e) or type(e).__name__, broker=self.broker_type.value) from e

    async def _request_public(self, url: str) -> Any:
        """GET a public (unauthenticated) JSON document."""
        broker = self.broker_type.value
        response = await self._send("GET", url)

        if response.status_code == 429:
            raise RateLimitError("Scrip master download rate limited", broker=broker, code="429")
        if response.status_code >= 400:
            raise NetworkError(
                f"Scrip master download failed: HTTP {response.status_code}",
                broker=broker,
                code=str(response.status_code),
            )
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError("Scrip master is not valid JSON", broker=broker) from e

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        auth: bool = True,
        context: str = DATA,
    ) -> Any:
        """
        Call a SmartAPI endpoint and unwrap its ``data`` field.

        Args:
            method: HTTP method
            path: Route under BASE_URL
            json: Request body
            auth: Send the JWT (requires a session)
            context: AUTH (login), ORDER (order calls) or DATA

        Returns:
            The response ``data`` field

        Raises:
            AuthError, RateLimitError, NetworkError, BrokerRejectionError, BrokerError
        """
        token = self._require_token() if auth else None
        broker = self.broker_type.value

        response = await self._send(method, path, json=json, headers=self._headers(token))
        status = str(response.status_code)

        if response.status_code == 429 or (
            response.status_code >= 400 and RATE_LIMIT_MARKER in response.text.lower()
        ):
            logger.warning(f"Angel One {path} rate limited")
            raise RateLimitError("Exceeded Angel One access rate", broker=broker, code=status)

        if response.status_code in (401, 403):
            logger.error(f"Angel One {path} unauthorized: HTTP {status}")
            raise AuthError(f"Unauthorized (HTTP {status})", broker=broker, code=status)

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Angel One {path} returned non-JSON body (HTTP {status})")
            raise NetworkError(f"Non-JSON response (HTTP {status})", broker=broker, code=status) from e

        if not isinstance(body, dict):
            raise NetworkError("Unexpected response shape", broker=broker, code=status)

        if not body.get("status"):
            self._raise_api_error(path, body, context)

        return body.get("data")

    def _raise_api_error(self, path: str, body: Dict[str, Any], context: str) -> None:
        broker = self.broker_type.value
        code = body.get("errorcode") or body.get("errorCode") or None
        message = body.get("message") or "Angel One request failed"

        logger.error(f"Angel One {path} failed: {message} ({code})")

        if code in AUTH_ERROR_CODES or context == AUTH:
            raise AuthError(message, broker=broker, code=code)
        if RATE_LIMIT_MARKER in message.lower():
            raise RateLimitError(message, broker=broker, code=code)
        if context == ORDER:
            raise BrokerRejectionError(message, broker=broker, code=code)
        raise BrokerError(message, broker=broker, code=code)


def _strip_bearer(token: str) -> str:
    return token[len("Bearer "):] if token.startswith("Bearer ") else token


def _parse_timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.strptime(value, "%d-%b-%Y %H:%M:%S")
        except ValueError:
            pass
    return datetime.now()
