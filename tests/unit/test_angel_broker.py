"""
Unit tests for the Angel One SmartAPI adapter.

HTTP traffic goes through httpx.MockTransport; no network calls are made.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from stockbasket.execution.angel_broker import (
    BASE_URL,
    ROUTES,
    SCRIP_MASTER_URL,
    AngelOneBroker,
)
from stockbasket.execution.broker_interface import (
    BrokerType,
    InstrumentType,
    Order,
    OrderType,
    OrderVariety,
    ProductType,
    TransactionType,
    UnifiedSymbol,
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
from stockbasket.utils.settings import AngelOneClientSettings, TradingSettings

Handler = Callable[[httpx.Request], httpx.Response]


def ok(data: Any) -> httpx.Response:
    return httpx.Response(200, json={"status": True, "message": "SUCCESS", "errorcode": "", "data": data})


def fail(message: str, errorcode: str = "", status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code, json={"status": False, "message": message, "errorcode": errorcode, "data": None}
    )


class FakeSmartApi:
    """Routes requests by path and records them."""

    def __init__(self):
        self.routes: Dict[str, Handler] = {}
        self.requests: List[httpx.Request] = []

    def on(self, path: str, response: Any) -> None:
        self.routes[path] = response if callable(response) else (lambda request: response)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def api() -> FakeSmartApi:
    return FakeSmartApi()


def make_broker(api: FakeSmartApi, access_token: Optional[str] = "jwt", **kwargs: Any) -> AngelOneBroker:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(api))
    kwargs.setdefault("client_code", "A123456")
    return AngelOneBroker(
        api_key="angel_key",
        api_secret="angel_secret",
        access_token=access_token,
        client=client,
        **kwargs,
    )


@pytest.fixture
def broker(api, sample_catalog) -> AngelOneBroker:
    broker = make_broker(api)
    broker.load_catalog(sample_catalog)
    return broker


def _order(symbol="TCS", **kwargs) -> Order:
    return Order(symbol=symbol, exchange="NSE", transaction_type=TransactionType.BUY, quantity=5, **kwargs)


LOGIN_DATA = {"jwtToken": "Bearer new_jwt", "refreshToken": "refresh", "feedToken": "feed"}


class TestAngelAuthentication:
    """Test the client code + MPIN + TOTP login."""

    def test_login_url(self, api):
        url = make_broker(api).get_login_url("https://app.example/callback")

        assert url.startswith("https://smartapi.angelbroking.com/publisher-login?")
        assert "api_key=angel_key" in url
        assert "redirect_url=https%3A%2F%2Fapp.example%2Fcallback" in url

    def test_bearer_prefix_stripped(self, api):
        broker = make_broker(api, access_token="Bearer abc")
        assert broker._headers(broker._require_token())["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_create_session_with_totp_secret(self, api):
        api.on(ROUTES["login"], ok(LOGIN_DATA))
        broker = make_broker(api, access_token=None, mpin="1234", totp_secret="JBSWY3DPEHPK3PXP")

        session = await broker.create_session()

        body = api.body()
        assert body["clientcode"] == "A123456"
        assert body["password"] == "1234"
        assert len(body["totp"]) == 6 and body["totp"].isdigit()

        headers = api.requests[-1].headers
        assert headers["X-PrivateKey"] == "angel_key"
        assert headers["X-SourceID"] == "WEB"
        assert "Authorization" not in headers

        assert session.broker == BrokerType.ANGELONE
        assert session.user_id == "A123456"
        assert session.access_token == "new_jwt"
        assert session.refresh_token == "refresh"
        assert session.feed_token == "feed"
        assert broker.has_access_token()

    @pytest.mark.asyncio
    async def test_explicit_arguments_win(self, api):
        api.on(ROUTES["login"], ok(LOGIN_DATA))
        broker = make_broker(api, access_token=None, mpin="0000", totp_secret="JBSWY3DPEHPK3PXP")

        await broker.create_session("B777", "4321", "654321")

        assert api.body() == {"clientcode": "B777", "password": "4321", "totp": "654321"}
        assert broker.client_code == "B777"

    @pytest.mark.asyncio
    async def test_supplied_totp_used_once(self, api):
        api.on(ROUTES["login"], ok(LOGIN_DATA))
        broker = make_broker(api, access_token=None, mpin="1234", totp="111111")

        await broker.create_session()
        assert api.body()["totp"] == "111111"

        with pytest.raises(AuthError, match="TOTP is required"):
            await broker.create_session()

    @pytest.mark.asyncio
    async def test_missing_mpin(self, api):
        broker = make_broker(api, access_token=None, totp="111111")

        with pytest.raises(AuthError, match="Client code and MPIN are required"):
            await broker.create_session()
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_invalid_totp_secret(self, api):
        broker = make_broker(api, access_token=None, mpin="1234", totp_secret="not base32!")

        with pytest.raises(AuthError, match="Invalid TOTP secret"):
            await broker.create_session()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            fail("Invalid totp", "AB1050"),
            fail("Something went wrong", "AB2000"),
            httpx.Response(401, text="Unauthorized"),
            ok({"refreshToken": "only"}),
        ],
    )
    async def test_login_rejected(self, api, response):
        api.on(ROUTES["login"], response)
        broker = make_broker(api, access_token=None, mpin="1234", totp="111111")

        with pytest.raises(AuthError):
            await broker.create_session()
        assert not broker.has_access_token()

    @pytest.mark.asyncio
    async def test_refresh_session(self, api):
        api.on(ROUTES["login"], ok(LOGIN_DATA))
        api.on(ROUTES["generate_tokens"], ok({"jwtToken": "refreshed_jwt", "refreshToken": "refresh2"}))
        broker = make_broker(api, access_token=None, mpin="1234", totp="111111")
        await broker.create_session()

        session = await broker.refresh_session()

        assert api.body() == {"refreshToken": "refresh"}
        assert api.requests[-1].headers["Authorization"] == "Bearer new_jwt"
        assert session.access_token == "refreshed_jwt"
        assert session.refresh_token == "refresh2"
        assert session.feed_token == "feed"

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, api):
        with pytest.raises(AuthError, match="No refresh token"):
            await make_broker(api).refresh_session()

    @pytest.mark.asyncio
    async def test_logout(self, api):
        api.on(ROUTES["logout"], ok(None))
        broker = make_broker(api)

        await broker.logout()

        assert api.body() == {"clientcode": "A123456"}
        assert not broker.has_access_token()

    @pytest.mark.asyncio
    async def test_calls_require_token(self, api):
        broker = make_broker(api, access_token=None)

        with pytest.raises(AuthError, match="Access token not set"):
            await broker.get_holdings()
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_client_headers_from_settings(self, api):
        api.on(ROUTES["profile"], ok({"clientcode": "A123456"}))
        settings = TradingSettings(angelone=AngelOneClientSettings(public_ip="10.1.1.1", mac_address="aa:bb"))
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(api))
        broker = AngelOneBroker("angel_key", "s", access_token="jwt", settings=settings, client=client)

        await broker.get_profile()

        headers = api.requests[-1].headers
        assert headers["X-ClientPublicIP"] == "10.1.1.1"
        assert headers["X-MACAddress"] == "aa:bb"
        assert headers["X-UserType"] == "USER"


SCRIP_MASTER = [
    {"token": "4", "symbol": "SBIN-BE", "name": "SBIN", "expiry": "", "strike": "-1.000000",
     "lotsize": "1", "instrumenttype": "", "exch_seg": "NSE", "tick_size": "5.000000"},
    {"token": "3045", "symbol": "SBIN-EQ", "name": "SBIN", "expiry": "", "strike": "-1.000000",
     "lotsize": "1", "instrumenttype": "", "exch_seg": "NSE", "tick_size": "5.000000"},
    {"token": "99926000", "symbol": "Nifty 50", "name": "NIFTY", "expiry": "", "strike": "0.000000",
     "lotsize": "1", "instrumenttype": "AMXIDX", "exch_seg": "NSE", "tick_size": "0.000000"},
    {"token": "500112", "symbol": "SBIN", "name": "SBIN", "expiry": "", "strike": "-1.000000",
     "lotsize": "1", "instrumenttype": "", "exch_seg": "BSE", "tick_size": "5.000000"},
    {"token": "35003", "symbol": "NIFTY28MAR2422000CE", "name": "NIFTY", "expiry": "28MAR2024",
     "strike": "2200000.000000", "lotsize": "50", "instrumenttype": "OPTIDX", "exch_seg": "NFO",
     "tick_size": "5.000000"},
    {"token": "", "symbol": "BROKEN-EQ", "name": "BROKEN", "instrumenttype": "", "exch_seg": "NSE"},
    {"token": "1", "symbol": "GOLDM", "instrumenttype": "FUTCOM", "exch_seg": "MCX"},
]


class TestAngelCatalog:
    """Test scrip master normalization."""

    @pytest.mark.asyncio
    async def test_download_catalog(self, api):
        api.on(httpx.URL(SCRIP_MASTER_URL).path, httpx.Response(200, json=SCRIP_MASTER))
        broker = make_broker(api, access_token=None)

        catalog = await broker.download_catalog()

        by_key = {(s.symbol, s.exchange): s for s in catalog}
        assert set(by_key) == {("SBIN", "NSE"), ("NIFTY", "NSE_INDEX"), ("SBIN", "BSE")}

        sbin = by_key[("SBIN", "NSE")]
        assert sbin.broker_symbol == "SBIN-EQ"
        assert sbin.token == "3045"
        assert sbin.tick_size == 0.05
        assert sbin.strike is None

        nifty = by_key[("NIFTY", "NSE_INDEX")]
        assert nifty.instrument_type == InstrumentType.INDEX
        assert nifty.broker_exchange == "NSE"
        assert nifty.tick_size == 0.05

        assert broker.symbols.token_for("NIFTY", "NSE") == "99926000"
        assert "Authorization" not in api.requests[-1].headers

    @pytest.mark.asyncio
    async def test_download_catalog_http_error(self, api):
        api.on(httpx.URL(SCRIP_MASTER_URL).path, httpx.Response(503, text="unavailable"))

        with pytest.raises(NetworkError, match="HTTP 503"):
            await make_broker(api).download_catalog()

    @pytest.mark.asyncio
    async def test_download_catalog_not_a_list(self, api):
        api.on(httpx.URL(SCRIP_MASTER_URL).path, httpx.Response(200, json={"error": "x"}))

        with pytest.raises(NetworkError, match="not a JSON list"):
            await make_broker(api).download_catalog()

    def test_option_row_minor_units(self, api):
        broker = make_broker(api)
        row = dict(SCRIP_MASTER[4], exch_seg="NSE", instrumenttype="EQ")

        entry = broker._parse_instrument(row)

        assert entry.strike == 22000.0
        assert entry.expiry == "28-MAR-24"
        assert entry.lot_size == 50


class TestAngelMarketData:
    """Test token-based quotes."""

    @pytest.mark.asyncio
    async def test_get_ltp(self, api, broker):
        api.on(ROUTES["quote"], ok({
            "fetched": [
                {"exchange": "NSE", "tradingSymbol": "TCS-EQ", "symbolToken": "11536", "ltp": 4200.0},
                {"exchange": "NSE", "tradingSymbol": "Nifty 50", "symbolToken": "99926000", "ltp": 22000.5},
            ],
            "unfetched": [],
        }))

        ltp = await broker.get_ltp([("TCS", "NSE"), ("NIFTY", "NSE_INDEX"), ("UNKNOWN", "NSE")])

        assert api.body() == {"mode": "LTP", "exchangeTokens": {"NSE": ["11536", "99926000"]}}
        assert ltp["NSE:TCS"].last_price == 4200.0
        assert ltp["NSE_INDEX:NIFTY"].last_price == 22000.5
        assert "NSE:UNKNOWN" not in ltp

    @pytest.mark.asyncio
    async def test_get_ltp_batches_50(self, api):
        api.on(ROUTES["quote"], ok({"fetched": [], "unfetched": []}))
        broker = make_broker(api)
        broker.load_catalog([
            UnifiedSymbol(symbol=f"S{i}", broker_symbol=f"S{i}-EQ", exchange="NSE",
                          broker_exchange="NSE", token=str(i))
            for i in range(60)
        ])

        await broker.get_ltp([(f"S{i}", "NSE") for i in range(60)])

        assert [len(json.loads(r.content)["exchangeTokens"]["NSE"]) for r in api.requests] == [50, 10]

    @pytest.mark.asyncio
    async def test_get_quotes(self, api, broker):
        api.on(ROUTES["quote"], ok({
            "fetched": [{
                "exchange": "NSE", "tradingSymbol": "INFY-EQ", "symbolToken": "1594",
                "ltp": 1600.0, "open": 1580.0, "high": 1610.0, "low": 1575.0, "close": 1590.0,
                "tradeVolume": 5400000, "netChange": 10.0, "percentChange": 0.63,
                "exchFeedTime": "21-Mar-2024 15:29:59",
            }],
            "unfetched": [],
        }))

        quotes = await broker.get_quotes([("INFY", "NSE")])
        quote = quotes["NSE:INFY"]

        assert api.body()["mode"] == "FULL"
        assert quote.last_price == 1600.0
        assert quote.close == 1590.0
        assert quote.volume == 5400000
        assert quote.change_percent == 0.63
        assert quote.timestamp.year == 2024

    @pytest.mark.asyncio
    async def test_empty_request(self, api, broker):
        assert await broker.get_ltp([]) == {}
        assert api.requests == []


class TestAngelOrders:
    """Test order placement and error mapping."""

    @pytest.mark.asyncio
    async def test_place_market_order(self, api, broker):
        api.on(ROUTES["place_order"], ok({"script": "TCS-EQ", "orderid": "240321000123"}))

        result = await broker.place_order(_order())

        assert api.body() == {
            "variety": "NORMAL",
            "tradingsymbol": "TCS-EQ",
            "symboltoken": "11536",
            "transactiontype": "BUY",
            "exchange": "NSE",
            "ordertype": "MARKET",
            "producttype": "DELIVERY",
            "duration": "DAY",
            "price": "0",
            "squareoff": "0",
            "stoploss": "0",
            "quantity": "5",
        }
        assert result.order_id == "240321000123"
        assert result.status == "PLACED"

    @pytest.mark.asyncio
    async def test_place_stop_loss_order(self, api, broker):
        api.on(ROUTES["place_order"], ok({"orderid": "1"}))

        await broker.place_order(
            _order(order_type=OrderType.SL, price=4150.0, trigger_price=4160.0, product=ProductType.MIS, tag="b1")
        )

        body = api.body()
        assert body["variety"] == "STOPLOSS"
        assert body["ordertype"] == "STOPLOSS_LIMIT"
        assert body["producttype"] == "INTRADAY"
        assert body["price"] == "4150.0"
        assert body["triggerprice"] == "4160.0"
        assert body["ordertag"] == "b1"

    @pytest.mark.asyncio
    async def test_place_order_unknown_token(self, api, broker):
        with pytest.raises(ValidationError, match="load the catalog first"):
            await broker.place_order(_order(symbol="UNKNOWN"))
        assert api.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,expected",
        [
            (fail("Insufficient funds", "AB4008"), BrokerRejectionError),
            (fail("Invalid Token", "AG8001"), AuthError),
            (fail("Access denied because of exceeding access rate"), RateLimitError),
            (httpx.Response(429, text="Too many requests"), RateLimitError),
            (httpx.Response(403, text="Forbidden"), AuthError),
            (httpx.Response(502, text="<html>Bad gateway</html>"), NetworkError),
            (httpx.Response(200, json=["unexpected"]), NetworkError),
        ],
    )
    async def test_place_order_error_mapping(self, api, broker, response, expected):
        api.on(ROUTES["place_order"], response)

        with pytest.raises(expected) as exc_info:
            await broker.place_order(_order())

        assert exc_info.value.broker == "angelone"

    @pytest.mark.asyncio
    async def test_transport_failure(self, api, broker):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        api.on(ROUTES["place_order"], refuse)

        with pytest.raises(NetworkError, match="Connection refused"):
            await broker.place_order(_order())

    @pytest.mark.asyncio
    async def test_undecodable_response_fails_only_its_order(self, api, sample_catalog, fake_clock):
        calls = []

        def place(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.DecodingError("corrupt gzip body", request=request)
            return ok({"orderid": "2"})

        api.on(ROUTES["place_order"], place)
        limiter = RateLimiter(rate=20, clock=fake_clock, sleep=fake_clock.sleep)
        broker = make_broker(api, order_limiter=limiter)
        broker.load_catalog(sample_catalog)

        outcomes = await broker.place_multiple_orders([_order("TCS"), _order("INFY")])

        assert [o.order.symbol for o in outcomes] == ["TCS", "INFY"]
        assert isinstance(outcomes[0].error, NetworkError)
        assert "corrupt gzip body" in outcomes[0].error_message
        assert outcomes[1].result.order_id == "2"

    @pytest.mark.asyncio
    async def test_data_call_failure(self, api, broker):
        api.on(ROUTES["holdings"], fail("Something went wrong", "AB2001"))

        with pytest.raises(BrokerError) as exc_info:
            await broker.get_holdings()

        assert type(exc_info.value) is BrokerError
        assert exc_info.value.code == "AB2001"

    @pytest.mark.asyncio
    async def test_modify_order(self, api, broker):
        api.on(ROUTES["modify_order"], ok({"orderid": "1001"}))

        result = await broker.modify_order("1001", order_type=OrderType.LIMIT, quantity=3, price=4100.0)

        assert api.body() == {
            "variety": "NORMAL",
            "orderid": "1001",
            "ordertype": "LIMIT",
            "quantity": "3",
            "price": "4100.0",
        }
        assert result.status == "MODIFIED"

    @pytest.mark.asyncio
    async def test_cancel_order(self, api, broker):
        api.on(ROUTES["cancel_order"], ok({"orderid": "1001"}))

        result = await broker.cancel_order("1001", variety=OrderVariety.AMO)

        assert api.body() == {"variety": "AMO", "orderid": "1001"}
        assert result.status == "CANCELLED"


class TestAngelPortfolio:
    """Test holdings, positions, funds and profile."""

    @pytest.mark.asyncio
    async def test_get_holdings(self, api, broker):
        api.on(ROUTES["holdings"], ok([
            {"tradingsymbol": "TCS-EQ", "exchange": "NSE", "quantity": 10,
             "averageprice": 3500.0, "ltp": 3850.0, "profitandloss": 3500},
        ]))

        holdings = await broker.get_holdings()

        assert holdings[0].symbol == "TCS"
        assert holdings[0].quantity == 10
        assert holdings[0].pnl == 3500.0
        assert api.requests[-1].method == "GET"

    @pytest.mark.asyncio
    async def test_get_positions(self, api, broker):
        api.on(ROUTES["positions"], ok([
            {"tradingsymbol": "INFY-EQ", "exchange": "NSE", "netqty": "-5", "averageprice": "1500",
             "ltp": "1490", "pnl": "50", "producttype": "CARRYFORWARD", "cfbuyqty": "0", "cfsellqty": "5"},
        ]))

        positions = await broker.get_positions()

        assert positions[0].symbol == "INFY"
        assert positions[0].quantity == -5
        assert positions[0].product == ProductType.NRML
        assert positions[0].overnight

    @pytest.mark.asyncio
    async def test_empty_positions(self, api, broker):
        api.on(ROUTES["positions"], ok(None))
        assert await broker.get_positions() == []

    @pytest.mark.asyncio
    async def test_get_order_history(self, api, broker):
        api.on(
            ROUTES["order_details"] + "a1b2c3-uuid",
            ok({"orderid": "240321000123", "uniqueorderid": "a1b2c3-uuid", "orderstatus": "complete"}),
        )

        history = await broker.get_order_history("a1b2c3-uuid")

        assert api.requests[-1].method == "GET"
        assert api.requests[-1].headers["Authorization"] == "Bearer jwt"
        assert [h["orderstatus"] for h in history] == ["complete"]

    @pytest.mark.asyncio
    async def test_get_order_history_unknown_order(self, api, broker):
        api.on(ROUTES["order_details"] + "missing", ok(None))

        assert await broker.get_order_history("missing") == []

    @pytest.mark.asyncio
    async def test_get_funds(self, api, broker):
        api.on(ROUTES["funds"], ok({
            "net": "95000.00", "availablecash": "100000.00", "utiliseddebits": "5000.00", "collateral": "0",
        }))

        funds = await broker.get_funds()

        assert funds.available_cash == 100000.0
        assert funds.used_margin == 5000.0
        assert funds.total_balance == 95000.0

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        broker = AngelOneBroker("angel_key", "s")
        async with broker:
            pass
        assert broker.client.is_closed
