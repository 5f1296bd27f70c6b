"""
Command-line interface for StockBasket.

Provides login helpers, catalog download, quotes and basket operations
against the broker configured in ``config/broker_config.yaml``.
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from stockbasket.execution.broker_factory import BrokerFactory
from stockbasket.execution.broker_interface import (
    BasketStock,
    BrokerInterface,
    InstrumentType,
    TargetHolding,
    UnifiedSymbol,
)
from stockbasket.execution.exceptions import BrokerError
from stockbasket.portfolio.basket_service import BasketService
from stockbasket.portfolio.sizing import calculate_equal_weights
from stockbasket.utils.helpers import format_currency, load_config
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=_to_jsonable))


def _parse_instrument(text: str) -> tuple:
    """'NSE:TCS' -> ('TCS', 'NSE'); bare symbols default to NSE."""
    exchange, _, symbol = text.rpartition(":")
    return symbol, exchange or "NSE"


def _load_basket(path: str) -> List[BasketStock]:
    data = load_config(path)
    return [
        BasketStock(symbol=s["symbol"], weight=float(s["weight"]), exchange=s.get("exchange", "NSE"))
        for s in data.get("stocks", [])
    ]


def _load_holdings(path: str) -> List[TargetHolding]:
    data = load_config(path)
    return [
        TargetHolding(
            symbol=h["symbol"],
            quantity=int(h["quantity"]),
            target_weight=float(h["target_weight"]),
            exchange=h.get("exchange", "NSE"),
            average_price=h.get("average_price"),
        )
        for h in data.get("holdings", [])
    ]


def _load_catalog_file(path: str) -> List[UnifiedSymbol]:
    with open(path, "r", encoding="utf-8") as f:
        rows = json.load(f)
    return [
        UnifiedSymbol(**{**row, "instrument_type": InstrumentType(row["instrument_type"])})
        for row in rows
    ]


async def _prepare(broker: BrokerInterface, catalog: Optional[str]) -> None:
    """Token-based brokers need the catalog before quoting or ordering."""
    if catalog:
        broker.load_catalog(_load_catalog_file(catalog))
    elif broker.broker_type.value == "angelone":
        await broker.download_catalog()


async def _run(args: argparse.Namespace) -> None:
    overrides = {}
    if args.command == "session":
        overrides = {"client_code": args.client_code, "mpin": args.mpin, "totp": args.totp}

    factory = BrokerFactory()
    broker = factory.from_config(args.config, broker_type=args.broker, overrides=overrides)

    try:
        if args.command == "login-url":
            print(broker.get_login_url(args.redirect_url))

        elif args.command == "session":
            if args.request_token:
                session = await broker.create_session(args.request_token)
            else:
                session = await broker.create_session(args.client_code, args.mpin, args.totp)
            _print({
                "broker": session.broker.value,
                "user_id": session.user_id,
                "access_token": session.access_token,
                "expires_at": session.expires_at.isoformat() if session.expires_at else None,
            })

        elif args.command == "catalog":
            catalog = await broker.download_catalog()
            Path(args.output).parent.mkdir(parents=True, exist_ok=True)
            with open(args.output, "w", encoding="utf-8") as f:
                json.dump([asdict(s) for s in catalog], f, default=_to_jsonable)
            logger.info(f"Wrote {len(catalog)} instruments to {args.output}")

        elif args.command == "quote":
            await _prepare(broker, args.catalog)
            ltp = await broker.get_ltp([_parse_instrument(i) for i in args.instruments])
            _print({key: value.last_price for key, value in ltp.items()})

        elif args.command == "buy":
            await _prepare(broker, args.catalog)
            service = BasketService(broker)
            stocks = _load_basket(args.basket)
            if args.execute:
                execution = await service.buy_basket(stocks, args.amount)
                _print(execution.to_dict())
            else:
                plan = await service.plan_basket_buy(stocks, args.amount)
                _print(plan.to_dict())
                print(f"Total: {format_currency(plan.total_amount)}  "
                      f"Unused: {format_currency(plan.unused_amount)}")

        elif args.command == "rebalance":
            await _prepare(broker, args.catalog)
            service = BasketService(broker)
            holdings = _load_holdings(args.holdings)
            if args.execute:
                execution = await service.rebalance(holdings, args.threshold)
                _print(execution.to_dict())
            else:
                preview = await service.preview_rebalance(holdings, args.threshold)
                _print(preview.to_dict())

        else:
            logger.error(f"Unknown command: {args.command}")
            sys.exit(1)
    finally:
        aclose = getattr(broker, "aclose", None)
        if aclose is not None:
            await aclose()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="StockBasket multi-broker trading core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print the Kite login URL
  stockbasket login-url --broker zerodha

  # Exchange the request token for an access token
  stockbasket session --broker zerodha --request-token XXXX

  # Log in to Angel One (TOTP generated from ANGEL_TOTP_SECRET)
  stockbasket session --broker angelone --mpin 1234

  # Save the instrument catalog
  stockbasket catalog --broker angelone --output data/angelone_catalog.json

  # Plan a basket purchase, then place it
  stockbasket buy --basket basket.yaml --amount 50000
  stockbasket buy --basket basket.yaml --amount 50000 --execute

  # Preview a rebalance
  stockbasket rebalance --holdings holdings.yaml --threshold 5
        """,
    )
    parser.add_argument("--config", default="config/broker_config.yaml", help="Config file path")
    parser.add_argument("--broker", help="zerodha or angelone (default: active_broker)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("brokers", help="List supported brokers")

    weights_parser = subparsers.add_parser("equal-weights", help="Split 100%% across symbols")
    weights_parser.add_argument("instruments", nargs="+", help="Symbols (EXCHANGE:SYMBOL)")
    weights_parser.add_argument("--fixed-index", type=int, help="Position of the pinned stock")
    weights_parser.add_argument("--fixed-weight", type=float, help="Weight of the pinned stock")

    login_parser = subparsers.add_parser("login-url", help="Print the broker login URL")
    login_parser.add_argument("--redirect-url", help="Redirect after login")

    session_parser = subparsers.add_parser("session", help="Create a broker session")
    session_parser.add_argument("--request-token", help="Kite request token")
    session_parser.add_argument("--client-code", help="Angel One client code")
    session_parser.add_argument("--mpin", help="Angel One MPIN")
    session_parser.add_argument("--totp", help="Angel One one-time code")

    catalog_parser = subparsers.add_parser("catalog", help="Download the instrument catalog")
    catalog_parser.add_argument("--output", required=True, help="JSON output path")

    quote_parser = subparsers.add_parser("quote", help="Last traded prices")
    quote_parser.add_argument("instruments", nargs="+", help="Instruments (EXCHANGE:SYMBOL)")
    quote_parser.add_argument("--catalog", help="Saved catalog JSON")

    buy_parser = subparsers.add_parser("buy", help="Plan or place a basket purchase")
    buy_parser.add_argument("--basket", required=True, help="Basket YAML (stocks: [...])")
    buy_parser.add_argument("--amount", type=float, required=True, help="Amount to invest")
    buy_parser.add_argument("--catalog", help="Saved catalog JSON")
    buy_parser.add_argument("--execute", action="store_true", help="Place the orders")

    rebalance_parser = subparsers.add_parser("rebalance", help="Preview or place a rebalance")
    rebalance_parser.add_argument("--holdings", required=True, help="Holdings YAML (holdings: [...])")
    rebalance_parser.add_argument("--threshold", type=float, help="Deviation threshold (%%)")
    rebalance_parser.add_argument("--catalog", help="Saved catalog JSON")
    rebalance_parser.add_argument("--execute", action="store_true", help="Place the orders")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "brokers":
            _print(BrokerFactory.list_available_brokers())
        elif args.command == "equal-weights":
            stocks = [
                BasketStock(symbol=symbol, weight=0.0, exchange=exchange)
                for symbol, exchange in map(_parse_instrument, args.instruments)
            ]
            weights = calculate_equal_weights(stocks, args.fixed_index, args.fixed_weight)
            _print([asdict(s) for s in weights])
        else:
            asyncio.run(_run(args))

    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        sys.exit(0)
    except (BrokerError, FileNotFoundError) as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
