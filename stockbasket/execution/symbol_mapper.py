"""
Symbol normalization between canonical and broker-native instruments.

Brokers spell the same instrument differently: Kite lists the Nifty 50 index
as "NIFTY 50", Angel One as "Nifty 50", and Angel One suffixes NSE equities
with "-EQ". This module maps both ways and keeps a per-adapter registry of
catalog entries so that token-based brokers can resolve instrument tokens.

Classes:
    SymbolMapper: Canonical/native symbol conversion plus token registry

Example:
    >>> from stockbasket.execution.symbol_mapper import SymbolMapper
    >>> mapper = SymbolMapper("angelone")
    >>> mapper.to_unified("Nifty Bank", "NSE")
    'BANKNIFTY'
    >>> mapper.to_broker("RELIANCE", "NSE")
    'RELIANCE-EQ'
"""

import re
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from stockbasket.execution.broker_interface import UnifiedSymbol
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

# Canonical index symbol -> native name, per broker
INDEX_SYMBOLS: Dict[str, Dict[str, str]] = {
    "zerodha": {
        "NIFTY": "NIFTY 50",
        "NIFTYNXT50": "NIFTY NEXT 50",
        "FINNIFTY": "NIFTY FIN SERVICE",
        "BANKNIFTY": "NIFTY BANK",
        "MIDCPNIFTY": "NIFTY MID SELECT",
        "INDIAVIX": "INDIA VIX",
        "SENSEX": "SENSEX",
        "SENSEX50": "SNSX50",
    },
    "angelone": {
        "NIFTY": "Nifty 50",
        "NIFTYNXT50": "Nifty Next 50",
        "FINNIFTY": "Nifty Fin Service",
        "BANKNIFTY": "Nifty Bank",
        "MIDCPNIFTY": "NIFTY MID SELECT",
        "INDIAVIX": "India VIX",
        "SENSEX": "SENSEX",
        "SENSEX50": "SNSX50",
    },
}

# Brokers whose equity symbols carry a segment suffix
EQUITY_SUFFIX_BROKERS = {"angelone"}
EQUITY_SUFFIX_PATTERN = re.compile(r"-(EQ|BE|MF|SG)$")
EQUITY_SUFFIX = "-EQ"

EXCHANGES = ("NSE", "BSE")
INDEX_SUFFIX = "_INDEX"

RegistryKey = Tuple[str, str]


def index_exchange(exchange: str) -> str:
    """Unified exchange for index rows ("NSE" -> "NSE_INDEX")."""
    return exchange if exchange.endswith(INDEX_SUFFIX) else f"{exchange}{INDEX_SUFFIX}"


def broker_exchange(exchange: str) -> str:
    """Native exchange for a unified exchange ("NSE_INDEX" -> "NSE")."""
    if exchange.endswith(INDEX_SUFFIX):
        return exchange[: -len(INDEX_SUFFIX)]
    return exchange


def format_expiry(value: Union[str, date, None]) -> Optional[str]:
    """
    Normalize an expiry to DD-MMM-YY.

    Accepts dates, ISO strings ("2024-03-19") and compact strings
    ("19MAR2024"). Unparseable strings are returned unchanged, blanks as None.

    Args:
        value: Raw expiry from a catalog row

    Returns:
        Expiry like "19-MAR-24", or None
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%d-%b-%y").upper()

    text = str(value).strip()
    for fmt in ("%d%b%Y", "%Y-%m-%d", "%d-%b-%Y", "%d-%b-%y"):
        try:
            return datetime.strptime(text, fmt).strftime("%d-%b-%y").upper()
        except ValueError:
            continue
    return text


class SymbolMapper:
    """
    Bidirectional symbol mapping for one broker.

    Conversion is a pure function of the fixed index table (plus suffix
    handling for suffix-bearing brokers). The registry is populated from the
    catalog and is owned by a single adapter instance.

    Attributes:
        broker: Broker variant name ("zerodha" or "angelone")
        index_to_native: Canonical index symbol -> native name
        native_to_index: Native index name -> canonical symbol
    """

    def __init__(self, broker: str):
        if broker not in INDEX_SYMBOLS:
            raise ValueError(f"No symbol table for broker: {broker}")

        self.broker = broker
        self.index_to_native = dict(INDEX_SYMBOLS[broker])
        self.native_to_index = {native: canonical for canonical, native in self.index_to_native.items()}
        self.uses_equity_suffix = broker in EQUITY_SUFFIX_BROKERS
        self._registry: Dict[RegistryKey, UnifiedSymbol] = {}

    def to_unified(self, broker_symbol: str, exchange: str) -> str:
        """
        Convert a native symbol to its canonical form.

        Args:
            broker_symbol: Native trading symbol (e.g., "Nifty 50", "SBIN-EQ")
            exchange: Exchange of the row

        Returns:
            Canonical symbol
        """
        if broker_symbol in self.native_to_index:
            return self.native_to_index[broker_symbol]

        if self.uses_equity_suffix:
            return EQUITY_SUFFIX_PATTERN.sub("", broker_symbol)

        return broker_symbol

    def to_broker(self, symbol: str, exchange: str) -> str:
        """
        Convert a canonical symbol to the broker's native form.

        Args:
            symbol: Canonical symbol
            exchange: Unified exchange

        Returns:
            Native trading symbol
        """
        if symbol in self.index_to_native:
            return self.index_to_native[symbol]

        if self.uses_equity_suffix and exchange == "NSE":
            return f"{symbol}{EQUITY_SUFFIX}"

        return symbol

    def deduplicate(self, symbols: Iterable[UnifiedSymbol]) -> List[UnifiedSymbol]:
        """
        Keep one entry per uniqueness key.

        When two rows collide (e.g., "SBIN-EQ" and "SBIN-BE" both canonicalize
        to "SBIN"), the row whose native symbol equals ``to_broker(symbol)``
        wins; otherwise the first row seen is kept.

        Args:
            symbols: Parsed catalog rows in download order

        Returns:
            Deduplicated catalog, in first-seen order
        """
        chosen: Dict[tuple, UnifiedSymbol] = {}
        dropped = 0

        for entry in symbols:
            existing = chosen.get(entry.key)
            if existing is None:
                chosen[entry.key] = entry
                continue

            dropped += 1
            preferred = self.to_broker(entry.symbol, entry.exchange)
            if entry.broker_symbol == preferred and existing.broker_symbol != preferred:
                chosen[entry.key] = entry

        if dropped:
            logger.debug(f"{self.broker}: dropped {dropped} duplicate catalog rows")

        return list(chosen.values())

    def load(self, symbols: Sequence[UnifiedSymbol]) -> None:
        """
        Replace the registry with a catalog generation.

        Args:
            symbols: Full catalog (replaces, never merges)
        """
        self._registry = {(s.symbol, s.exchange): s for s in symbols}
        logger.info(f"{self.broker}: loaded {len(self._registry)} instruments into registry")

    def get(self, symbol: str, exchange: str) -> Optional[UnifiedSymbol]:
        """
        Look up a catalog entry.

        Index symbols requested with a plain exchange ("NIFTY", "NSE") fall
        back to the index exchange.

        Args:
            symbol: Canonical symbol
            exchange: Unified exchange

        Returns:
            Catalog entry or None
        """
        entry = self._registry.get((symbol, exchange))
        if entry is None and exchange in EXCHANGES:
            entry = self._registry.get((symbol, index_exchange(exchange)))
        return entry

    def token_for(self, symbol: str, exchange: str) -> Optional[str]:
        """Instrument token for a canonical symbol, if registered."""
        entry = self.get(symbol, exchange)
        return entry.token if entry else None

    def __len__(self) -> int:
        return len(self._registry)

    def __contains__(self, item: RegistryKey) -> bool:
        symbol, exchange = item
        return self.get(symbol, exchange) is not None
