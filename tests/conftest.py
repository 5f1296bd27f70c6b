"""
Pytest Configuration and Fixtures.

Provides shared fixtures and configuration for all tests.
"""

import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

from stockbasket.execution.broker_interface import InstrumentType, UnifiedSymbol
from stockbasket.utils.settings import TradingSettings


class FakeClock:
    """
    Deterministic clock for rate limiter tests.

    Calling the instance returns the current time; ``sleep`` records the
    requested delay and advances time by it.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(scope="session")
def project_root() -> Path:
    """
    Get project root directory.

    Returns:
        Path to project root
    """
    return Path(__file__).parent.parent


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create temporary directory for tests.

    Yields:
        Path to temporary directory
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> TradingSettings:
    """Default trading settings."""
    return TradingSettings()


@pytest.fixture
def mock_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Set up mock broker credentials in the environment.

    Args:
        monkeypatch: Pytest monkeypatch fixture
    """
    env_vars = {
        "LOG_LEVEL": "DEBUG",
        "KITE_API_KEY": "kite_key",
        "KITE_API_SECRET": "kite_secret",
        "ANGEL_API_KEY": "angel_key",
        "ANGEL_API_SECRET": "angel_secret",
        "ANGEL_CLIENT_CODE": "A123456",
        "ANGEL_MPIN": "1234",
        "ANGEL_TOTP_SECRET": "JBSWY3DPEHPK3PXP",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def broker_config_file(temp_dir: Path) -> Path:
    """
    Write a broker config with environment placeholders.

    Returns:
        Path to the YAML file
    """
    path = temp_dir / "broker_config.yaml"
    path.write_text(
        "active_broker: zerodha\n"
        "brokers:\n"
        "  zerodha:\n"
        "    api_key: ${KITE_API_KEY}\n"
        "    api_secret: ${KITE_API_SECRET}\n"
        "  angelone:\n"
        "    api_key: ${ANGEL_API_KEY}\n"
        "    api_secret: ${ANGEL_API_SECRET}\n"
        "    client_code: ${ANGEL_CLIENT_CODE}\n"
        "trading:\n"
        "  rebalance_threshold: 3.0\n"
        "  max_basket_stocks: 10\n"
        "  order_rate_per_second:\n"
        "    zerodha: 5\n"
        "    angelone: 15\n"
        "  angelone:\n"
        "    source_id: WEB\n"
        "    public_ip: 10.0.0.1\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def sample_catalog() -> List[UnifiedSymbol]:
    """
    Small Angel One style catalog (equities plus one index).

    Returns:
        Catalog entries
    """
    return [
        UnifiedSymbol(
            symbol="TCS",
            broker_symbol="TCS-EQ",
            exchange="NSE",
            broker_exchange="NSE",
            token="11536",
            name="TCS",
        ),
        UnifiedSymbol(
            symbol="INFY",
            broker_symbol="INFY-EQ",
            exchange="NSE",
            broker_exchange="NSE",
            token="1594",
            name="INFY",
        ),
        UnifiedSymbol(
            symbol="NIFTY",
            broker_symbol="Nifty 50",
            exchange="NSE_INDEX",
            broker_exchange="NSE",
            token="99926000",
            name="NIFTY",
            instrument_type=InstrumentType.INDEX,
        ),
    ]


# Markers for test categorization
def pytest_configure(config: pytest.Config) -> None:
    """
    Configure pytest with custom markers.

    Args:
        config: Pytest configuration
    """
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "live: marks tests that require broker API access")


# Test collection hooks
def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """
    Modify test items during collection.

    Args:
        config: Pytest configuration
        items: List of test items
    """
    # Skip live tests by default
    skip_live = pytest.mark.skip(reason="Live tests require real broker credentials")

    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)
