"""
Trading core settings.

Settings are read from the ``trading`` section of ``config/broker_config.yaml``
and may be overridden by environment variables:

    TOKEN_EXPIRY_HOURS, REBALANCE_THRESHOLD, REQUEST_TIMEOUT

Example:
    >>> from stockbasket.utils.settings import load_settings
    >>> settings = load_settings("config/broker_config.yaml")
    >>> settings.rebalance_threshold
    5.0
"""

import os
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import Field

from stockbasket.utils.helpers import ConfigModel, load_config
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/broker_config.yaml"


class AngelOneClientSettings(ConfigModel):
    """Client identification headers SmartAPI expects on every request."""

    local_ip: str = "127.0.0.1"
    public_ip: str = "127.0.0.1"
    mac_address: str = "00:00:00:00:00:00"
    source_id: str = "WEB"
    user_type: str = "USER"


class TradingSettings(ConfigModel):
    """
    Settings for the trading core.

    Attributes:
        rebalance_threshold: Default tolerated weight deviation (percent)
        max_basket_stocks: Upper bound on stocks per basket
        token_expiry_hours: Lifetime assumed for a fresh broker session
        request_timeout: Transport timeout in seconds
        order_rate_per_second: Documented order placement limit per broker
        angelone: SmartAPI client headers
    """

    rebalance_threshold: float = Field(default=5.0, ge=0)
    max_basket_stocks: int = Field(default=20, ge=1)
    token_expiry_hours: int = Field(default=24, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    order_rate_per_second: Dict[str, float] = Field(
        default_factory=lambda: {"zerodha": 10.0, "angelone": 20.0}
    )
    angelone: AngelOneClientSettings = Field(default_factory=AngelOneClientSettings)

    def order_rate_for(self, broker: str) -> float:
        """Orders per second allowed for a broker (10/s when unknown)."""
        return self.order_rate_per_second.get(broker, 10.0)


def load_settings(config_path: Optional[Union[str, Path]] = None) -> TradingSettings:
    """
    Load trading settings from YAML with environment overrides.

    A missing config file is not an error: defaults are used.

    Args:
        config_path: Path to broker config (default: config/broker_config.yaml)

    Returns:
        TradingSettings instance
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    data = {}

    if path.exists():
        data = load_config(path).get("trading", {}) or {}
    else:
        logger.debug(f"No config at {path}, using default trading settings")

    env_overrides = {
        "token_expiry_hours": os.getenv("TOKEN_EXPIRY_HOURS"),
        "rebalance_threshold": os.getenv("REBALANCE_THRESHOLD"),
        "request_timeout": os.getenv("REQUEST_TIMEOUT"),
    }
    for key, value in env_overrides.items():
        if value:
            data[key] = value

    return TradingSettings.from_dict(data)
