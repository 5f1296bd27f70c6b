"""
Helper Utilities Module.

Common utility functions used across the project.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, TypeVar, Union

import yaml
from pydantic import BaseModel

T = TypeVar("T")


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary (empty for an empty file)

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file has unsupported format
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix in {".yaml", ".yml"}:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    elif suffix == ".json":
        with open(config_path, "r", encoding="utf-8") as f:
            return json.load(f)
    else:
        raise ValueError(f"Unsupported configuration format: {suffix}")


def expand_env(value: Optional[str]) -> Optional[str]:
    """
    Expand a "${VAR_NAME}" placeholder from the environment.

    Values that are not placeholders are returned unchanged.

    Args:
        value: Raw config value

    Returns:
        Environment value, the original value, or None
    """
    if value and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1])
    return value


def chunks(items: Sequence[T], n: int) -> Iterator[List[T]]:
    """
    Yield successive n-sized chunks from a sequence.

    Args:
        items: Sequence to chunk
        n: Chunk size

    Yields:
        Chunks of size n (the last may be shorter)
    """
    if n <= 0:
        raise ValueError(f"Chunk size must be positive, got {n}")
    for i in range(0, len(items), n):
        yield list(items[i : i + n])


def format_currency(amount: float, currency: str = "INR", decimals: int = 2) -> str:
    """
    Format amount as currency string.

    Args:
        amount: Amount to format
        currency: Currency code (default: INR)
        decimals: Number of decimal places

    Returns:
        Formatted currency string
    """
    symbols = {
        "INR": "₹",
        "USD": "$",
    }

    symbol = symbols.get(currency, currency)
    return f"{symbol}{amount:,.{decimals}f}"


class ConfigModel(BaseModel):
    """
    Base configuration model with Pydantic validation.

    Provides common configuration loading functionality.
    """

    @classmethod
    def from_yaml(cls, file_path: Union[str, Path]):
        """
        Load configuration from YAML file.

        Args:
            file_path: Path to YAML file

        Returns:
            Configuration instance
        """
        return cls(**load_config(file_path))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        """Build configuration from an already-loaded mapping."""
        return cls(**(data or {}))
