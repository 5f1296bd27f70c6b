"""
Utilities Module.

Common utilities and helper functions:
- Logging configuration
- Configuration loaders and settings
- Credential providers
- Helper functions
"""

from typing import List

__all__: List[str] = [
    "get_logger",
    "load_config",
]

from stockbasket.utils.logging_config import get_logger
from stockbasket.utils.helpers import load_config
