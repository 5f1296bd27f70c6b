"""
Logging Configuration Module.

Provides structured logging using Loguru with text or JSON formatting,
rotation, and console/file handlers.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from loguru import logger

# Remove default logger
logger.remove()


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    rotation: str = "100 MB",
    retention: str = "30 days",
    enable_console: bool = True,
) -> None:
    """
    Configure logging with Loguru.

    Calling this again replaces any handlers added earlier.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        log_format: Log format ("text" or "json")
        rotation: Log rotation policy
        retention: Log retention policy
        enable_console: Enable console output
    """
    logger.remove()

    if log_format == "json":
        line_format = (
            "{{\"time\": \"{time:YYYY-MM-DD HH:mm:ss.SSS}\", "
            "\"level\": \"{level}\", \"module\": \"{name}\", "
            "\"function\": \"{function}\", \"line\": {line}, "
            "\"message\": \"{message}\", \"extra\": {extra}}}\n"
        )
    else:
        line_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>\n"
        )

    if enable_console:
        logger.add(
            sys.stderr,
            format=line_format,
            level=log_level,
            colorize=log_format == "text",
            backtrace=True,
            diagnose=False,
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_file,
            format=line_format,
            level=log_level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )


def get_logger(name: str, **kwargs: Any) -> Any:
    """
    Get a logger instance with optional context.

    Args:
        name: Logger name (typically __name__)
        **kwargs: Additional context to bind to logger

    Returns:
        Configured logger instance
    """
    if kwargs:
        return logger.bind(name=name, **kwargs)
    return logger.bind(name=name)


def log_order_event(
    broker: str,
    event: str,
    symbol: str,
    exchange: str,
    transaction_type: str,
    quantity: int,
    **kwargs: Any,
) -> None:
    """
    Log an order lifecycle event with structured data.

    Args:
        broker: Broker variant (zerodha, angelone)
        event: PLACED, REJECTED, FAILED, SKIPPED
        symbol: Canonical trading symbol
        exchange: Unified exchange
        transaction_type: BUY or SELL
        quantity: Order quantity
        **kwargs: Additional metadata (order_id, error, ...)
    """
    order_data: Dict[str, Any] = {
        "broker": broker,
        "event": event,
        "symbol": symbol,
        "exchange": exchange,
        "transaction_type": transaction_type,
        "quantity": quantity,
        **kwargs,
    }

    level = "info" if event == "PLACED" else "warning"
    log_func = getattr(logger.bind(**order_data), level)
    log_func(f"Order {event}: {transaction_type} {quantity} {exchange}:{symbol}")


def log_batch_summary(broker: str, total: int, succeeded: int, status: str) -> None:
    """Log the outcome of one order batch."""
    logger.bind(broker=broker, total=total, succeeded=succeeded, status=status).info(
        f"Batch {status}: {succeeded}/{total} orders placed on {broker}"
    )


# Initialize logging on module import
load_dotenv()

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE_PATH"),
    log_format=os.getenv("LOG_FORMAT", "text"),
    rotation=os.getenv("LOG_ROTATION", "100 MB"),
    retention=os.getenv("LOG_RETENTION", "30 days"),
)
