"""
Batch order execution.

Places a list of orders through one broker adapter, strictly one after the
other, paced by the adapter's rate limiter. A failed order never aborts the
batch, except for authentication failures: once the token is rejected, the
remaining orders are recorded with that error and not sent.

Classes:
    BatchStatus: Aggregate outcome of a batch
    OrderOutcome: Result or error for one order
    BatchOrderExecutor: Sequential, paced order placement

Example:
    >>> executor = BatchOrderExecutor(broker)
    >>> outcomes = await executor.place_multiple_orders(orders)
    >>> classify_batch(outcomes)
    <BatchStatus.PARTIAL: 'PARTIAL'>
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from stockbasket.execution.broker_interface import BrokerInterface, Order, OrderResult
from stockbasket.execution.exceptions import AuthError, BrokerError
from stockbasket.execution.rate_limiter import RateLimiter
from stockbasket.utils.logging_config import get_logger, log_batch_summary, log_order_event

logger = get_logger(__name__)


class BatchStatus(Enum):
    """Aggregate status of a batch."""

    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class OrderOutcome:
    """
    Outcome of one order in a batch.

    Exactly one of ``result`` and ``error`` is set.
    """

    order: Order
    result: Optional[OrderResult] = None
    error: Optional[BrokerError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.error is None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        """Outcome as handed to persistence collaborators."""
        return {
            "order": self.order.to_dict(),
            "orderId": self.result.order_id if self.result else None,
            "status": self.result.status if self.result else "FAILED",
            "error": self.error_message,
        }


def classify_batch(outcomes: Sequence[OrderOutcome]) -> BatchStatus:
    """
    Classify a batch by its outcomes.

    An empty batch has nothing left undone and counts as COMPLETED.

    Args:
        outcomes: Outcomes of one batch

    Returns:
        COMPLETED (all succeeded), PARTIAL (some) or FAILED (none)
    """
    succeeded = sum(1 for o in outcomes if o.succeeded)
    if succeeded == len(outcomes):
        return BatchStatus.COMPLETED
    if succeeded == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


class BatchOrderExecutor:
    """
    Sequential order placement with per-order failure isolation.

    Attributes:
        broker: Adapter orders are placed through
        limiter: Pacing between orders (default: the adapter's own limiter)
    """

    def __init__(self, broker: BrokerInterface, limiter: Optional[RateLimiter] = None):
        self.broker = broker
        self.limiter = limiter or broker.order_limiter

    async def place_multiple_orders(self, orders: Sequence[Order]) -> List[OrderOutcome]:
        """
        Place orders one at a time, in input order.

        Args:
            orders: Orders to place

        Returns:
            One outcome per order, same order and length as the input
        """
        broker_name = self.broker.broker_type.value
        outcomes: List[OrderOutcome] = []
        auth_failure: Optional[AuthError] = None

        for order in orders:
            if auth_failure is not None:
                outcomes.append(OrderOutcome(order=order, error=auth_failure))
                self._log(order, "SKIPPED", error=str(auth_failure))
                continue

            await self.limiter.acquire()

            try:
                result = await self.broker.place_order(order)
            except AuthError as e:
                auth_failure = e
                outcomes.append(OrderOutcome(order=order, error=e))
                self._log(order, "FAILED", error=str(e))
                logger.error(f"Authentication failed on {broker_name}; skipping remaining orders")
                continue
            except BrokerError as e:
                outcomes.append(OrderOutcome(order=order, error=e))
                self._log(order, "FAILED", error=str(e), error_type=type(e).__name__)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error placing {order.key} on {broker_name}")
                error = BrokerError(f"Unexpected error: {e}", broker=broker_name)
                outcomes.append(OrderOutcome(order=order, error=error))
                self._log(order, "FAILED", error=str(error), error_type=type(e).__name__)
                continue

            outcomes.append(OrderOutcome(order=order, result=result))
            self._log(order, "PLACED", order_id=result.order_id)

        log_batch_summary(
            broker=broker_name,
            total=len(outcomes),
            succeeded=sum(1 for o in outcomes if o.succeeded),
            status=classify_batch(outcomes).value,
        )
        return outcomes

    def _log(self, order: Order, event: str, **kwargs: Any) -> None:
        log_order_event(
            broker=self.broker.broker_type.value,
            event=event,
            symbol=order.symbol,
            exchange=order.exchange,
            transaction_type=order.transaction_type.value,
            quantity=order.quantity,
            **kwargs,
        )
