"""
Unit tests for batch order execution.

Tests per-order failure isolation, result ordering, authentication
short-circuit and pacing.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from stockbasket.execution.broker_interface import BrokerType, Order, OrderResult, TransactionType
from stockbasket.execution.exceptions import (
    AuthError,
    BrokerError,
    BrokerRejectionError,
    NetworkError,
)
from stockbasket.execution.order_manager import (
    BatchOrderExecutor,
    BatchStatus,
    OrderOutcome,
    classify_batch,
)
from stockbasket.execution.rate_limiter import RateLimiter


def _orders(*symbols):
    return [
        Order(symbol=s, exchange="NSE", transaction_type=TransactionType.BUY, quantity=i + 1)
        for i, s in enumerate(symbols)
    ]


@pytest.fixture
def broker():
    """Mock adapter whose place_order is an AsyncMock."""
    mock = MagicMock()
    mock.broker_type = BrokerType.ZERODHA
    mock.place_order = AsyncMock()
    return mock


@pytest.fixture
def limiter(fake_clock):
    return RateLimiter(rate=10, capacity=1, clock=fake_clock, sleep=fake_clock.sleep)


class TestClassifyBatch:
    """Test aggregate batch status."""

    def test_statuses(self):
        order = _orders("TCS")[0]
        ok = OrderOutcome(order=order, result=OrderResult("1", "PLACED"))
        failed = OrderOutcome(order=order, error=NetworkError("down"))

        assert classify_batch([ok, ok]) == BatchStatus.COMPLETED
        assert classify_batch([ok, failed]) == BatchStatus.PARTIAL
        assert classify_batch([failed, failed]) == BatchStatus.FAILED

    def test_empty_batch_is_completed(self):
        assert classify_batch([]) == BatchStatus.COMPLETED


class TestBatchOrderExecutor:
    """Test sequential placement."""

    @pytest.mark.asyncio
    async def test_all_orders_placed(self, broker, limiter):
        broker.place_order.side_effect = [OrderResult("101", "PLACED"), OrderResult("102", "PLACED")]
        orders = _orders("TCS", "INFY")

        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(orders)

        assert [o.result.order_id for o in outcomes] == ["101", "102"]
        assert [o.order for o in outcomes] == orders
        assert classify_batch(outcomes) == BatchStatus.COMPLETED
        assert [c.args[0] for c in broker.place_order.call_args_list] == orders

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_input_order(self, broker, limiter):
        broker.place_order.side_effect = [
            OrderResult("101", "PLACED"),
            BrokerRejectionError("Insufficient funds", broker="zerodha"),
            NetworkError("Connection reset", broker="zerodha"),
            OrderResult("104", "PLACED"),
        ]
        orders = _orders("TCS", "INFY", "SBIN", "HDFCBANK")

        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(orders)

        assert len(outcomes) == 4
        assert [o.order.symbol for o in outcomes] == ["TCS", "INFY", "SBIN", "HDFCBANK"]
        assert [o.succeeded for o in outcomes] == [True, False, False, True]
        assert outcomes[1].error_message == "Insufficient funds"
        assert isinstance(outcomes[2].error, NetworkError)
        assert all((o.result is None) != (o.error is None) for o in outcomes)
        assert classify_batch(outcomes) == BatchStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_auth_error_skips_remaining_orders(self, broker, limiter):
        broker.place_order.side_effect = [
            OrderResult("101", "PLACED"),
            AuthError("Token expired", broker="zerodha"),
        ]
        orders = _orders("TCS", "INFY", "SBIN")

        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(orders)

        assert broker.place_order.await_count == 2
        assert outcomes[0].succeeded
        assert outcomes[1].error is outcomes[2].error
        assert isinstance(outcomes[2].error, AuthError)
        assert classify_batch(outcomes) == BatchStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_unexpected_exception_recorded_as_failure(self, broker, limiter):
        broker.place_order.side_effect = [
            KeyError("orderid"),
            OrderResult("102", "PLACED"),
        ]
        orders = _orders("TCS", "INFY")

        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(orders)

        assert [o.order for o in outcomes] == orders
        assert type(outcomes[0].error) is BrokerError
        assert "orderid" in outcomes[0].error_message
        assert outcomes[0].error.broker == "zerodha"
        assert outcomes[1].result.order_id == "102"
        assert classify_batch(outcomes) == BatchStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_all_failed(self, broker, limiter):
        broker.place_order.side_effect = BrokerRejectionError("Market closed")

        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(_orders("TCS", "INFY"))

        assert classify_batch(outcomes) == BatchStatus.FAILED
        assert [o.to_dict()["status"] for o in outcomes] == ["FAILED", "FAILED"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, broker, limiter):
        outcomes = await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders([])

        assert outcomes == []
        broker.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_orders_paced_by_limiter(self, broker, limiter, fake_clock):
        broker.place_order.return_value = OrderResult("1", "PLACED")

        await BatchOrderExecutor(broker, limiter=limiter).place_multiple_orders(_orders("A", "B", "C"))

        assert fake_clock.sleeps == pytest.approx([0.1, 0.1])

    @pytest.mark.asyncio
    async def test_defaults_to_broker_limiter(self, broker, limiter):
        broker.order_limiter = limiter
        assert BatchOrderExecutor(broker).limiter is limiter

    def test_outcome_to_dict(self):
        order = _orders("TCS")[0]
        outcome = OrderOutcome(order=order, result=OrderResult("101", "PLACED"))

        assert outcome.to_dict() == {
            "order": order.to_dict(),
            "orderId": "101",
            "status": "PLACED",
            "error": None,
        }
