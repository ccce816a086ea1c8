import pytest

from orderflow.application.fulfillment import FulfillmentOrchestrator
from orderflow.application.inventory import InventoryAllocator
from orderflow.application.order_store import OrderStore
from orderflow.application.reconciliation import ReconciliationEngine
from orderflow.domain.errors import InsufficientStock, InvalidTransition
from orderflow.domain.models import Subscription
from orderflow.domain.states import PaymentOutcome


def _customer_mail(sink, fragment):
    return [m for m in sink.matching(fragment) if m["to"] == "buyer@example.com"]


def _pay(session, gateway, notifier, order):
    return ReconciliationEngine(session, gateway, notifier).apply(
        OrderStore(session).load(order.id), PaymentOutcome.PAID, channel="test"
    )


class TestAutoCompletion:
    def test_preloaded_order_completes_on_payment(self, session, gateway, notifier, sink, make_product, place_order):
        product = make_product(name="Netflix Premium 1 tháng", price=100000, accounts=["viewer@nf.com:secret"],
                               instructions="Log in at netflix.com")
        order = place_order((product, 1))
        assert order.order_total == 100000

        result = _pay(session, gateway, notifier, order)

        order = OrderStore(session).load(order.id)
        assert result.auto_completed is True
        assert (order.order_status, order.payment_status) == ("completed", "paid")
        assert order.items[0].delivered_account == "viewer@nf.com:secret"
        assert order.confirmed_at and order.processing_at and order.completed_at
        assert InventoryAllocator(session).unused_count(product.id) == 0
        assert InventoryAllocator(session).get_product(product.id).stock == 0

        completed = _customer_mail(sink, "completed")
        assert len(completed) == 1
        assert "viewer@nf.com:secret" in completed[0]["text"]
        assert "Log in at netflix.com" in completed[0]["text"]
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 1

    def test_repeated_paid_signal_changes_nothing(self, session, gateway, notifier, sink, make_product, place_order):
        product = make_product(accounts=["a@nf.com:1", "b@nf.com:2"])
        order = place_order((product, 1))
        _pay(session, gateway, notifier, order)
        sent_before = len(sink.sent)

        result = _pay(session, gateway, notifier, order)

        assert result.applied is False
        assert len(sink.sent) == sent_before
        assert InventoryAllocator(session).unused_count(product.id) == 1
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 1

    def test_quantity_two_takes_two_credentials(self, session, gateway, notifier, make_product, place_order):
        product = make_product(accounts=["a@x:1", "b@x:2", "c@x:3"])
        order = place_order((product, 2))

        _pay(session, gateway, notifier, order)

        item = OrderStore(session).load(order.id).items[0]
        assert item.delivered_account == "a@x:1\nb@x:2"

    def test_mixed_order_waits_for_operator(self, session, gateway, notifier, sink, make_product, place_order):
        preloaded = make_product(name="Spotify 1 month", accounts=["s@x:1"])
        plain = make_product(name="Canva Pro 1 year", stock=5)
        order = place_order((preloaded, 1), (plain, 1))

        result = _pay(session, gateway, notifier, order)

        order = OrderStore(session).load(order.id)
        assert result.auto_completed is False
        assert (order.order_status, order.payment_status) == ("pending", "paid")
        assert all(item.delivered_account is None for item in order.items)
        assert _customer_mail(sink, "completed") == []

    def test_pool_drained_after_order_created_leaves_order_for_operator(
        self, session, gateway, notifier, make_product, place_order
    ):
        product = make_product(accounts=["a@x:1"])
        order = place_order((product, 1))
        other = place_order((make_product(stock=1), 1))
        # Someone else took the credential (e.g. an operator completing another order)
        InventoryAllocator(session).allocate_preloaded_account(product.id, other.id)

        result = _pay(session, gateway, notifier, order)

        order = OrderStore(session).load(order.id)
        assert result.auto_completed is False
        assert order.order_status == "pending"


class TestManualFulfillment:
    def test_confirm_then_complete_deducts_stock(self, session, gateway, notifier, sink, make_product, place_order):
        product = make_product(name="Canva Pro 1 năm", stock=5)
        order = place_order((product, 2))
        _pay(session, gateway, notifier, order)
        sent_before = len(_customer_mail(sink, ""))
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)

        fulfillment.confirm(order.id)
        completed = fulfillment.complete(order.id)

        assert completed.order_status == "completed"
        refreshed = InventoryAllocator(session).get_product(product.id)
        assert (refreshed.stock, refreshed.reserved) == (3, 0)
        customer_mail = _customer_mail(sink, "")
        assert len(customer_mail) - sent_before == 2
        assert len(_customer_mail(sink, "confirmed")) == 1
        assert len(_customer_mail(sink, "completed")) == 1
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 1

    def test_processing_step_is_optional_but_ordered(self, session, gateway, notifier, make_product, place_order):
        order = place_order((make_product(stock=2), 1))
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)

        with pytest.raises(InvalidTransition):
            fulfillment.start_processing(order.id)
        fulfillment.confirm(order.id)
        assert fulfillment.start_processing(order.id).order_status == "processing"
        with pytest.raises(InvalidTransition):
            fulfillment.confirm(order.id)
        assert fulfillment.complete(order.id).order_status == "completed"
        with pytest.raises(InvalidTransition):
            fulfillment.cancel_by_operator(order.id, "too late")

    def test_complete_rolls_back_when_stock_is_gone(self, session, gateway, notifier, make_product, place_order):
        product = make_product(stock=1)
        order = place_order((product, 1))
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)
        fulfillment.confirm(order.id)
        InventoryAllocator(session).deduct_stock(product.id, 1, commit=True)

        with pytest.raises(InsufficientStock):
            fulfillment.complete(order.id)

        assert OrderStore(session).load(order.id).order_status == "confirmed"

    def test_complete_preloaded_order_by_hand(self, session, gateway, notifier, make_product, place_order):
        product = make_product(accounts=["m@x:1"])
        order = place_order((product, 1))
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)
        fulfillment.confirm(order.id)

        completed = fulfillment.complete(order.id)

        assert completed.items[0].delivered_account == "m@x:1"
        # Not paid yet, so nothing to track
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 0


class TestCancellation:
    def test_cancel_releases_reservation_and_cancels_link(
        self, session, gateway, fake_gateway, notifier, sink, make_product, place_order
    ):
        product = make_product(stock=2)
        order = place_order((product, 2))
        assert InventoryAllocator(session).available(product.id) == 0

        cancelled = FulfillmentOrchestrator(session, notifier, gateway).cancel_by_operator(order.id, "duplicate")

        assert cancelled.order_status == "cancelled"
        assert cancelled.cancel_reason == "duplicate"
        assert InventoryAllocator(session).available(product.id) == 2
        assert fake_gateway.statuses[str(order.gateway_order_code)] == "CANCELLED"
        assert len(_customer_mail(sink, "cancelled")) == 1

    def test_cancel_survives_gateway_outage(self, session, gateway, fake_gateway, notifier, make_product, place_order):
        order = place_order((make_product(stock=1), 1))
        fake_gateway.down = True

        cancelled = FulfillmentOrchestrator(session, notifier, gateway).cancel_by_operator(order.id)

        assert cancelled.order_status == "cancelled"


class TestRowLockOrder:
    """Stock rows are always touched in ascending product id, whatever the cart order."""

    def _record(self, monkeypatch, method):
        touched = []
        original = getattr(InventoryAllocator, method)

        def recording(allocator, product_id, quantity, commit=False):
            touched.append(product_id)
            return original(allocator, product_id, quantity, commit=commit)

        monkeypatch.setattr(InventoryAllocator, method, recording)
        return touched

    def test_reservation_follows_product_id(self, monkeypatch, make_product, place_order):
        first, second, third = make_product(name="A"), make_product(name="B"), make_product(name="C")
        reserved = self._record(monkeypatch, "reserve_stock")

        place_order((third, 1), (first, 1), (second, 2))

        assert reserved == sorted([first.id, second.id, third.id])

    def test_completion_and_cancellation_follow_product_id(self, monkeypatch, session, gateway, notifier,
                                                           make_product, place_order):
        first, second = make_product(name="A"), make_product(name="B")
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)
        completed = place_order((second, 1), (first, 1))
        cancelled = place_order((second, 1), (first, 1))
        deducted = self._record(monkeypatch, "deduct_stock")
        released = self._record(monkeypatch, "release_reservation")

        fulfillment.confirm(completed.id)
        fulfillment.complete(completed.id)
        fulfillment.cancel_by_operator(cancelled.id, "duplicate")

        assert deducted == [first.id, second.id]
        assert released == [first.id, second.id]
