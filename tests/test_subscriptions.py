from datetime import datetime, timedelta

import pytest

from orderflow.application.fulfillment import FulfillmentOrchestrator
from orderflow.application.order_store import OrderStore
from orderflow.application.reconciliation import ReconciliationEngine
from orderflow.application import subscriptions
from orderflow.application.subscriptions import (
    Duration,
    SubscriptionService,
    add_months,
    end_date_for,
    parse_duration,
)
from orderflow.domain.errors import SubscriptionNotFound, ValidationError
from orderflow.domain.models import Subscription
from orderflow.domain.states import PaymentOutcome


class TestDurationParsing:
    @pytest.mark.parametrize("text, expected", [
        ("Netflix Premium 1 tháng", Duration(1, "month")),
        ("Canva Pro 1 năm", Duration(1, "year")),
        ("Youtube Premium 6 thang", Duration(6, "month")),
        ("Gói dùng thử 7 ngày", Duration(7, "day")),
        ("Spotify Family 12 Months", Duration(12, "month")),
        ("ChatGPT Plus 1 year", Duration(1, "year")),
        ("Trial 30 days", Duration(30, "day")),
    ])
    def test_parse(self, text, expected):
        assert parse_duration(text) == expected

    def test_first_text_with_a_duration_wins(self):
        assert parse_duration("Canva Pro", None, "3 months") == Duration(3, "month")
        assert parse_duration("Canva Pro", "") is None
        assert parse_duration("Plan 0 months") is None

    def test_implausible_amounts_are_not_durations(self):
        assert parse_duration("Lifetime 10000 năm") is None
        assert parse_duration("Lifetime 10000 năm", "1 year") == Duration(1, "year")
        assert parse_duration("Bundle 99999 days 6 months") == Duration(6, "month")
        assert parse_duration("Max plan 100 years") == Duration(100, "year")

    def test_month_end_is_clamped(self):
        assert add_months(datetime(2026, 1, 31, 9, 30), 1) == datetime(2026, 2, 28, 9, 30)
        assert add_months(datetime(2027, 11, 30), 3) == datetime(2028, 2, 29)

    def test_end_dates(self):
        start = datetime(2026, 10, 17, 12, 0)
        assert end_date_for(start, Duration(7, "day")) == datetime(2026, 10, 24, 12, 0)
        assert end_date_for(start, Duration(1, "month")) == datetime(2026, 11, 17, 12, 0)
        assert end_date_for(start, Duration(2, "year")) == datetime(2028, 10, 17, 12, 0)


class TestSubscriptionRecording:
    def _complete_paid(self, session, gateway, notifier, order):
        ReconciliationEngine(session, gateway, notifier).apply(
            OrderStore(session).load(order.id), PaymentOutcome.PAID, channel="test")
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)
        fulfillment.confirm(order.id)
        return fulfillment.complete(order.id)

    def test_billing_cycle_used_when_name_has_no_duration(self, session, gateway, notifier, make_product,
                                                          place_order):
        product = make_product(name="Youtube Premium", stock=3, billing_cycle="6 months")
        order = self._complete_paid(session, gateway, notifier, place_order((product, 1)))

        subscription = session.query(Subscription).filter_by(order_id=order.id).one()
        assert subscription.service_name == "Youtube Premium"
        assert subscription.customer_email == "buyer@example.com"
        assert subscription.end_date == add_months(subscription.start_date, 6)

    def test_unknown_duration_defaults_to_one_year_and_alerts(self, session, gateway, notifier, sink,
                                                              make_product, place_order):
        product = make_product(name="Canva Pro", stock=3)
        order = self._complete_paid(session, gateway, notifier, place_order((product, 1)))

        subscription = session.query(Subscription).filter_by(order_id=order.id).one()
        assert subscription.end_date == add_months(subscription.start_date, 12)
        assert len(sink.matching("Subscription duration defaulted")) == 1

    def test_recorded_once_per_order(self, session, gateway, notifier, make_product, place_order):
        order = self._complete_paid(session, gateway, notifier, place_order((make_product(stock=3), 1)))

        again = SubscriptionService(session, notifier).create_for_order(OrderStore(session).load(order.id))

        assert again == []
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 1

    def test_completed_before_payment_records_on_payment(self, session, gateway, notifier, make_product,
                                                         place_order):
        order = place_order((make_product(stock=3), 1))
        fulfillment = FulfillmentOrchestrator(session, notifier, gateway)
        fulfillment.confirm(order.id)
        fulfillment.complete(order.id)
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 0

        ReconciliationEngine(session, gateway, notifier).apply(
            OrderStore(session).load(order.id), PaymentOutcome.PAID, channel="test")

        assert session.query(Subscription).filter_by(order_id=order.id).count() == 1

    def test_oversized_duration_in_name_still_completes_and_defaults(self, session, gateway, notifier, sink,
                                                                     make_product, place_order):
        product = make_product(name="Lifetime 10000 năm", accounts=["life@x:1"])
        order = place_order((product, 1))

        result = ReconciliationEngine(session, gateway, notifier).apply(
            OrderStore(session).load(order.id), PaymentOutcome.PAID, channel="test")

        assert result.auto_completed is True
        subscription = session.query(Subscription).filter_by(order_id=order.id).one()
        assert subscription.end_date == add_months(subscription.start_date, 12)
        completed = sink.matching(f"Order #{order.order_code} completed")
        assert len(completed) == 1 and "life@x:1" in completed[0]["text"]
        assert len(sink.matching("Subscription duration defaulted")) == 1

    def test_recording_failure_alerts_and_leaves_the_order_retryable(self, monkeypatch, session, gateway,
                                                                     notifier, sink, make_product, place_order):
        def broken_end_date(start, duration):
            raise ValueError("year is out of range")

        monkeypatch.setattr(subscriptions, "end_date_for", broken_end_date)
        order = place_order((make_product(accounts=["a@x:1"]), 1))
        result = ReconciliationEngine(session, gateway, notifier).apply(
            OrderStore(session).load(order.id), PaymentOutcome.PAID, channel="test")
        monkeypatch.undo()

        stored = OrderStore(session).load(order.id)
        assert result.auto_completed is True
        assert (stored.order_status, stored.payment_status) == ("completed", "paid")
        assert stored.subscriptions_created_at is None
        assert session.query(Subscription).filter_by(order_id=order.id).count() == 0
        assert len(sink.matching(f"Order #{order.order_code} completed")) == 1
        assert len(sink.matching("Subscriptions not recorded")) == 1

        recorded = SubscriptionService(session, notifier).create_for_order(stored)

        assert len(recorded) == 1
        assert OrderStore(session).load(order.id).subscriptions_created_at is not None


class TestSubscriptionQueries:
    def _add(self, session, service, end_date, notified=False):
        subscription = Subscription(customer_email="s@example.com", service_name=service, contact_phone="0909",
                                    start_date=end_date - timedelta(days=30), end_date=end_date,
                                    pre_expiry_notified=notified)
        session.add(subscription)
        session.commit()
        return subscription

    def test_search_by_status_and_text(self, session, notifier):
        now = datetime(2026, 10, 17, 12, 0)
        expired = self._add(session, "Netflix", now - timedelta(days=1))
        soon = self._add(session, "Spotify", now + timedelta(days=2))
        notified = self._add(session, "Canva", now + timedelta(days=1), notified=True)
        later = self._add(session, "Netflix 4K", now + timedelta(days=60))
        service = SubscriptionService(session, notifier)

        assert [s.id for s in service.search(status="expired", now=now)] == [expired.id]
        assert [s.id for s in service.search(status="pending", now=now)] == [soon.id]
        assert [s.id for s in service.search(status="notified", now=now)] == [notified.id]
        assert {s.id for s in service.search(status="active", now=now)} == {soon.id, notified.id, later.id}
        assert {s.id for s in service.search(query="netflix", now=now)} == {expired.id, later.id}
        with pytest.raises(ValidationError):
            service.search(status="bogus")

    def test_manual_reminder_marks_notified(self, session, notifier, sink):
        subscription = self._add(session, "Spotify", datetime(2026, 10, 20))
        service = SubscriptionService(session, notifier)

        assert service.send_reminder_now(subscription.id) is True

        session.expire_all()
        assert service.get(subscription.id).pre_expiry_notified is True
        assert len(sink.matching("Spotify expires soon")) == 1
        with pytest.raises(SubscriptionNotFound):
            service.get(9999)
