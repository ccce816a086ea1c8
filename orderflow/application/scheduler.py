"""
Time-driven jobs.

Jobs may run more often than intended (restarts, overlapping workers),
so every customer-facing send is guarded by a persisted flag claimed
before sending and released again if the send fails.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.orm import Session

from orderflow.application.clock import day_bounds, local_date_label
from orderflow.application.fulfillment import FulfillmentOrchestrator
from orderflow.application.notifications import Notifier
from orderflow.application.order_store import OrderStore
from orderflow.application.subscriptions import SubscriptionService
from orderflow.core_settings import Settings
from orderflow.domain.errors import TransitionConflict
from orderflow.domain.models import Order, utcnow
from orderflow.domain.states import OrderStatus, PaymentStatus
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient
from orderflow.infrastructure.periodic import PeriodicTask, parse_time_of_day
from shared.core import get_logger

logger = get_logger(__name__)

PENDING = OrderStatus.PENDING.value
UNPAID = (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)


@dataclass
class JobResult:
    job: str
    examined: int = 0
    acted: int = 0
    skipped: int = 0
    failed: int = 0


class Job:
    name = "job"

    def __init__(self, session_factory: Callable[[], Session], notifier: Notifier, settings: Settings,
                 gateway: Optional[PaymentGatewayClient] = None):
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.gateway = gateway

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.BUSINESS_TIMEZONE)

    def run(self, now: Optional[datetime] = None) -> JobResult:
        now = now or utcnow()
        result = JobResult(self.name)
        with self.session_factory() as db:
            self.execute(db, now, result)
        logger.info(
            f"Job {self.name} finished",
            extra={'extra_fields': {'examined': result.examined, 'acted': result.acted,
                                    'skipped': result.skipped, 'failed': result.failed}}
        )
        return result

    def execute(self, db: Session, now: datetime, result: JobResult) -> None:
        raise NotImplementedError


class PaymentReminderJob(Job):
    """One reminder per unpaid order once it is older than the reminder threshold."""
    name = "payment_reminder"

    def execute(self, db, now, result):
        store = OrderStore(db)
        due = now - timedelta(hours=self.settings.PAYMENT_REMINDER_AFTER_HOURS)
        cancel_due = now - timedelta(hours=self.settings.AUTO_CANCEL_AFTER_HOURS)
        orders = store.find(
            Order.order_status == PENDING,
            Order.payment_status == PaymentStatus.PENDING.value,
            Order.payment_reminder_sent_at.is_(None),
            Order.created_at <= due,
            Order.created_at > cancel_due,
            order_by=Order.id,
        )
        for order in orders:
            result.examined += 1
            claimed = store.claim_flag(order.id, "payment_reminder_sent_at", now, expected={
                "order_status": PENDING, "payment_status": PaymentStatus.PENDING.value,
            })
            if not claimed:
                result.skipped += 1
                continue
            if self.notifier.payment_reminder(order):
                result.acted += 1
            else:
                store.release_flag(order.id, "payment_reminder_sent_at", now)
                result.failed += 1


class AutoCancelJob(Job):
    """Cancel orders still unpaid after the auto-cancel threshold."""
    name = "auto_cancel"

    def execute(self, db, now, result):
        store = OrderStore(db)
        fulfillment = FulfillmentOrchestrator(db, self.notifier, self.gateway)
        due = now - timedelta(hours=self.settings.AUTO_CANCEL_AFTER_HOURS)
        orders = store.find(
            Order.order_status == PENDING,
            Order.payment_status.in_(UNPAID),
            Order.created_at <= due,
            order_by=Order.id,
        )
        reason = f"Not paid within {self.settings.AUTO_CANCEL_AFTER_HOURS:g} hours"
        for order in orders:
            result.examined += 1
            try:
                fulfillment.cancel(order.id, reason, expected_payment=UNPAID)
            except TransitionConflict as e:
                # Paid or cancelled in the meantime
                db.rollback()
                logger.info(f"Auto-cancel skipped order {order.id}: {e.actual}")
                result.skipped += 1
                continue
            result.acted += 1


class PendingConfirmationNudgeJob(Job):
    """Tell the operator about paid orders nobody has confirmed yet."""
    name = "pending_confirmation_nudge"

    def execute(self, db, now, result):
        store = OrderStore(db)
        due = now - timedelta(hours=self.settings.PENDING_CONFIRMATION_AFTER_HOURS)
        orders = store.find(
            Order.order_status == PENDING,
            Order.payment_status == PaymentStatus.PAID.value,
            Order.paid_at <= due,
            order_by=Order.paid_at,
        )
        result.examined = len(orders)
        if orders and self.notifier.admin_pending_confirmation(orders):
            result.acted = len(orders)


class DailyDigestJob(Job):
    """End-of-day summary for the operator."""
    name = "daily_digest"

    def execute(self, db, now, result):
        store = OrderStore(db)
        start, end = day_bounds(now, self.tz)
        orders = store.find(Order.created_at >= start, Order.created_at < end, order_by=Order.id)
        counts = {}
        for order in orders:
            counts[order.order_status] = counts.get(order.order_status, 0) + 1
        paid = Order.payment_status == PaymentStatus.PAID.value
        revenue = store.revenue(paid, Order.paid_at >= start, Order.paid_at < end)
        attention = store.find(
            Order.order_status.in_([PENDING, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value]),
            or_(paid, Order.note.is_not(None)),
            order_by=Order.id,
            limit=20,
        )
        result.examined = len(orders)
        if self.notifier.admin_daily_digest(local_date_label(now, self.tz), orders, revenue, counts,
                                            attention=attention):
            result.acted = 1
        else:
            result.failed = 1


class SubscriptionExpiryReminderJob(Job):
    """Remind customers whose subscription ends today or tomorrow, once per subscription."""
    name = "subscription_expiry_reminder"

    def execute(self, db, now, result):
        subscriptions = SubscriptionService(db, self.notifier)
        start, _ = day_bounds(now, self.tz)
        _, end = day_bounds(now, self.tz, offset_days=1)
        reminded = []
        for subscription in subscriptions.ending_between(start, end, notified=False):
            result.examined += 1
            if not subscriptions.mark_notified(subscription.id):
                result.skipped += 1
                continue
            if self.notifier.subscription_expiring(subscription):
                reminded.append(subscription)
                result.acted += 1
            else:
                subscriptions.unmark_notified(subscription.id)
                result.failed += 1
        if reminded:
            self.notifier.admin_subscriptions_ending(local_date_label(now, self.tz, offset_days=1), reminded)


class SubscriptionTodayDigestJob(Job):
    """Morning list of subscriptions that end today, for the operator."""
    name = "subscription_today_digest"

    def execute(self, db, now, result):
        start, end = day_bounds(now, self.tz)
        ending = SubscriptionService(db, self.notifier).ending_between(start, end)
        result.examined = len(ending)
        if ending and self.notifier.admin_subscriptions_ending(local_date_label(now, self.tz), ending):
            result.acted = len(ending)


def build_periodic_tasks(session_factory: Callable[[], Session], notifier: Notifier, settings: Settings,
                         gateway: Optional[PaymentGatewayClient] = None) -> List[PeriodicTask]:
    tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
    scan = timedelta(minutes=settings.ORDER_SCAN_INTERVAL_MINUTES)

    def make(job_class):
        return job_class(session_factory, notifier, settings, gateway).run

    return [
        PeriodicTask("payment_reminder", make(PaymentReminderJob), interval=scan, tz=tz, run_at_startup=True),
        PeriodicTask("auto_cancel", make(AutoCancelJob), interval=scan, tz=tz, run_at_startup=True),
        PeriodicTask("pending_confirmation_nudge", make(PendingConfirmationNudgeJob),
                     daily_at=parse_time_of_day(settings.PENDING_CONFIRMATION_NUDGE_AT), tz=tz),
        PeriodicTask("daily_digest", make(DailyDigestJob),
                     daily_at=parse_time_of_day(settings.DAILY_DIGEST_AT), tz=tz),
        PeriodicTask("subscription_expiry_reminder", make(SubscriptionExpiryReminderJob),
                     daily_at=parse_time_of_day(settings.SUBSCRIPTION_REMINDER_AT), tz=tz),
        PeriodicTask("subscription_today_digest", make(SubscriptionTodayDigestJob),
                     daily_at=parse_time_of_day(settings.SUBSCRIPTION_DIGEST_AT), tz=tz),
    ]
