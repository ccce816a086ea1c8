import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from orderflow.application.notifications import Notifier
from orderflow.application.order_store import OrderStore
from orderflow.domain.errors import SubscriptionNotFound, ValidationError
from orderflow.domain.models import Order, Product, Subscription, utcnow
from orderflow.domain.states import PaymentStatus
from shared.core import get_logger

logger = get_logger(__name__)

DURATION_PATTERN = re.compile(r"(\d+)\s*(năm|nam|tháng|thang|ngày|ngay|years?|months?|days?)\b", re.IGNORECASE)
UNIT_ALIASES = {
    "năm": "year", "nam": "year", "year": "year", "years": "year",
    "tháng": "month", "thang": "month", "month": "month", "months": "month",
    "ngày": "day", "ngay": "day", "day": "day", "days": "day",
}
DEFAULT_DURATION = (1, "year")
# Longer terms are treated as unreadable and fall back to the default
MAX_DURATION = {"year": 100, "month": 1200, "day": 36500}
SUBSCRIPTION_STATUSES = ("active", "expired", "notified", "pending")


@dataclass
class Duration:
    amount: int
    unit: str


def parse_duration(*texts: Optional[str]) -> Optional[Duration]:
    """First plausible "<n> <unit>" found in the given texts, e.g. "Netflix 3 tháng"."""
    for text in texts:
        if not text:
            continue
        for match in DURATION_PATTERN.finditer(text):
            amount, unit = int(match.group(1)), UNIT_ALIASES[match.group(2).lower()]
            if 0 < amount <= MAX_DURATION[unit]:
                return Duration(amount, unit)
    return None


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def end_date_for(start: datetime, duration: Duration) -> datetime:
    if duration.unit == "day":
        return start + timedelta(days=duration.amount)
    if duration.unit == "month":
        return add_months(start, duration.amount)
    return add_months(start, 12 * duration.amount)


class SubscriptionService:
    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.notifier = notifier
        self.store = OrderStore(db)

    def create_for_order(self, order: Order, now: Optional[datetime] = None) -> List[Subscription]:
        """
        Record one subscription per line item of a completed, paid order.

        Runs at most once per order: the rows are built first, then the
        order's ``subscriptions_created_at`` is claimed and committed in the
        same transaction as the inserts. The losing caller inserts nothing.
        """
        if order.payment_status != PaymentStatus.PAID.value:
            return []
        now = now or utcnow()
        start = order.completed_at or now

        created, defaulted = [], []
        for item in order.items:
            product = self.db.get(Product, item.product_id)
            billing_cycle = product.billing_cycle if product else None
            duration = parse_duration(item.product_name_snapshot, billing_cycle)
            if duration is None:
                duration = Duration(*DEFAULT_DURATION)
                defaulted.append((item, billing_cycle))
            created.append(Subscription(
                order_id=order.id,
                order_item_id=item.id,
                customer_email=order.customer_email_snapshot,
                service_name=item.product_name_snapshot,
                contact_phone=order.customer_phone_snapshot,
                start_date=start,
                end_date=end_date_for(start, duration),
            ))

        try:
            if not self.store.claim_flag(order.id, "subscriptions_created_at", now, commit=False):
                self.db.rollback()
                logger.info(f"Subscriptions already recorded for order {order.id}")
                return []
            self.db.add_all(created)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Recorded {len(created)} subscription(s) for order {order.id}")

        for item, billing_cycle in defaulted:
            logger.warning(
                f"No duration found for '{item.product_name_snapshot}', defaulting to 1 year",
                extra={'extra_fields': {'order_id': order.id, 'order_item_id': item.id,
                                        'alert': 'subscription_duration_defaulted'}}
            )
            self.notifier.operator_alert(
                f"Subscription duration defaulted for order #{order.order_code}",
                f"Could not read a duration from '{item.product_name_snapshot}'"
                f" (billing cycle: {billing_cycle or '-'}). Recorded 1 year; please check.\n",
                order.id,
            )
        return created

    def get(self, subscription_id: int) -> Subscription:
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def search(self, query: Optional[str] = None, status: Optional[str] = None,
               now: Optional[datetime] = None, reminder_days: int = 3) -> List[Subscription]:
        now = now or utcnow()
        stmt = select(Subscription)
        if query:
            term = f"%{query}%"
            stmt = stmt.where(or_(Subscription.customer_email.ilike(term),
                                  Subscription.service_name.ilike(term),
                                  Subscription.contact_phone.ilike(term)))
        if status:
            if status not in SUBSCRIPTION_STATUSES:
                raise ValidationError(f"Unknown subscription status '{status}'")
            if status == "expired":
                stmt = stmt.where(Subscription.end_date < now)
            elif status == "active":
                stmt = stmt.where(Subscription.end_date >= now)
            elif status == "notified":
                stmt = stmt.where(Subscription.pre_expiry_notified.is_(True))
            else:
                stmt = stmt.where(Subscription.pre_expiry_notified.is_(False),
                                  Subscription.end_date >= now,
                                  Subscription.end_date <= now + timedelta(days=reminder_days))
        return list(self.db.execute(stmt.order_by(Subscription.end_date)).scalars())

    def ending_between(self, start: datetime, end: datetime, notified: Optional[bool] = None) -> List[Subscription]:
        stmt = select(Subscription).where(Subscription.end_date >= start, Subscription.end_date < end)
        if notified is not None:
            stmt = stmt.where(Subscription.pre_expiry_notified.is_(notified))
        return list(self.db.execute(stmt.order_by(Subscription.id)).scalars())

    def mark_notified(self, subscription_id: int) -> bool:
        """Claim the pre-expiry reminder; False if someone already sent it."""
        result = self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.pre_expiry_notified.is_(False))
            .values(pre_expiry_notified=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def unmark_notified(self, subscription_id: int) -> None:
        self.db.execute(
            update(Subscription).where(Subscription.id == subscription_id)
            .values(pre_expiry_notified=False).execution_options(synchronize_session=False)
        )
        self.db.commit()

    def send_reminder_now(self, subscription_id: int) -> bool:
        """Operator-triggered reminder; sent regardless of the notified flag."""
        subscription = self.get(subscription_id)
        sent = self.notifier.subscription_expiring(subscription)
        if sent:
            self.mark_notified(subscription_id)
        return sent
