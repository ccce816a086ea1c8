"""
Customer and operator messages.

Every method is best-effort: a delivery failure is logged and reported
as ``False`` but never undoes the state change that triggered it.
"""

from datetime import datetime
from typing import Iterable, Optional, Sequence

from orderflow.core_settings import Settings
from orderflow.domain.errors import NotificationError
from orderflow.domain.models import Order, Subscription
from orderflow.infrastructure.mailer import NotificationSink
from shared.core import get_logger

logger = get_logger(__name__)


def format_money(amount: int, currency: str = "VND") -> str:
    return f"{amount:,}".replace(",", ".") + f" {currency}"


def format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else "-"


def _item_lines(order: Order) -> str:
    return "\n".join(
        f"- {item.product_name_snapshot} x{item.quantity}: {format_money(item.subtotal, item.currency)}"
        for item in order.items
    )


def _attention_line(order: Order) -> str:
    line = f"- #{order.order_code} {order.order_status}/{order.payment_status} {order.customer_name_snapshot}"
    if order.note:
        line += f" | note: {order.note}"
    extras = [
        f"{field.get('label')}: {field.get('value')}"
        for item in order.items for field in (item.required_fields_data or [])
    ]
    if extras:
        line += " | " + ", ".join(extras)
    return line


class Notifier:
    def __init__(self, sink: NotificationSink, settings: Settings):
        self.sink = sink
        self.settings = settings

    def _deliver(self, kind: str, to: Optional[str], subject: str, text: str, order_id: Optional[int] = None) -> bool:
        if not to:
            logger.warning(f"No recipient for {kind} notification", extra={'extra_fields': {'order_id': order_id}})
            return False
        try:
            self.sink.send(to, subject, text)
        except NotificationError as e:
            logger.error(
                f"Failed to send {kind} notification: {e}",
                extra={'extra_fields': {'kind': kind, 'to': to, 'order_id': order_id}}
            )
            return False
        logger.info(f"Sent {kind} notification", extra={'extra_fields': {'kind': kind, 'order_id': order_id}})
        return True

    def _order_url(self, order: Order) -> str:
        return f"{self.settings.FRONTEND_URL}/orders/{order.id}"

    def _greeting(self, order: Order) -> str:
        return f"Hello {order.customer_name_snapshot},"

    # -- customer -----------------------------------------------------------

    def order_created(self, order: Order) -> bool:
        text = (
            f"{self._greeting(order)}\n\n"
            f"We received order #{order.order_code}.\n\n{_item_lines(order)}\n\n"
            f"Total: {format_money(order.order_total)}\n"
        )
        if order.checkout_url:
            text += f"Pay here: {order.checkout_url}\n"
        return self._deliver("order_created", order.customer_email_snapshot,
                             f"Order #{order.order_code} received", text, order.id)

    def payment_reminder(self, order: Order) -> bool:
        link = order.checkout_url or self._order_url(order)
        text = (
            f"{self._greeting(order)}\n\n"
            f"Order #{order.order_code} ({format_money(order.order_total)}) is still waiting for payment.\n"
            f"Complete it here: {link}\n"
            f"Unpaid orders are cancelled automatically after {self.settings.AUTO_CANCEL_AFTER_HOURS:g} hours.\n"
        )
        return self._deliver("payment_reminder", order.customer_email_snapshot,
                             f"Reminder: order #{order.order_code} is awaiting payment", text, order.id)

    def payment_success(self, order: Order) -> bool:
        text = (
            f"{self._greeting(order)}\n\n"
            f"Payment of {format_money(order.order_total)} for order #{order.order_code} was received.\n"
            f"Track it at {self._order_url(order)}\n"
        )
        return self._deliver("payment_success", order.customer_email_snapshot,
                             f"Payment received for order #{order.order_code}", text, order.id)

    def payment_failed(self, order: Order, reason: str) -> bool:
        text = (
            f"{self._greeting(order)}\n\n"
            f"Payment for order #{order.order_code} did not go through ({reason}).\n"
            f"You can try again from {self._order_url(order)}\n"
        )
        return self._deliver("payment_failed", order.customer_email_snapshot,
                             f"Payment failed for order #{order.order_code}", text, order.id)

    def payment_expired(self, order: Order) -> bool:
        return self.payment_failed(order, "the payment link expired")

    def order_confirmed(self, order: Order) -> bool:
        text = f"{self._greeting(order)}\n\nOrder #{order.order_code} has been confirmed.\n"
        return self._deliver("order_confirmed", order.customer_email_snapshot,
                             f"Order #{order.order_code} confirmed", text, order.id)

    def order_processing(self, order: Order) -> bool:
        text = f"{self._greeting(order)}\n\nWe are now preparing order #{order.order_code}.\n"
        return self._deliver("order_processing", order.customer_email_snapshot,
                             f"Order #{order.order_code} is being processed", text, order.id)

    def order_completed(self, order: Order, instructions: str = "") -> bool:
        text = f"{self._greeting(order)}\n\nOrder #{order.order_code} is complete.\n"
        delivered = [item for item in order.items if item.delivered_account]
        if delivered:
            text += "\nYour account details:\n"
            for item in delivered:
                text += f"\n{item.product_name_snapshot}:\n{item.delivered_account}\n"
        if instructions:
            text += f"\nInstructions:\n{instructions}\n"
        return self._deliver("order_completed", order.customer_email_snapshot,
                             f"Order #{order.order_code} completed", text, order.id)

    def order_cancelled(self, order: Order, reason: Optional[str] = None) -> bool:
        text = f"{self._greeting(order)}\n\nOrder #{order.order_code} has been cancelled."
        if reason:
            text += f"\nReason: {reason}"
        return self._deliver("order_cancelled", order.customer_email_snapshot,
                             f"Order #{order.order_code} cancelled", text + "\n", order.id)

    def subscription_expiring(self, subscription: Subscription) -> bool:
        text = (
            f"Hello,\n\nYour {subscription.service_name} subscription ends on "
            f"{format_date(subscription.end_date)}.\nReply to this email to renew it.\n"
        )
        return self._deliver("subscription_expiring", subscription.customer_email,
                             f"{subscription.service_name} expires soon", text, subscription.order_id)

    # -- operator -----------------------------------------------------------

    def admin_order_created(self, order: Order) -> bool:
        text = (
            f"New order #{order.order_code} from {order.customer_name_snapshot} "
            f"<{order.customer_email_snapshot}> awaiting payment.\n\n{_item_lines(order)}\n\n"
            f"Total: {format_money(order.order_total)}\n"
        )
        return self._deliver("admin_order_created", self.settings.ADMIN_EMAIL,
                             f"[Order #{order.order_code}] created", text, order.id)

    def admin_new_paid_order(self, order: Order) -> bool:
        text = (
            f"Order #{order.order_code} was paid ({format_money(order.order_total)}).\n"
            f"Customer: {order.customer_name_snapshot} <{order.customer_email_snapshot}> "
            f"{order.customer_phone_snapshot}\n\n{_item_lines(order)}\n"
        )
        if order.note:
            text += f"\nNote: {order.note}\n"
        return self._deliver("admin_new_paid_order", self.settings.ADMIN_EMAIL,
                             f"[Order #{order.order_code}] paid", text, order.id)

    def admin_pending_confirmation(self, orders: Sequence[Order]) -> bool:
        lines = "\n".join(
            f"- #{o.order_code} {o.customer_name_snapshot} {format_money(o.order_total)} paid {format_date(o.paid_at)}"
            for o in orders
        )
        return self._deliver("admin_pending_confirmation", self.settings.ADMIN_EMAIL,
                             f"{len(orders)} paid order(s) awaiting confirmation",
                             f"These orders were paid but are still pending:\n\n{lines}\n")

    def admin_daily_digest(self, day: str, orders: Sequence[Order], revenue: int, counts: dict,
                           attention: Sequence[Order] = ()) -> bool:
        summary = "\n".join(f"{status}: {count}" for status, count in sorted(counts.items()))
        lines = "\n".join(
            f"- #{o.order_code} {o.order_status}/{o.payment_status} {format_money(o.order_total)}" for o in orders
        )
        text = (
            f"Orders for {day}: {len(orders)}\nRevenue (paid): {format_money(revenue)}\n\n"
            f"{summary}\n\n{lines}\n"
        )
        if attention:
            text += "\nNeeds attention:\n" + "\n".join(_attention_line(o) for o in attention) + "\n"
        return self._deliver("admin_daily_digest", self.settings.ADMIN_EMAIL, f"Daily order report {day}", text)

    def admin_subscriptions_ending(self, day: str, subscriptions: Iterable[Subscription]) -> bool:
        subscriptions = list(subscriptions)
        lines = "\n".join(
            f"- {s.service_name} for {s.customer_email} {s.contact_phone or ''}".rstrip() for s in subscriptions
        )
        return self._deliver("admin_subscriptions_ending", self.settings.ADMIN_EMAIL,
                             f"{len(subscriptions)} subscription(s) end {day}", f"{lines}\n")

    def operator_alert(self, subject: str, details: str, order_id: Optional[int] = None) -> bool:
        logger.warning(f"Operator alert: {subject}", extra={'extra_fields': {'order_id': order_id, 'alert': subject}})
        return self._deliver("operator_alert", self.settings.ADMIN_EMAIL, f"[Alert] {subject}", details, order_id)
