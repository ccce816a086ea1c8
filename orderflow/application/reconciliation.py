"""
Applying gateway payment reports to orders.

Webhook deliveries and status polls can arrive in any order and more
than once. Both end up in ``ReconciliationEngine.apply``, where the
conditional transition on ``payment_status`` lets exactly one caller
act on a given payment.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from orderflow.application.fulfillment import FulfillmentOrchestrator
from orderflow.application.notifications import Notifier
from orderflow.application.order_store import OrderStore
from orderflow.domain.errors import OrderNotFound, PaymentGatewayError, PaymentGatewayTimeout, SignatureMismatch, TransitionConflict
from orderflow.domain.models import Order
from orderflow.domain.states import ACTIVE_ORDER_STATUSES, OrderStatus, PaymentOutcome, PaymentStatus
from orderflow.infrastructure.payment_gateway import SUCCESS_CODE, PaymentGatewayClient
from shared.core import get_logger

logger = get_logger(__name__)

UNSETTLED_STATUSES = {"", "PENDING", "PROCESSING"}


def map_gateway_status(status: Optional[str], code: Optional[str] = None,
                       success: Optional[bool] = None) -> PaymentOutcome:
    """Translate a gateway status (plus result code/flag, when given) to a local outcome."""
    status = (status or "").strip().upper()
    failed_result = (code is not None and str(code) != SUCCESS_CODE) or success is False
    if status == "PAID":
        return PaymentOutcome.OTHER_FAILURE if failed_result else PaymentOutcome.PAID
    if status == "EXPIRED":
        return PaymentOutcome.EXPIRED
    if status == "CANCELLED":
        return PaymentOutcome.CANCELLED
    if status in UNSETTLED_STATUSES:
        return PaymentOutcome.OTHER_FAILURE if failed_result else PaymentOutcome.UNSETTLED
    return PaymentOutcome.OTHER_FAILURE


@dataclass
class ReconciliationResult:
    order_id: Optional[int]
    outcome: PaymentOutcome
    applied: bool = False
    auto_completed: bool = False
    detail: str = ""


class ReconciliationEngine:
    def __init__(self, db: Session, gateway: PaymentGatewayClient, notifier: Notifier):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.store = OrderStore(db)
        self.fulfillment = FulfillmentOrchestrator(db, notifier, gateway)

    def handle_webhook(self, payload: Mapping[str, Any]) -> ReconciliationResult:
        """
        Verify and apply one webhook delivery.

        Raises SignatureMismatch or OrderNotFound; the HTTP layer still
        answers 200 so the gateway does not keep retrying.
        """
        data = payload.get("data") if isinstance(payload, Mapping) else None
        signature = payload.get("signature") if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping) or not self.gateway.verify_signature(data, signature):
            raise SignatureMismatch("Webhook signature verification failed")

        order = self.store.find_by_gateway_code(data.get("orderCode"))
        if order is None:
            raise OrderNotFound(f"gateway order code {data.get('orderCode')}")

        status = data.get("status")
        if status is None and str(data.get("code", "")) == SUCCESS_CODE:
            # Payment-received webhooks carry only the result code
            status = "PAID"
        self.store.record_gateway_status(order.id, status)
        outcome = map_gateway_status(status, payload.get("code"), payload.get("success"))
        return self.apply(order, outcome, channel="webhook", reason=data.get("desc") or payload.get("desc"))

    def refresh_payment_info(self, order: Order) -> Tuple[Order, Optional[Dict[str, Any]]]:
        """
        Ask the gateway for the order's payment status and apply it.

        Gateway failures are logged and yield ``(order, None)``; the
        caller keeps showing the stored state.
        """
        reference = order.payment_link_id or order.gateway_order_code
        if not reference:
            return order, None
        try:
            info = self.gateway.get_payment_info(reference)
        except PaymentGatewayTimeout as e:
            logger.info(f"Payment status poll timed out for order {order.id}: {e}")
            return order, None
        except PaymentGatewayError as e:
            logger.warning(f"Payment status poll failed for order {order.id}: {e}")
            return order, None

        self.store.record_gateway_status(order.id, info.get("status"))
        self.apply(order, map_gateway_status(info.get("status")), channel="poll")
        return self.store.load(order.id), info

    def apply(self, order: Order, outcome: PaymentOutcome, channel: str,
              reason: Optional[str] = None) -> ReconciliationResult:
        logger.info(
            f"Applying {outcome.value} to order {order.id}",
            extra={'extra_fields': {'order_id': order.id, 'outcome': outcome.value, 'channel': channel}}
        )
        if outcome is PaymentOutcome.PAID:
            return self._apply_paid(order)
        if outcome is PaymentOutcome.UNSETTLED:
            return ReconciliationResult(order.id, outcome, detail="payment not settled")
        return self._apply_failure(order, outcome, reason)

    def _apply_paid(self, order: Order) -> ReconciliationResult:
        outcome = PaymentOutcome.PAID
        if order.payment_status == PaymentStatus.PAID.value:
            return ReconciliationResult(order.id, outcome, detail="already paid")
        prior = PaymentStatus(order.payment_status)
        while True:
            try:
                order = self.store.apply_conditional_transition(
                    order.id, {"payment_status": prior}, {"payment_status": PaymentStatus.PAID},
                )
                break
            except TransitionConflict as e:
                # A failure signal landed in between; a payment still overrides it
                if prior is not PaymentStatus.FAILED and e.actual.get("payment_status") == PaymentStatus.FAILED.value:
                    prior = PaymentStatus.FAILED
                    continue
                logger.info(f"Payment for order {order.id} already applied by another caller")
                return ReconciliationResult(order.id, outcome, detail="already paid")

        if order.order_status == OrderStatus.CANCELLED.value:
            self.notifier.operator_alert(
                f"Payment received for cancelled order #{order.order_code}",
                f"Order #{order.order_code} was cancelled ({order.cancel_reason or 'no reason'}) "
                f"but the gateway reported a payment of {order.order_total}. Refund or restore it manually.\n",
                order.id,
            )
            return ReconciliationResult(order.id, outcome, applied=True, detail="paid after cancel")

        self.notifier.payment_success(order)
        self.notifier.admin_new_paid_order(order)

        if order.order_status == OrderStatus.COMPLETED.value:
            # Completed by an operator before the payment arrived
            self.fulfillment.record_subscriptions(order)
            return ReconciliationResult(order.id, outcome, applied=True)

        result = self.fulfillment.on_payment_received(order)
        return ReconciliationResult(order.id, outcome, applied=True,
                                    auto_completed=result.auto_completed, detail=result.reason)

    def _apply_failure(self, order: Order, outcome: PaymentOutcome, reason: Optional[str]) -> ReconciliationResult:
        if order.payment_status != PaymentStatus.PENDING.value:
            return ReconciliationResult(order.id, outcome, detail=f"payment already {order.payment_status}")
        try:
            order = self.store.apply_conditional_transition(
                order.id,
                {"payment_status": PaymentStatus.PENDING, "order_status": ACTIVE_ORDER_STATUSES},
                {"payment_status": PaymentStatus.FAILED},
            )
        except TransitionConflict as e:
            return ReconciliationResult(order.id, outcome, detail=f"not applied: {e.actual}")

        if outcome is PaymentOutcome.EXPIRED:
            self.notifier.payment_expired(order)
        else:
            self.notifier.payment_failed(order, reason or outcome.value.lower().replace("_", " "))
        return ReconciliationResult(order.id, outcome, applied=True)
