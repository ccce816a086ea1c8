"""
Moving paid orders to completion.

Orders whose every item is a preloaded-credential product with stock
left in the pool are completed automatically; everything else waits
for an operator to confirm, process and complete it.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.application.inventory import InventoryAllocator
from orderflow.application.notifications import Notifier
from orderflow.application.order_store import OrderStore
from orderflow.application.subscriptions import SubscriptionService
from orderflow.domain.errors import InvalidTransition, PaymentGatewayError, PoolExhausted, TransitionConflict
from orderflow.domain.models import Order, OrderItem
from orderflow.domain.states import ACTIVE_ORDER_STATUSES, OrderStatus, PaymentStatus
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass
class FulfillmentResult:
    order: Order
    auto_completed: bool = False
    reason: str = ""


class FulfillmentOrchestrator:
    def __init__(self, db: Session, notifier: Notifier, gateway: Optional[PaymentGatewayClient] = None):
        self.db = db
        self.notifier = notifier
        self.gateway = gateway
        self.store = OrderStore(db)
        self.inventory = InventoryAllocator(db)
        self.subscriptions = SubscriptionService(db, notifier)

    # -- helpers ------------------------------------------------------------

    def _products(self, order: Order) -> dict:
        return self.inventory.product_map(item.product_id for item in order.items)

    def _instructions(self, order: Order, products: dict) -> str:
        seen = OrderedDict()
        for item in order.items:
            product = products.get(item.product_id)
            text = (product.completion_instructions or "").strip() if product else ""
            if text:
                seen.setdefault(text, None)
        return "\n\n".join(seen)

    def _attach_delivery(self, item: OrderItem, credentials: str) -> bool:
        result = self.db.execute(
            update(OrderItem)
            .where(OrderItem.id == item.id, OrderItem.delivered_account.is_(None))
            .values(delivered_account=credentials)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _deliver_items(self, order: Order, products: dict, commit_each: bool) -> None:
        """
        Allocate credentials for preloaded items and deduct stock for the rest.

        With ``commit_each`` every preloaded item is committed on its own so
        a pool running dry halfway keeps the items already delivered. Items
        are visited by product id so row locks are always taken in one order.
        """
        for item in sorted(order.items, key=lambda i: (i.product_id, i.id)):
            product = products[item.product_id]
            if product.is_preloaded_account:
                if item.delivered_account is not None:
                    continue
                credentials = [
                    self.inventory.allocate_preloaded_account(product.id, order.id, commit=False)
                    for _ in range(item.quantity)
                ]
                if not self._attach_delivery(item, "\n".join(credentials)):
                    if not commit_each:
                        raise InvalidTransition(f"Item {item.id} of order {order.id} was already delivered")
                    # Another caller delivered this item; return the credentials
                    self.db.rollback()
                    continue
                if commit_each:
                    self.db.commit()
            else:
                self.inventory.deduct_stock(product.id, item.quantity, commit=False)

    def record_subscriptions(self, order: Order) -> None:
        """Record subscriptions for a completed order; failures alert the operator instead of raising."""
        try:
            self.subscriptions.create_for_order(order)
        except Exception as e:
            logger.error(
                f"Could not record subscriptions for order {order.id}: {e}",
                exc_info=True,
                extra={'extra_fields': {'order_id': order.id, 'alert': 'subscription_recording_failed'}}
            )
            self.notifier.operator_alert(
                f"Subscriptions not recorded for order #{order.order_code}",
                f"Order #{order.order_code} is completed and paid but its subscriptions could not be "
                f"recorded ({e}). Add them manually.\n",
                order.id,
            )

    # -- automatic path -----------------------------------------------------

    def is_auto_completable(self, order: Order) -> bool:
        products = self._products(order)
        needed = {}
        for item in order.items:
            product = products.get(item.product_id)
            if product is None or not product.is_preloaded_account:
                return False
            if item.delivered_account is None:
                needed[product.id] = needed.get(product.id, 0) + item.quantity
        return bool(order.items) and all(
            self.inventory.unused_count(product_id) >= quantity for product_id, quantity in needed.items()
        )

    def on_payment_received(self, order: Order) -> FulfillmentResult:
        if order.order_status != OrderStatus.PENDING.value:
            return FulfillmentResult(order, reason=f"order is {order.order_status}")
        if not self.is_auto_completable(order):
            return FulfillmentResult(order, reason="manual fulfillment required")
        return self.auto_complete(order)

    def auto_complete(self, order: Order) -> FulfillmentResult:
        try:
            order = self.store.apply_conditional_transition(
                order.id,
                {"order_status": OrderStatus.PENDING, "payment_status": PaymentStatus.PAID},
                {"order_status": OrderStatus.CONFIRMED},
            )
            order = self.store.apply_conditional_transition(
                order.id, {"order_status": OrderStatus.CONFIRMED}, {"order_status": OrderStatus.PROCESSING}
            )
        except TransitionConflict as e:
            logger.info(f"Auto-complete skipped for order {order.id}: {e}")
            return FulfillmentResult(self.store.load(order.id), reason="already being fulfilled")

        products = self._products(order)
        try:
            self._deliver_items(order, products, commit_each=True)
        except PoolExhausted as e:
            self.db.rollback()
            self.notifier.operator_alert(
                f"Order #{order.order_code} stuck in processing",
                f"Automatic fulfillment ran out of credentials: {e}\n"
                f"Add credentials for product {e.product_id} and complete the order manually.\n",
                order.id,
            )
            return FulfillmentResult(self.store.load(order.id), reason=str(e))

        try:
            order = self.store.apply_conditional_transition(
                order.id, {"order_status": OrderStatus.PROCESSING}, {"order_status": OrderStatus.COMPLETED}
            )
        except TransitionConflict as e:
            logger.warning(f"Order {order.id} changed during auto-complete: {e}")
            return FulfillmentResult(self.store.load(order.id), reason="changed during fulfillment")

        self.record_subscriptions(order)
        self.notifier.order_completed(order, self._instructions(order, products))
        logger.info(f"Order {order.id} auto-completed", extra={'extra_fields': {'order_id': order.id}})
        return FulfillmentResult(order, auto_completed=True)

    # -- operator actions ---------------------------------------------------

    def _transition(self, order_id: int, sources: Iterable[OrderStatus], target: OrderStatus,
                    commit: bool = True, **extra: Any) -> Order:
        sources = list(sources)
        try:
            return self.store.apply_conditional_transition(
                order_id, {"order_status": sources}, {"order_status": target},
                extra_fields=extra or None, commit=commit,
            )
        except TransitionConflict as e:
            names = " or ".join(s.value for s in sources)
            raise InvalidTransition(
                f"Cannot move order {order_id} to {target.value}: it is {e.actual['order_status']}, not {names}"
            ) from e

    def confirm(self, order_id: int) -> Order:
        order = self._transition(order_id, [OrderStatus.PENDING], OrderStatus.CONFIRMED)
        self.notifier.order_confirmed(order)
        return order

    def start_processing(self, order_id: int) -> Order:
        order = self._transition(order_id, [OrderStatus.CONFIRMED], OrderStatus.PROCESSING)
        self.notifier.order_processing(order)
        return order

    def complete(self, order_id: int) -> Order:
        """
        Complete a confirmed or processing order in one transaction.

        Stock is deducted and credentials handed out together with the
        status change; if any item is short nothing is applied.
        """
        order = self._transition(order_id, [OrderStatus.CONFIRMED, OrderStatus.PROCESSING],
                                 OrderStatus.COMPLETED, commit=False)
        products = self._products(order)
        try:
            self._deliver_items(order, products, commit_each=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        order = self.store.load(order_id)
        self.record_subscriptions(order)
        self.notifier.order_completed(order, self._instructions(order, products))
        return order

    def cancel(self, order_id: int, reason: Optional[str] = None, expected_payment: Any = None,
               notify: bool = True) -> Order:
        """
        Cancel a non-terminal order and give back its reserved stock.

        ``expected_payment`` narrows the guard, e.g. the auto-cancel job
        only cancels while payment is still pending.
        """
        expected = {"order_status": ACTIVE_ORDER_STATUSES}
        if expected_payment is not None:
            expected["payment_status"] = expected_payment
        order = self.store.apply_conditional_transition(
            order_id, expected, {"order_status": OrderStatus.CANCELLED},
            extra_fields={"cancel_reason": reason}, commit=False,
        )
        for item in sorted(order.items, key=lambda i: (i.product_id, i.id)):
            if item.delivered_account is None:
                self.inventory.release_reservation(item.product_id, item.quantity, commit=False)
        self.db.commit()
        order = self.store.load(order_id)

        if self.gateway is not None and order.payment_status != PaymentStatus.PAID.value \
                and (order.payment_link_id or order.gateway_order_code):
            try:
                self.gateway.cancel_payment_link(order.payment_link_id or order.gateway_order_code, reason)
            except PaymentGatewayError as e:
                logger.warning(f"Could not cancel payment link for order {order_id}: {e}")
        if notify:
            self.notifier.order_cancelled(order, reason)
        return order

    def cancel_by_operator(self, order_id: int, reason: Optional[str] = None) -> Order:
        try:
            return self.cancel(order_id, reason)
        except TransitionConflict as e:
            raise InvalidTransition(
                f"Cannot cancel order {order_id}: it is already {e.actual['order_status']}"
            ) from e

