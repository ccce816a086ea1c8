import math
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.application.clock import day_bounds, month_start
from orderflow.application.inventory import InventoryAllocator
from orderflow.application.notifications import Notifier
from orderflow.application.order_store import (
    MAX_ORDER_CODE_ATTEMPTS,
    OrderDraft,
    OrderFilters,
    OrderItemDraft,
    OrderStore,
)
from orderflow.application.schemas import OrderCreate
from orderflow.core_settings import Settings, get_settings
from orderflow.domain.errors import (
    InvalidTransition,
    OrderCodeAllocationError,
    OrderNotFound,
    PaymentGatewayError,
    ProductNotFound,
    ValidationError,
)
from orderflow.domain.models import Order, utcnow
from orderflow.domain.states import OrderStatus, PaymentStatus
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient
from shared.core import get_logger

logger = get_logger(__name__)


class OrderService:
    def __init__(self, db: Session, settings: Optional[Settings] = None, notifier: Optional[Notifier] = None,
                 gateway: Optional[PaymentGatewayClient] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.notifier = notifier
        self.gateway = gateway
        self.store = OrderStore(db)
        self.inventory = InventoryAllocator(db)

    def get(self, order_id: int) -> Order:
        return self.store.load(order_id)

    def get_by_order_code(self, order_code: int) -> Order:
        order = self.store.find_by_order_code(order_code)
        if order is None:
            raise OrderNotFound(order_code)
        return order

    def get_by_gateway_code(self, gateway_order_code: int) -> Order:
        order = self.store.find_by_gateway_code(gateway_order_code)
        if order is None:
            raise OrderNotFound(gateway_order_code)
        return order

    def _build_draft(self, data: OrderCreate, user_id: Optional[str]) -> OrderDraft:
        products = self.inventory.product_map(i.product_id for i in data.items)
        items = []
        for line in data.items:
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(line.product_id)
            items.append(OrderItemDraft(
                product_id=product.id,
                name=product.name,
                unit_price=product.price,
                quantity=line.quantity,
                currency=product.currency,
                required_fields_data=[f.model_dump() for f in line.required_fields_data or []],
            ))
        draft = OrderDraft(
            customer_name=data.customer.name,
            customer_email=data.customer.email,
            customer_phone=data.customer.phone,
            items=items,
            user_id=user_id,
            note=data.note,
        )
        if draft.total <= 0:
            raise ValidationError("Order total must be positive")
        if data.total_amount is not None and data.total_amount != draft.total:
            raise ValidationError(
                f"Order total {data.total_amount} does not match current prices ({draft.total})"
            )
        return draft

    def create(self, data: OrderCreate, user_id: Optional[str] = None) -> Order:
        """
        Validate, reserve stock and persist a new pending order.

        Reservation and insert commit together; a code collision on commit
        rolls both back and the whole unit is retried.
        """
        draft = self._build_draft(data, user_id)
        quantities = {}
        for item in draft.items:
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

        for attempt in range(1, MAX_ORDER_CODE_ATTEMPTS + 1):
            try:
                # Ascending product id so concurrent carts lock rows in the same order
                for product_id, quantity in sorted(quantities.items()):
                    self.inventory.reserve_stock(product_id, quantity)
                order = self.store.create(draft, commit=False)
                self.db.commit()
                break
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Order code collision on insert, retrying ({attempt}/{MAX_ORDER_CODE_ATTEMPTS})")
            except Exception:
                self.db.rollback()
                raise
        else:
            raise OrderCodeAllocationError("Could not allocate a unique order code")

        order = self.store.load(order.id)
        logger.info(
            f"Order {order.id} created",
            extra={'extra_fields': {'order_id': order.id, 'order_code': order.order_code, 'total': order.order_total}}
        )
        if self.gateway is not None and self.gateway.configured:
            try:
                order = self.open_payment_link(order.id)
            except PaymentGatewayError as e:
                logger.warning(f"Payment link for order {order.id} not created: {e}")
        if self.notifier is not None:
            self.notifier.order_created(order)
            self.notifier.admin_order_created(order)
        return order

    def open_payment_link(self, order_id: int) -> Order:
        """Create the gateway payment link once; later calls return the stored one."""
        order = self.store.load(order_id)
        if order.gateway_order_code and order.checkout_url:
            return order
        if order.order_status != OrderStatus.PENDING.value or order.payment_status == PaymentStatus.PAID.value:
            raise InvalidTransition(
                f"Order {order_id} is {order.order_status}/{order.payment_status}; no payment link needed"
            )
        if self.gateway is None:
            raise PaymentGatewayError("Payment gateway is not available")
        link = self.gateway.create_payment_link(
            amount=order.order_total,
            description=f"DH{order.order_code}",
            items=[
                {"name": item.product_name_snapshot[:50], "quantity": item.quantity, "price": item.unit_price}
                for item in order.items
            ],
            buyer_name=order.customer_name_snapshot,
            buyer_email=order.customer_email_snapshot,
            buyer_phone=order.customer_phone_snapshot,
        )
        if not self.store.attach_payment_link(order.id, link.gateway_order_code, link.payment_link_id,
                                              link.checkout_url, link.qr_code):
            logger.info(f"Order {order.id} already had a payment link")
        return self.store.load(order.id)

    def list_orders(self, filters: OrderFilters) -> dict:
        orders, total = self.store.search(filters)
        return {
            "orders": orders,
            "total": total,
            "page": filters.page,
            "limit": filters.limit,
            "total_pages": math.ceil(total / filters.limit) if filters.limit else 0,
        }

    def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        tz = ZoneInfo(self.settings.BUSINESS_TIMEZONE)
        today_start, today_end = day_bounds(now, tz)
        paid = Order.payment_status == PaymentStatus.PAID.value
        return {
            "today_orders": self.store.count(Order.created_at >= today_start, Order.created_at < today_end),
            "pending_confirmation": self.store.count(Order.order_status == OrderStatus.PENDING.value, paid),
            "processing": self.store.count(Order.order_status == OrderStatus.PROCESSING.value),
            "today_revenue": self.store.revenue(paid, Order.paid_at >= today_start, Order.paid_at < today_end),
            "month_revenue": self.store.revenue(paid, Order.paid_at >= month_start(now, tz)),
        }
