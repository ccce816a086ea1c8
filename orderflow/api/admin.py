from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from orderflow.api.deps import (
    CurrentUser,
    domain_errors,
    get_db,
    get_gateway,
    get_notifier,
    get_settings,
    require_admin,
)
from orderflow.application.fulfillment import FulfillmentOrchestrator
from orderflow.application.inventory import InventoryAllocator
from orderflow.application.notifications import Notifier
from orderflow.application.order_store import OrderFilters
from orderflow.application.schemas import (
    CancelRequest,
    OrderListRead,
    OrderRead,
    OrderStatsRead,
    PoolStatusRead,
    PreloadedAccountsCreate,
    ReminderSentRead,
    SubscriptionRead,
)
from orderflow.application.service import OrderService
from orderflow.application.subscriptions import SubscriptionService
from orderflow.core_settings import Settings
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def get_fulfillment(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGatewayClient = Depends(get_gateway),
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(db, notifier, gateway)


@router.get("/orders", response_model=OrderListRead)
def list_orders(
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    customer_email: Optional[str] = None,
    customer_phone: Optional[str] = None,
    customer_name: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Literal["date", "amount", "status"] = "date",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    filters = OrderFilters(
        order_status=order_status, payment_status=payment_status, start=start, end=end,
        customer_email=customer_email, customer_phone=customer_phone, customer_name=customer_name,
        search=search, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit,
    )
    return OrderService(db).list_orders(filters)


@router.get("/orders/stats", response_model=OrderStatsRead)
def order_stats(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return OrderService(db, settings).stats()


@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)):
    with domain_errors():
        return OrderService(db).get(order_id)


@router.post("/orders/{order_id}/confirm", response_model=OrderRead)
def confirm_order(order_id: int, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    with domain_errors():
        return fulfillment.confirm(order_id)


@router.post("/orders/{order_id}/process", response_model=OrderRead)
def process_order(order_id: int, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    with domain_errors():
        return fulfillment.start_processing(order_id)


@router.post("/orders/{order_id}/complete", response_model=OrderRead)
def complete_order(order_id: int, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    with domain_errors():
        return fulfillment.complete(order_id)


@router.post("/orders/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: Optional[CancelRequest] = Body(default=None),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
    admin: CurrentUser = Depends(require_admin),
):
    reason = (payload.reason if payload else None) or f"Cancelled by {admin.user_id}"
    with domain_errors():
        return fulfillment.cancel_by_operator(order_id, reason)


@router.get("/products/{product_id}/preloaded-accounts", response_model=PoolStatusRead)
def pool_status(product_id: int, db: Session = Depends(get_db)):
    with domain_errors():
        return InventoryAllocator(db).pool_status(product_id)


@router.post("/products/{product_id}/preloaded-accounts", response_model=PoolStatusRead, status_code=201)
def add_preloaded_accounts(product_id: int, payload: PreloadedAccountsCreate, db: Session = Depends(get_db)):
    inventory = InventoryAllocator(db)
    with domain_errors():
        added = inventory.add_preloaded_accounts(product_id, payload.accounts)
        return dict(inventory.pool_status(product_id), added=added)


@router.get("/subscriptions", response_model=list[SubscriptionRead])
def search_subscriptions(
    q: Optional[str] = None,
    status: Optional[Literal["active", "expired", "notified", "pending"]] = None,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    with domain_errors():
        return SubscriptionService(db, notifier).search(q, status)


@router.post("/subscriptions/{subscription_id}/remind", response_model=ReminderSentRead)
def remind_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    with domain_errors():
        sent = SubscriptionService(db, notifier).send_reminder_now(subscription_id)
    return ReminderSentRead(subscription_id=subscription_id, sent=sent)
