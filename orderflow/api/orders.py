from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from orderflow.api.deps import (
    CurrentUser,
    domain_errors,
    get_current_user,
    get_db,
    get_gateway,
    get_notifier,
    get_settings,
    require_user,
)
from orderflow.application.notifications import Notifier
from orderflow.application.schemas import OrderCreate, OrderRead
from orderflow.application.service import OrderService
from orderflow.core_settings import Settings
from orderflow.domain.models import Order
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient

router = APIRouter(prefix="/orders", tags=["orders"])


def ensure_can_view(order: Order, user: Optional[CurrentUser]) -> None:
    """Orders placed by a signed-in user are visible to that user and admins only."""
    if order.user_id is None:
        return
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not user.is_admin and user.user_id != order.user_id:
        raise HTTPException(status_code=403, detail="Not your order")


@router.post("", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_current_user),
):
    """Create a pending order and, when the gateway is configured, its payment link."""
    with domain_errors():
        return OrderService(db, settings, notifier, gateway).create(payload, user.user_id if user else None)


@router.get("", response_model=list[OrderRead])
def list_my_orders(db: Session = Depends(get_db), user: CurrentUser = Depends(require_user)):
    return OrderService(db).store.find(Order.user_id == user.user_id, order_by=Order.created_at.desc())


@router.get("/{order_id}", response_model=OrderRead)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    with domain_errors():
        order = OrderService(db).get(order_id)
    if user.is_admin or order.user_id == user.user_id:
        return order
    raise HTTPException(status_code=403, detail="Not your order")
