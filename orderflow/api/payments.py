import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from orderflow.api.deps import (
    CurrentUser,
    domain_errors,
    get_current_user,
    get_db,
    get_gateway,
    get_notifier,
    get_settings,
)
from orderflow.api.orders import ensure_can_view
from orderflow.application.notifications import Notifier
from orderflow.application.reconciliation import ReconciliationEngine
from orderflow.application.schemas import OrderRead, OrderStatusRead, PaymentInfoRead, WebhookAck
from orderflow.application.service import OrderService
from orderflow.core_settings import Settings
from orderflow.domain.errors import OrderNotFound, SignatureMismatch
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient
from shared.core import get_logger

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhook", response_model=WebhookAck)
def payment_webhook(
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGatewayClient = Depends(get_gateway),
):
    """
    Gateway push notification.

    Always answers 200: a rejected or failed delivery is logged, and the
    gateway must not keep retrying it.
    """
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return WebhookAck(success=False, message="Webhook received but payload was invalid")
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object")
        return WebhookAck(success=False, message="Webhook received but payload was invalid")

    try:
        result = ReconciliationEngine(db, gateway, notifier).handle_webhook(payload)
    except SignatureMismatch:
        data = payload.get("data")
        logger.warning("Webhook rejected: invalid signature",
                       extra={'extra_fields': {'order_code': data.get("orderCode") if isinstance(data, dict) else None}})
        return WebhookAck(success=False, message="Webhook received but signature was invalid")
    except OrderNotFound as e:
        logger.warning(f"Webhook for unknown order: {e}")
        return WebhookAck(success=False, message="Webhook received but order was not found")
    except Exception as e:
        db.rollback()
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return WebhookAck(success=False, message="Webhook received but processing failed")

    logger.info(
        "Webhook processed",
        extra={'extra_fields': {'order_id': result.order_id, 'outcome': result.outcome.value,
                                'applied': result.applied, 'auto_completed': result.auto_completed}}
    )
    return WebhookAck(message="Webhook processed")


@router.get("/config")
def payment_config(gateway: PaymentGatewayClient = Depends(get_gateway)):
    """Which gateway credentials are set; never the values themselves."""
    return gateway.config_status()


@router.get("/orders/by-code/{code}", response_model=OrderStatusRead)
def order_by_gateway_code(code: str, db: Session = Depends(get_db)):
    if not code.isdigit():
        raise HTTPException(status_code=400, detail="Order code must be numeric")
    with domain_errors():
        return OrderService(db).get_by_gateway_code(int(code))


@router.get("/{order_id}/info", response_model=PaymentInfoRead)
def payment_info(
    order_id: int,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_current_user),
):
    """Current order state, refreshed from the gateway when it answers."""
    with domain_errors():
        order = OrderService(db).get(order_id)
        ensure_can_view(order, user)
        order, info = ReconciliationEngine(db, gateway, notifier).refresh_payment_info(order)
    return PaymentInfoRead(order=OrderRead.model_validate(order), payment_info=info)


@router.post("/{order_id}/link", response_model=OrderRead)
def create_payment_link(
    order_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_current_user),
):
    service = OrderService(db, settings, gateway=gateway)
    with domain_errors():
        ensure_can_view(service.get(order_id), user)
        return service.open_payment_link(order_id)
