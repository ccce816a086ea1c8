from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional

from fastapi import Depends, Header, HTTPException

from orderflow.application.notifications import Notifier
from orderflow.core_settings import Settings, get_settings
from orderflow.domain.errors import (
    InvalidTransition,
    OrderflowError,
    OrderNotFound,
    PaymentGatewayError,
    ProductNotFound,
    SubscriptionNotFound,
    ValidationError,
)
from orderflow.infrastructure.auth import ADMIN_ROLE, decode_access_token
from orderflow.infrastructure.db import get_db
from orderflow.infrastructure.mailer import NotificationSink, SmtpNotificationSink
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient
from shared.core import get_logger, set_request_context

logger = get_logger(__name__)

__all__ = ["get_db", "get_settings", "get_gateway", "get_notifier", "get_current_user", "require_user",
           "require_admin", "domain_errors", "CurrentUser"]


@lru_cache
def _default_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient(get_settings())


@lru_cache
def _default_sink() -> NotificationSink:
    return SmtpNotificationSink(get_settings())


def get_gateway() -> PaymentGatewayClient:
    return _default_gateway()


def get_notification_sink() -> NotificationSink:
    return _default_sink()


def get_notifier(sink: NotificationSink = Depends(get_notification_sink),
                 settings: Settings = Depends(get_settings)) -> Notifier:
    return Notifier(sink, settings)


class CurrentUser:
    def __init__(self, user_id: str, role: str):
        self.user_id = user_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_user(authorization: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    """Bearer token if present; anonymous callers get None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    set_request_context(user_id=str(claims["sub"]))
    return CurrentUser(str(claims["sub"]), claims.get("role", "user"))


def require_user(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_admin(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


@contextmanager
def domain_errors() -> Iterator[None]:
    """Translate domain exceptions raised inside a route into HTTP errors."""
    try:
        yield
    except (OrderNotFound, ProductNotFound, SubscriptionNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValidationError, InvalidTransition) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentGatewayError as e:
        logger.error(f"Payment gateway error: {e}")
        raise HTTPException(status_code=502, detail="Payment gateway unavailable")
    except OrderflowError as e:
        logger.error(f"Unhandled domain error: {e}")
        raise HTTPException(status_code=500, detail="Internal error")