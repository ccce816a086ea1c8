from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Any, Optional


class RequiredFieldValue(BaseModel):
    label: str
    value: str


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    # Buyer-supplied extras the product asks for (e.g. an account email)
    required_fields_data: Optional[list[RequiredFieldValue]] = None


class CustomerInfo(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=255)
    phone: str = Field(min_length=1, max_length=50)

    @field_validator("name", "email", "phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("email")
    @classmethod
    def looks_like_email(cls, v: str) -> str:
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email address")
        return v


class OrderCreate(BaseModel):
    customer: CustomerInfo
    items: list[OrderItemCreate] = Field(min_length=1)
    # Optional client-side total; rejected if it disagrees with current prices
    total_amount: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=2000)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    product_name_snapshot: str
    unit_price: int
    currency: str
    subtotal: int
    required_fields_data: Optional[list[dict[str, Any]]] = None
    delivered_account: Optional[str] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_code: int
    user_id: Optional[str] = None
    customer_name_snapshot: str
    customer_email_snapshot: str
    customer_phone_snapshot: str
    note: Optional[str] = None
    order_total: int
    order_status: str
    payment_status: str
    gateway_order_code: Optional[int] = None
    checkout_url: Optional[str] = None
    qr_code: Optional[str] = None
    gateway_status: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    items: list[OrderItemRead]


class PaymentInfoRead(BaseModel):
    order: OrderRead
    # Raw gateway view; None when the gateway could not be reached
    payment_info: Optional[dict[str, Any]] = None


class OrderStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_code: int
    order_status: str
    payment_status: str
    order_total: int
    created_at: datetime


class WebhookAck(BaseModel):
    success: bool = True
    message: str


class OrderListRead(BaseModel):
    orders: list[OrderRead]
    total: int
    page: int
    limit: int
    total_pages: int


class OrderStatsRead(BaseModel):
    today_orders: int
    pending_confirmation: int
    processing: int
    today_revenue: int
    month_revenue: int


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PreloadedAccountsCreate(BaseModel):
    accounts: list[str] = Field(min_length=1)


class PoolStatusRead(BaseModel):
    product_id: int
    stock: int
    reserved: int
    unused: Optional[int] = None
    added: Optional[int] = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[int] = None
    order_item_id: Optional[int] = None
    customer_email: str
    service_name: str
    contact_phone: Optional[str] = None
    start_date: datetime
    end_date: datetime
    pre_expiry_notified: bool


class ReminderSentRead(BaseModel):
    subscription_id: int
    sent: bool
