from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Integer, BigInteger, Boolean, DateTime, Text, JSON
from datetime import datetime, timezone
from typing import Optional

from .states import OrderStatus, PaymentStatus


def utcnow() -> datetime:
    """Naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(10), default="VND")
    # Free text such as "1 tháng", "3 months", "1 năm"
    billing_cycle: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    # Units promised to open orders; never exceeds stock
    reserved: Mapped[int] = mapped_column(Integer, default=0)
    is_preloaded_account: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_instructions: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    preloaded_accounts: Mapped[list["PreloadedAccount"]] = relationship(
        "PreloadedAccount", back_populates="product", cascade="all, delete-orphan", order_by="PreloadedAccount.id"
    )


class PreloadedAccount(Base):
    __tablename__ = "preloaded_accounts"
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    # "username:password" or any opaque credential string
    account: Mapped[str] = mapped_column(String(500))
    used: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    used_for_order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    product: Mapped[Product] = relationship("Product", back_populates="preloaded_accounts")


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    # Six-digit human-facing code
    order_code: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # Customer snapshot data (captured at order creation time)
    customer_name_snapshot: Mapped[str] = mapped_column(String(200))
    customer_email_snapshot: Mapped[str] = mapped_column(String(255))
    customer_phone_snapshot: Mapped[str] = mapped_column(String(50))
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_total: Mapped[int] = mapped_column(BigInteger)
    order_status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)
    # Payment gateway reference, written once when the link is opened
    gateway_order_code: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True, nullable=True, index=True)
    payment_link_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gateway_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    # Idempotency guards
    payment_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscriptions_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    # Product snapshot data (captured at order creation time)
    product_name_snapshot: Mapped[str] = mapped_column(String(200))
    unit_price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(10), default="VND")
    # Buyer-supplied extras, e.g. [{"label": "Canva email", "value": "a@b.c"}]
    required_fields_data: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    # Set at most once, at fulfillment
    delivered_account: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="items")

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


class Subscription(Base):
    __tablename__ = "subscriptions"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    order_item_id: Mapped[Optional[int]] = mapped_column(ForeignKey("order_items.id"), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255), index=True)
    service_name: Mapped[str] = mapped_column(String(200))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime, index=True)
    pre_expiry_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
