"""
Durable order records and the conditional-transition primitive.

``apply_conditional_transition`` is the only code path that writes
``order_status`` or ``payment_status``. It issues a single
``UPDATE ... WHERE <expected prior state>`` so concurrent writers
(webhook, poll, scheduler, operator) are serialized by the database,
and the loser gets a ``TransitionConflict`` instead of a silent no-op.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from orderflow.domain.errors import InvalidTransition, OrderCodeAllocationError, OrderNotFound, TransitionConflict
from orderflow.domain.models import Order, OrderItem, utcnow
from orderflow.domain.states import (
    OrderStatus,
    PaymentStatus,
    PAYMENT_TIMESTAMPS,
    TRANSITION_TIMESTAMPS,
    can_transition_order,
    can_transition_payment,
)
from shared.core import get_logger

logger = get_logger(__name__)

ORDER_CODE_MIN = 100000
ORDER_CODE_MAX = 999999
MAX_ORDER_CODE_ATTEMPTS = 10


@dataclass
class OrderItemDraft:
    product_id: int
    name: str
    unit_price: int
    quantity: int
    currency: str = "VND"
    required_fields_data: Optional[list] = None

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


@dataclass
class OrderDraft:
    customer_name: str
    customer_email: str
    customer_phone: str
    items: List[OrderItemDraft]
    user_id: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return sum(item.subtotal for item in self.items)


@dataclass
class OrderFilters:
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    search: Optional[str] = None
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20


def _plain(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _is_collection(value: Any) -> bool:
    return isinstance(value, (set, frozenset, list, tuple))


class OrderStore:
    def __init__(self, db: Session):
        self.db = db

    # -- creation -----------------------------------------------------------

    def _draw_order_code(self) -> int:
        for attempt in range(1, MAX_ORDER_CODE_ATTEMPTS + 1):
            code = random.randint(ORDER_CODE_MIN, ORDER_CODE_MAX)
            taken = self.db.execute(select(Order.id).where(Order.order_code == code)).first()
            if taken is None:
                return code
            logger.warning(
                f"Order code {code} already taken, retrying ({attempt}/{MAX_ORDER_CODE_ATTEMPTS})"
            )
        raise OrderCodeAllocationError(
            f"Could not allocate a unique order code after {MAX_ORDER_CODE_ATTEMPTS} attempts"
        )

    def create(self, draft: OrderDraft, commit: bool = True) -> Order:
        """
        Insert a pending/pending order with a fresh six-digit code.

        With ``commit=False`` the caller owns the transaction and must
        handle an ``IntegrityError`` on commit (a concurrent insert took
        the same code) by retrying the whole unit of work.
        """
        order = Order(
            order_code=self._draw_order_code(),
            user_id=draft.user_id,
            customer_name_snapshot=draft.customer_name,
            customer_email_snapshot=draft.customer_email,
            customer_phone_snapshot=draft.customer_phone,
            note=draft.note,
            order_total=draft.total,
            order_status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        if draft.created_at is not None:
            order.created_at = draft.created_at
        for position, item in enumerate(draft.items):
            order.items.append(OrderItem(
                position=position,
                product_id=item.product_id,
                quantity=item.quantity,
                product_name_snapshot=item.name,
                unit_price=item.unit_price,
                currency=item.currency,
                required_fields_data=item.required_fields_data or None,
            ))
        self.db.add(order)
        if not commit:
            self.db.flush()
            return order
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        return order

    # -- reads --------------------------------------------------------------

    def load(self, order_id: int) -> Order:
        """Fresh copy of the order and its items, bypassing the identity map."""
        order = self.db.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def find_by_gateway_code(self, gateway_order_code: Any) -> Optional[Order]:
        try:
            code = int(gateway_order_code)
        except (TypeError, ValueError):
            return None
        return self.db.execute(
            select(Order).options(selectinload(Order.items)).where(Order.gateway_order_code == code)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_by_order_code(self, order_code: int) -> Optional[Order]:
        return self.db.execute(select(Order).where(Order.order_code == order_code)).scalar_one_or_none()

    def _current_state(self, order_id: int) -> Optional[dict]:
        row = self.db.execute(
            select(Order.order_status, Order.payment_status).where(Order.id == order_id)
        ).first()
        if row is None:
            return None
        return {"order_status": row.order_status, "payment_status": row.payment_status}

    # -- conditional writes -------------------------------------------------

    def _conditions(self, order_id: int, expected: Mapping[str, Any]) -> list:
        conditions = [Order.id == order_id]
        for name, allowed in expected.items():
            column = getattr(Order, name)
            if allowed is None:
                conditions.append(column.is_(None))
            elif _is_collection(allowed):
                conditions.append(column.in_([_plain(v) for v in allowed]))
            else:
                conditions.append(column == _plain(allowed))
        return conditions

    def _validate(self, expected: Mapping[str, Any], new: Mapping[str, Any]) -> None:
        checks = (
            ("order_status", OrderStatus, can_transition_order),
            ("payment_status", PaymentStatus, can_transition_payment),
        )
        for name, enum_type, allowed in checks:
            if name not in new:
                continue
            if name not in expected:
                raise ValueError(f"{name} can only change through an expected prior {name}")
            sources = expected[name] if _is_collection(expected[name]) else [expected[name]]
            target = enum_type(_plain(new[name]))
            for source in sources:
                if not allowed(enum_type(_plain(source)), target):
                    raise InvalidTransition(f"Illegal {name} transition {_plain(source)} -> {target.value}")

    def apply_conditional_transition(
        self,
        order_id: int,
        expected: Mapping[str, Any],
        new: Mapping[str, Any],
        extra_fields: Optional[Mapping[str, Any]] = None,
        commit: bool = True,
    ) -> Order:
        """
        Move an order to ``new`` only if it currently matches ``expected``.

        ``expected`` maps column names to a value or a collection of
        accepted values. Entering confirmed/processing/completed/cancelled
        or paid stamps the matching timestamp, never overwriting one that
        is already set.

        Raises ``OrderNotFound`` or ``TransitionConflict``; the latter
        means another writer got there first.
        """
        self._validate(expected, new)
        now = utcnow()
        values = dict(extra_fields or {})
        for name, target in new.items():
            values[name] = _plain(target)
        stamps = []
        if "order_status" in new:
            stamps.append(TRANSITION_TIMESTAMPS.get(OrderStatus(_plain(new["order_status"]))))
        if "payment_status" in new:
            stamps.append(PAYMENT_TIMESTAMPS.get(PaymentStatus(_plain(new["payment_status"]))))
        for stamp in filter(None, stamps):
            values[stamp] = func.coalesce(getattr(Order, stamp), now)
        values["updated_at"] = now

        result = self.db.execute(
            update(Order)
            .where(*self._conditions(order_id, expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            actual = self._current_state(order_id)
            if actual is None:
                raise OrderNotFound(order_id)
            raise TransitionConflict(order_id, {k: _plain(v) if not _is_collection(v) else sorted(_plain(x) for x in v)
                                                for k, v in expected.items()}, actual)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        logger.info(
            f"Order {order_id} transitioned",
            extra={'extra_fields': {'order_id': order_id, 'changes': {k: _plain(v) for k, v in new.items()}}}
        )
        return self.load(order_id)

    def claim_flag(self, order_id: int, flag: str, when: datetime,
                   expected: Optional[Mapping[str, Any]] = None, commit: bool = True) -> bool:
        """Set a NULL guard column if (and only if) nobody set it yet."""
        conditions = self._conditions(order_id, dict(expected or {}, **{flag: None}))
        result = self.db.execute(
            update(Order).where(*conditions).values(**{flag: when}).execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return result.rowcount == 1

    def release_flag(self, order_id: int, flag: str, claimed_at: datetime) -> None:
        """Undo a claim made by ``claim_flag`` so the next run retries."""
        column = getattr(Order, flag)
        self.db.execute(
            update(Order).where(Order.id == order_id, column == claimed_at)
            .values(**{flag: None}).execution_options(synchronize_session=False)
        )
        self.db.commit()

    def attach_payment_link(self, order_id: int, gateway_order_code: int, payment_link_id: Optional[str],
                            checkout_url: Optional[str], qr_code: Optional[str]) -> bool:
        """Store the gateway reference once; later calls leave it untouched."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.gateway_order_code.is_(None))
            .values(gateway_order_code=gateway_order_code, payment_link_id=payment_link_id,
                    checkout_url=checkout_url, qr_code=qr_code, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def record_gateway_status(self, order_id: int, gateway_status: Optional[str]) -> None:
        if not gateway_status:
            return
        self.db.execute(
            update(Order).where(Order.id == order_id)
            .values(gateway_status=str(gateway_status)[:30]).execution_options(synchronize_session=False)
        )
        self.db.commit()

    # -- queries ------------------------------------------------------------

    def find(self, *conditions, order_by=None, limit: Optional[int] = None) -> List[Order]:
        stmt = select(Order).where(*conditions)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt.execution_options(populate_existing=True)).scalars())

    def count(self, *conditions) -> int:
        return self.db.execute(select(func.count(Order.id)).where(*conditions)).scalar_one()

    def revenue(self, *conditions) -> int:
        return self.db.execute(
            select(func.coalesce(func.sum(Order.order_total), 0)).where(*conditions)
        ).scalar_one()

    def search(self, filters: OrderFilters) -> tuple[List[Order], int]:
        conditions = []
        if filters.order_status:
            conditions.append(Order.order_status == filters.order_status)
        if filters.payment_status:
            conditions.append(Order.payment_status == filters.payment_status)
        if filters.start:
            conditions.append(Order.created_at >= filters.start)
        if filters.end:
            conditions.append(Order.created_at <= filters.end)
        if filters.customer_email:
            conditions.append(Order.customer_email_snapshot.ilike(f"%{filters.customer_email}%"))
        if filters.customer_phone:
            conditions.append(Order.customer_phone_snapshot.ilike(f"%{filters.customer_phone}%"))
        if filters.customer_name:
            conditions.append(Order.customer_name_snapshot.ilike(f"%{filters.customer_name}%"))
        if filters.search:
            term = f"%{filters.search}%"
            alternatives = [
                Order.customer_name_snapshot.ilike(term),
                Order.customer_email_snapshot.ilike(term),
                Order.customer_phone_snapshot.ilike(term),
            ]
            if filters.search.strip().isdigit():
                number = int(filters.search.strip())
                alternatives.extend([Order.order_code == number, Order.id == number])
            conditions.append(or_(*alternatives))

        sort_columns = {"date": Order.created_at, "amount": Order.order_total, "status": Order.order_status}
        column = sort_columns.get(filters.sort_by, Order.created_at)
        ordering = column.asc() if filters.sort_order == "asc" else column.desc()

        total = self.count(*conditions)
        stmt = (
            select(Order).where(*conditions).order_by(ordering, Order.id.desc())
            .offset((filters.page - 1) * filters.limit).limit(filters.limit)
        )
        return list(self.db.execute(stmt).scalars()), total

