"""
Stock counters and the preloaded-credential pool.

Every mutation is a single guarded UPDATE; the database, not the
application, decides who gets the last unit.
"""

from typing import List

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from orderflow.domain.errors import InsufficientStock, PoolExhausted, ProductNotFound, ValidationError
from orderflow.domain.models import PreloadedAccount, Product, utcnow
from shared.core import get_logger

logger = get_logger(__name__)


def _released(column, quantity: int):
    return case((column >= quantity, column - quantity), else_=0)


class InventoryAllocator:
    def __init__(self, db: Session):
        self.db = db

    def _finish(self, commit: bool) -> None:
        if commit:
            self.db.commit()
        else:
            self.db.flush()

    def get_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    def available(self, product_id: int) -> int:
        """Units not yet promised to an open order."""
        row = self.db.execute(
            select(Product.stock, Product.reserved).where(Product.id == product_id)
        ).first()
        if row is None:
            raise ProductNotFound(product_id)
        return max(row.stock - row.reserved, 0)

    def unused_count(self, product_id: int) -> int:
        return self.db.execute(
            select(func.count(PreloadedAccount.id))
            .where(PreloadedAccount.product_id == product_id, PreloadedAccount.used.is_(False))
        ).scalar_one()

    def reserve_stock(self, product_id: int, quantity: int, commit: bool = False) -> None:
        """
        Promise ``quantity`` units to a new order.

        Raises InsufficientStock (PoolExhausted for preloaded products)
        when fewer than ``quantity`` unpromised units remain.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        product = self.get_product(product_id)
        if not product.is_active:
            raise ProductNotFound(product_id)
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock - Product.reserved >= quantity)
            .values(reserved=Product.reserved + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            error = PoolExhausted if product.is_preloaded_account else InsufficientStock
            raise error(product_id, quantity, self.available(product_id), product.name)
        self._finish(commit)

    def release_reservation(self, product_id: int, quantity: int, commit: bool = False) -> None:
        self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(reserved=_released(Product.reserved, quantity))
            .execution_options(synchronize_session=False)
        )
        self._finish(commit)

    def deduct_stock(self, product_id: int, quantity: int, commit: bool = False) -> None:
        """Take ``quantity`` units out of stock for good, consuming the reservation."""
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, reserved=_released(Product.reserved, quantity))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            product = self.get_product(product_id)
            raise InsufficientStock(product_id, quantity, product.stock, product.name)
        self._finish(commit)

    def allocate_preloaded_account(self, product_id: int, order_id: int, commit: bool = True) -> str:
        """
        Hand out one unused credential, at most once across all callers.

        The row is claimed with ``UPDATE ... WHERE used = false``; losing
        a race just means trying the next unused row. Raises
        PoolExhausted once no unused row is left.
        """
        while True:
            candidate = self.db.execute(
                select(PreloadedAccount.id)
                .where(PreloadedAccount.product_id == product_id, PreloadedAccount.used.is_(False))
                .order_by(PreloadedAccount.id)
                .limit(1)
            ).scalar_one_or_none()
            if candidate is None:
                product = self.get_product(product_id)
                logger.error(
                    f"Preloaded pool exhausted for product {product_id}",
                    extra={'extra_fields': {'product_id': product_id, 'order_id': order_id}}
                )
                raise PoolExhausted(product_id, 1, 0, product.name)

            claimed = self.db.execute(
                update(PreloadedAccount)
                .where(PreloadedAccount.id == candidate, PreloadedAccount.used.is_(False))
                .values(used=True, used_at=utcnow(), used_for_order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                break
            logger.debug(f"Credential {candidate} taken concurrently, trying next")

        self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=case((Product.stock > 0, Product.stock - 1), else_=0),
                    reserved=_released(Product.reserved, 1))
            .execution_options(synchronize_session=False)
        )
        account = self.db.execute(
            select(PreloadedAccount.account).where(PreloadedAccount.id == candidate)
        ).scalar_one()
        self._finish(commit)
        logger.info(
            "Preloaded credential allocated",
            extra={'extra_fields': {'product_id': product_id, 'order_id': order_id, 'account_id': candidate}}
        )
        return account

    def add_preloaded_accounts(self, product_id: int, accounts: List[str]) -> int:
        cleaned = [a.strip() for a in accounts if a and a.strip()]
        if not cleaned:
            raise ValidationError("At least one non-empty credential is required")
        product = self.get_product(product_id)
        if not product.is_preloaded_account:
            raise ValidationError(f"Product {product_id} does not use preloaded credentials")
        self.db.add_all(PreloadedAccount(product_id=product_id, account=a) for a in cleaned)
        self.db.execute(
            update(Product).where(Product.id == product_id)
            .values(stock=Product.stock + len(cleaned))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Added {len(cleaned)} preloaded credentials to product {product_id}")
        return len(cleaned)

    def pool_status(self, product_id: int) -> dict:
        product = self.get_product(product_id)
        return {
            "product_id": product_id,
            "stock": product.stock,
            "reserved": product.reserved,
            "unused": self.unused_count(product_id) if product.is_preloaded_account else None,
        }

    def product_map(self, product_ids) -> dict:
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        rows = self.db.execute(
            select(Product).where(Product.id.in_(ids)).execution_options(populate_existing=True)
        ).scalars()
        return {p.id: p for p in rows}

