"""Point spending: mall redemptions."""

from __future__ import annotations
import logging
from datetime import datetime
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .db import atomic
from .errors import (
    AccountNotFound,
    ItemNotFound,
    OutOfStock,
    InsufficientBalance,
    StorageFailure,
)
from .ledger import write_entry
from .models import User, Product, Order, DEBIT, ACTIVE, utcnow

log = logging.getLogger("engage.spend")


def _load_spend_target(db: Session, user_id: int, product_id: int) -> tuple[Product, int]:
    """Pre-flight checks, in the order callers see them."""
    product = db.get(Product, product_id)
    if product is None or product.status != ACTIVE:
        raise ItemNotFound(f"Product {product_id} not found")
    if product.stock <= 0:
        raise OutOfStock(f"{product.name} is out of stock")
    balance = db.scalar(select(User.points).where(User.id == user_id))
    if balance is None:
        raise AccountNotFound(f"User {user_id} not found")
    if balance < product.price:
        raise InsufficientBalance(balance, product.price)
    return product, balance


def authorize_spend(
    db: Session, user_id: int, product_id: int, now: datetime | None = None
) -> Order:
    """Redeem one unit of ``product_id`` for ``user_id``.

    The pre-flight read can be stale by the time we write, so stock and
    balance are decremented by conditional UPDATEs that re-check them; if
    either matches no row the whole unit rolls back with the same error the
    pre-flight would have raised.
    """
    now = now or utcnow()
    product, _ = _load_spend_target(db, user_id, product_id)
    price, name = product.price, product.name

    try:
        with atomic(db):
            taken = db.execute(
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.status == ACTIVE,
                    Product.stock > 0,
                )
                .values(stock=Product.stock - 1)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                raise OutOfStock(f"{name} is out of stock")

            order = Order(
                user_id=user_id,
                product_id=product_id,
                points_spent=price,
                status="confirmed",
                created_at=now,
            )
            db.add(order)
            db.flush()
            write_entry(
                db, user_id, DEBIT, price, f"Redeem: {name}", "order", order.id, now
            )
    except (OutOfStock, InsufficientBalance) as exc:
        log.info("redemption of %s by user %s rejected: %s", product_id, user_id, exc)
        raise
    except SQLAlchemyError as exc:
        log.exception("redemption of %s by user %s could not be stored", product_id, user_id)
        raise StorageFailure(str(exc)) from exc

    log.info("user %s redeemed %s for %s points", user_id, product_id, price)
    return order


def list_orders(
    db: Session, user_id: int, page: int = 1, limit: int = 10
) -> tuple[list[Order], int]:
    where = Order.user_id == user_id
    orders = db.scalars(
        select(Order)
        .where(where)
        .options(selectinload(Order.product))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Order).where(where))
    return list(orders), total or 0
