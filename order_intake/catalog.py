"""Catalog access used by inventory reservation.

Only ``id``, ``name`` and ``stock`` of a product are read or written here.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Product


def lock_product_for_update(session: Session, product_id: int) -> Optional[Product]:
    """
    SELECT ... FOR UPDATE on one product row. Blocks while another
    transaction holds the lock; the lock is held until this session's
    transaction ends. Returns None when the product does not exist.
    """
    stmt = select(Product).where(Product.id == product_id).with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def write_stock(session: Session, product: Product, new_stock: int) -> None:
    if new_stock < 0:
        raise ValueError(f"stock for product {product.id} cannot go negative")
    product.stock = new_stock
    session.flush()
