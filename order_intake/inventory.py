"""Stock reservation for one order.

Locks are always taken in ascending product id. Two orders touching
overlapping products therefore acquire the shared rows in the same order and
cannot wait on each other in a cycle. Any code that locks product rows must
go through ``reserve_inventory``.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from .catalog import lock_product_for_update, write_stock
from .errors import InsufficientStockError, NotFoundError
from .logging_config import get_logger
from .schemas import OrderLine

log = get_logger(__name__)


@dataclass(frozen=True)
class ReservationEntry:
    product_id: int
    quantity: int
    remaining: int


def aggregate_demand(lines: Iterable[OrderLine]) -> Dict[int, int]:
    """Sum requested quantities per product id."""
    demand: Dict[int, int] = {}
    for line in lines:
        demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity
    return demand


def reserve_inventory(session: Session, demand: Dict[int, int]) -> List[ReservationEntry]:
    """
    Lock and decrement stock for every product in ``demand`` inside the
    caller's open transaction. Raises on the first missing product or
    shortfall; the caller must then roll back, which undoes any decrement
    already written.
    """
    entries: List[ReservationEntry] = []
    for product_id in sorted(demand):
        requested = demand[product_id]
        product = lock_product_for_update(session, product_id)
        if product is None:
            log.warning("inventory.product_missing", product_id=product_id)
            raise NotFoundError(f"Producto {product_id} no existe", details={"productId": product_id})

        if product.stock < requested:
            log.warning(
                "inventory.insufficient_stock",
                product_id=product_id,
                requested=requested,
                available=product.stock,
            )
            raise InsufficientStockError(product_id, requested, product.stock, product.name)

        write_stock(session, product, product.stock - requested)
        entries.append(ReservationEntry(product_id, requested, product.stock))

    log.info("inventory.reserved", products=[(e.product_id, e.quantity) for e in entries])
    return entries
