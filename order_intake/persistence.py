from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError
from .logging_config import get_logger
from .models import Order
from .schemas import OrderIntent

log = get_logger(__name__)

FOREIGN_KEY_VIOLATION = "23503"


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == FOREIGN_KEY_VIOLATION:
        return True
    return "FOREIGN KEY constraint failed" in str(orig)


def persist_order(session: Session, intent: OrderIntent) -> Order:
    """
    Insert the order row inside the caller's open transaction.
    The id and order_date are assigned by the database and loaded back.
    """
    order = Order(
        id_user=intent.user_id,
        customer_details=intent.customer_payload(),
        items=intent.items_payload(),
        total=intent.total,
        type_payment=intent.payment_type.value,
    )
    session.add(order)
    try:
        session.flush()
    except IntegrityError as exc:
        if is_foreign_key_violation(exc):
            log.warning("order.user_missing", user_id=intent.user_id)
            raise ConflictError("El usuario asociado no existe") from exc
        raise
    session.refresh(order)
    return order
