"""Order creation critical section.

RECEIVED -> VALIDATED -> RESERVING -> RESERVED -> PERSISTED -> COMMITTED,
or ROLLED_BACK on any failure before commit. Confirmation e-mail runs
separately once the order is committed (see ``notifications``).
"""

from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .auth import AuthContext
from .db import transaction
from .errors import ConflictError, InsufficientStockError, NotFoundError, OrderIntakeError, UnexpectedError
from .inventory import aggregate_demand, reserve_inventory
from .logging_config import get_logger
from .metrics import ORDERS_CREATED, ORDERS_FAILED
from .persistence import persist_order
from .schemas import OrderIntent, OrderOut
from .validation import validate_order_request

log = get_logger(__name__)


class CreationState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    RESERVING = "RESERVING"
    RESERVED = "RESERVED"
    PERSISTED = "PERSISTED"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, InsufficientStockError):
        return "insufficient_stock"
    if isinstance(exc, NotFoundError):
        return "missing_product"
    if isinstance(exc, ConflictError):
        return "missing_user"
    return "unexpected"


class CreationAttempt:
    """State of one order-creation call. Never shared between requests."""

    def __init__(self):
        self.state = CreationState.RECEIVED
        self.history: list[CreationState] = []
        self.log = log

    def transition(self, state: CreationState, **kw: Any) -> None:
        self.state = state
        self.history.append(state)
        self.log.info("order.state", state=state.value, **kw)

    def bind(self, **kw: Any) -> None:
        """Attach fields to this attempt's later log lines only."""
        self.log = self.log.bind(**kw)


class OrderIntakeService:
    """
    Owns the transaction boundary for order creation. The session factory is
    the handle on the shared connection pool; each call checks out exactly
    one connection and releases it on every exit path.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def create_order(
        self,
        body: Any,
        auth: AuthContext,
        *,
        force_user_id: Any = None,
        enforce_same_user: bool = False,
        payment_type: Optional[str] = None,
        attempt: Optional[CreationAttempt] = None,
    ) -> OrderOut:
        attempt = attempt or CreationAttempt()
        attempt.transition(
            CreationState.RECEIVED,
            token_user_id=auth.user_id,
            is_admin=auth.is_admin,
            force_user_id=force_user_id,
            enforce_same_user=enforce_same_user,
        )
        try:
            intent = validate_order_request(
                body,
                auth,
                force_user_id=force_user_id,
                enforce_same_user=enforce_same_user,
                payment_type=payment_type,
            )
        except OrderIntakeError as exc:
            # no transaction was opened yet
            attempt.transition(CreationState.ROLLED_BACK, error=exc.message, details=exc.details)
            ORDERS_FAILED.labels(reason="validation").inc()
            raise
        attempt.transition(
            CreationState.VALIDATED,
            user_id=intent.user_id,
            lines=len(intent.lines),
            total=str(intent.total),
            payment_type=intent.payment_type.value,
        )
        return self.commit_intent(intent, attempt)

    def commit_intent(self, intent: OrderIntent, attempt: Optional[CreationAttempt] = None) -> OrderOut:
        attempt = attempt or CreationAttempt()
        demand = aggregate_demand(intent.lines)
        try:
            with transaction(self.session_factory) as session:
                attempt.transition(CreationState.RESERVING, demand=sorted(demand.items()))
                reserve_inventory(session, demand)
                attempt.transition(CreationState.RESERVED)

                order = persist_order(session, intent)
                attempt.bind(order_id=order.id)
                attempt.transition(CreationState.PERSISTED)
                result = OrderOut.from_order(order)
        except OrderIntakeError as exc:
            attempt.transition(CreationState.ROLLED_BACK, error=exc.message, details=exc.details)
            ORDERS_FAILED.labels(reason=_failure_reason(exc)).inc()
            raise
        except SQLAlchemyError as exc:
            # lock-wait timeouts and deadlocks land here too; not retried
            log.error("order.storage_error", exc_info=True)
            attempt.transition(CreationState.ROLLED_BACK, error=type(exc).__name__)
            ORDERS_FAILED.labels(reason="unexpected").inc()
            raise UnexpectedError("Error al crear la orden") from exc
        except Exception as exc:
            log.error("order.unexpected_error", exc_info=True)
            attempt.transition(CreationState.ROLLED_BACK, error=type(exc).__name__)
            ORDERS_FAILED.labels(reason="unexpected").inc()
            raise UnexpectedError("Error al crear la orden") from exc

        attempt.transition(CreationState.COMMITTED, user_id=result.user_id, total=str(result.total))
        ORDERS_CREATED.inc()
        return result
