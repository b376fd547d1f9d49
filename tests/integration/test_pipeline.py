"""Tests for the order creation critical section end to end, below HTTP."""

from decimal import Decimal

import pytest
import structlog
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from order_intake import pipeline
from order_intake.auth import AuthContext
from order_intake.errors import ConflictError, InsufficientStockError, NotFoundError, UnexpectedError, ValidationError
from order_intake.models import Order
from order_intake.pipeline import CreationAttempt, CreationState, OrderIntakeService

USER = AuthContext(user_id=1)
ADMIN = AuthContext(is_admin=True)


@pytest.fixture()
def order_count(session_factory):
    def _count():
        with session_factory() as s:
            return s.execute(select(func.count()).select_from(Order)).scalar_one()

    return _count


@pytest.mark.usefixtures("catalog")
class TestSuccessfulOrder:
    def test_scenario_single_line(self, service, make_body, stock_of, order_count):
        order = service.create_order(make_body(items=[{"productId": 5, "quantity": 2}]), USER)

        assert order.id > 0
        assert order.user_id == 1
        assert order.order_date is not None
        assert order.payment_type == "card"
        assert order.total == Decimal("70.00")
        assert stock_of(5) == 8
        assert order_count() == 1

    def test_duplicate_lines_decrement_summed_quantity(self, service, make_body, stock_of):
        items = [{"productId": 5, "quantity": 2}, {"productId": 3, "qty": 1}, {"product_id": 5, "cantidad": 3}]
        service.create_order(make_body(items=items), USER)

        assert stock_of(5) == 5
        assert stock_of(3) == 3
        assert stock_of(9) == 6

    def test_stored_items_mirror_request_lines(self, service, make_body, session_factory):
        items = [{"product_id": 9, "qty": 1, "title": "Zapatillas", "price": 199.9}, {"productId": 5, "quantity": 1}]
        order = service.create_order(make_body(items=items), USER)

        with session_factory() as s:
            stored = s.get(Order, order.id)
            assert [item["productId"] for item in stored.items] == [9, 5]
            assert stored.items[0]["title"] == "Zapatillas"
            assert stored.items[0]["quantity"] == 1
            assert stored.customer_details["paymentMethod"] == "card"
            assert stored.type_payment == "card"

    def test_declared_total_persisted_as_given(self, service, make_body):
        order = service.create_order(make_body(total="1.00"), USER)
        assert order.total == Decimal("1.00")

    def test_unknown_payment_type_keeps_raw_value(self, service, make_body, session_factory):
        order = service.create_order(make_body(type_payment="Visa"), USER)

        assert order.payment_type == "other"
        with session_factory() as s:
            stored = s.get(Order, order.id)
            assert stored.type_payment == "other"
            assert stored.customer_details["paymentMethod"] == "Visa"

    def test_order_id_not_left_in_shared_log_context(self, service, make_body):
        structlog.contextvars.clear_contextvars()
        service.create_order(make_body(), USER)
        assert "order_id" not in structlog.contextvars.get_contextvars()

    def test_admin_orders_for_another_user(self, service, make_body):
        order = service.create_order(make_body(userId=2), ADMIN)
        assert order.user_id == 2

    def test_state_history(self, service, make_body):
        attempt = CreationAttempt()
        service.create_order(make_body(), USER, attempt=attempt)
        assert attempt.history == [
            CreationState.RECEIVED,
            CreationState.VALIDATED,
            CreationState.RESERVING,
            CreationState.RESERVED,
            CreationState.PERSISTED,
            CreationState.COMMITTED,
        ]

    def test_connection_released(self, service, make_body, engine):
        service.create_order(make_body(), USER)
        assert engine.pool.checkedout() == 0


@pytest.mark.usefixtures("catalog")
class TestFailedOrder:
    def test_scenario_unknown_product(self, service, make_body, stock_of, order_count):
        items = [{"productId": 5, "quantity": 1}, {"productId": 99, "quantity": 1}]
        with pytest.raises(NotFoundError) as exc_info:
            service.create_order(make_body(items=items), USER)

        assert exc_info.value.message == "Producto 99 no existe"
        assert stock_of(5) == 10
        assert order_count() == 0

    def test_scenario_insufficient_stock(self, service, make_body, stock_of, order_count):
        with pytest.raises(InsufficientStockError):
            service.create_order(make_body(items=[{"productId": 7, "quantity": 3}]), USER)

        assert stock_of(7) == 1
        assert order_count() == 0

    def test_shortfall_leaves_every_product_untouched(self, service, make_body, stock_of):
        items = [{"productId": 3, "quantity": 1}, {"productId": 5, "quantity": 4}, {"productId": 9, "quantity": 7}]
        with pytest.raises(InsufficientStockError) as exc_info:
            service.create_order(make_body(items=items), USER)

        assert exc_info.value.product_id == 9
        assert [stock_of(pid) for pid in (3, 5, 9)] == [4, 10, 6]

    def test_aggregated_demand_checked_not_single_lines(self, service, make_body, stock_of):
        items = [{"productId": 3, "quantity": 3}, {"productId": 3, "quantity": 2}]
        with pytest.raises(InsufficientStockError) as exc_info:
            service.create_order(make_body(items=items), USER)

        assert exc_info.value.requested == 5
        assert exc_info.value.available == 4
        assert stock_of(3) == 4

    def test_missing_owner_is_conflict(self, service, make_body, stock_of, order_count):
        with pytest.raises(ConflictError) as exc_info:
            service.create_order(make_body(userId=77), ADMIN)

        assert exc_info.value.message == "El usuario asociado no existe"
        assert not isinstance(exc_info.value, InsufficientStockError)
        assert stock_of(5) == 10
        assert order_count() == 0

    def test_scenario_empty_items_never_opens_transaction(self, session_factory, make_body):
        opened = []

        def factory():
            opened.append(True)
            return session_factory()

        with pytest.raises(ValidationError):
            OrderIntakeService(factory).create_order(make_body(items=[]), USER)
        assert opened == []

    def test_rolled_back_state(self, service, make_body):
        attempt = CreationAttempt()
        with pytest.raises(InsufficientStockError):
            service.create_order(make_body(items=[{"productId": 7, "quantity": 3}]), USER, attempt=attempt)

        assert attempt.state is CreationState.ROLLED_BACK
        assert CreationState.RESERVING in attempt.history
        assert CreationState.COMMITTED not in attempt.history

    def test_validation_failure_is_rolled_back_state(self, service, make_body):
        attempt = CreationAttempt()
        with pytest.raises(ValidationError):
            service.create_order(make_body(total=-5), USER, attempt=attempt)
        assert attempt.history == [CreationState.RECEIVED, CreationState.ROLLED_BACK]

    def test_connection_released_on_failure(self, service, make_body, engine):
        with pytest.raises(NotFoundError):
            service.create_order(make_body(items=[{"productId": 99, "quantity": 1}]), USER)
        assert engine.pool.checkedout() == 0

    def test_storage_failure_becomes_unexpected_error(self, make_body, engine, session_factory, stock_of):
        from sqlalchemy import event
        from sqlalchemy.exc import OperationalError

        @event.listens_for(engine, "before_cursor_execute")
        def fail_on_insert(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("INSERT INTO \"ORDER\""):
                raise OperationalError(statement, parameters, Exception("lock timeout"))

        try:
            with pytest.raises(UnexpectedError) as exc_info:
                OrderIntakeService(session_factory).create_order(make_body(), USER)
        finally:
            event.remove(engine, "before_cursor_execute", fail_on_insert)

        assert exc_info.value.message == "Error al crear la orden"
        assert stock_of(5) == 10


    def test_product_id_beyond_key_range_is_not_found(self, service, make_body, stock_of, order_count):
        attempt = CreationAttempt()
        items = [{"productId": 5, "quantity": 1}, {"productId": 2**70, "quantity": 1}]
        with pytest.raises(NotFoundError) as exc_info:
            service.create_order(make_body(items=items), USER, attempt=attempt)

        assert exc_info.value.message == f"Producto {2**70} no existe"
        assert attempt.state is CreationState.ROLLED_BACK
        assert stock_of(5) == 10
        assert order_count() == 0

    def test_non_storage_failure_is_rolled_back_and_counted(self, service, make_body, stock_of, monkeypatch):
        def broken_persist(session, intent):
            raise RuntimeError("serializer bug")

        monkeypatch.setattr(pipeline, "persist_order", broken_persist)
        labels = {"reason": "unexpected"}
        before = REGISTRY.get_sample_value("order_create_failures_total", labels) or 0
        attempt = CreationAttempt()

        with pytest.raises(UnexpectedError) as exc_info:
            service.create_order(make_body(), USER, attempt=attempt)

        assert exc_info.value.message == "Error al crear la orden"
        assert attempt.state is CreationState.ROLLED_BACK
        assert CreationState.RESERVED in attempt.history
        assert REGISTRY.get_sample_value("order_create_failures_total", labels) == before + 1
        assert stock_of(5) == 10


@pytest.mark.usefixtures("catalog")
class TestReplay:
    def test_replay_after_replenish_matches_single_run(self, service, make_body, stock_of, set_stock):
        body = make_body(items=[{"productId": 7, "quantity": 3}])
        with pytest.raises(InsufficientStockError):
            service.create_order(body, USER)

        set_stock(7, 5)
        service.create_order(body, USER)
        assert stock_of(7) == 2
