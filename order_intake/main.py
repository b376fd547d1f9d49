import os
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional, Type

from fastapi import APIRouter, BackgroundTasks, Body, Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .auth import AuthContext, get_auth_context
from .db import SessionLocal, engine, init_db
from .errors import (
    AuthError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    OrderIntakeError,
    UnexpectedError,
    ValidationError,
)
from .logging_config import bind_correlation_id, configure_logging, get_logger
from .metrics import LAT, REQS
from .models import MAX_ROW_ID, Order
from .notifications import NotificationDispatcher
from .pipeline import OrderIntakeService
from .schemas import ErrorOut, OrderOut
from .validation import parse_positive_int

APP_NAME = "order-intake"

# Optional prefix for routes. Leave empty ("") if your Gateway strips it.
API_PREFIX = os.getenv("API_PREFIX", "").strip()
if API_PREFIX and not API_PREFIX.startswith("/"):
    API_PREFIX = "/" + API_PREFIX
API_PREFIX = API_PREFIX.rstrip("/")

configure_logging()
log = get_logger(__name__)

app = FastAPI(title=APP_NAME)
router = APIRouter(prefix=API_PREFIX)

# Error type -> HTTP status. Most specific class wins (walks the MRO).
ERROR_STATUS: Dict[Type[OrderIntakeError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthError: status.HTTP_401_UNAUTHORIZED,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    UnexpectedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    code: {"model": ErrorOut} for code in (400, 401, 403, 404, 409, 500)
}


def status_for(exc: OrderIntakeError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ---- Startup: ensure schema + tables exist (idempotent) ----
@app.on_event("startup")
def on_startup():
    init_db(engine)


# ---- Metrics + correlation id ----
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-Id") or uuid.uuid4().hex
    bind_correlation_id(correlation_id)
    start = time.time()
    response = await call_next(request)
    response.headers["X-Correlation-Id"] = correlation_id
    REQS.labels(APP_NAME, request.url.path, request.method, response.status_code).inc()
    LAT.labels(APP_NAME, request.url.path, request.method).observe(time.time() - start)
    return response


# ---- Error mapping ----
@app.exception_handler(OrderIntakeError)
async def order_intake_error_handler(request: Request, exc: OrderIntakeError):
    code = status_for(exc)
    if code >= 500:
        return JSONResponse(status_code=code, content={"message": exc.message})
    return JSONResponse(status_code=code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    log.warning("request.malformed", errors=exc.errors())
    return JSONResponse(status_code=400, content={"message": "Solicitud invalida"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.error("request.unexpected_error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Error interno del servidor"})


# ---- Dependencies ----
_dispatcher: Optional[NotificationDispatcher] = None


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_session(factory: sessionmaker[Session] = Depends(get_session_factory)) -> Iterator[Session]:
    s = factory()
    try:
        yield s
    finally:
        s.close()


def get_service(factory: sessionmaker[Session] = Depends(get_session_factory)) -> OrderIntakeService:
    return OrderIntakeService(factory)


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def require_user(auth: AuthContext = Depends(get_auth_context)) -> int:
    if not auth.user_id:
        raise AuthError("Token de usuario requerido")
    return auth.user_id


@app.get("/health", response_class=PlainTextResponse)
def health():
    return "ok"


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------- Endpoints ----------
@router.post("/api/orders", response_model=OrderOut, status_code=201, responses=ERROR_RESPONSES)
def create_order(
    background_tasks: BackgroundTasks,
    payload: Any = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    service: OrderIntakeService = Depends(get_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    order = service.create_order(payload, auth)
    # runs after the response is sent; its outcome never changes it
    background_tasks.add_task(dispatcher.dispatch, order)
    return order


@router.post("/api/orders/me", response_model=OrderOut, status_code=201, responses=ERROR_RESPONSES)
def create_my_order(
    background_tasks: BackgroundTasks,
    payload: Any = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    service: OrderIntakeService = Depends(get_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    order = service.create_order(payload, auth, force_user_id=auth.user_id, enforce_same_user=True)
    background_tasks.add_task(dispatcher.dispatch, order)
    return order


@router.get("/api/orders/me", response_model=List[OrderOut], responses=ERROR_RESPONSES)
def list_my_orders(user_id: int = Depends(require_user), session: Session = Depends(get_session)):
    orders = session.execute(
        select(Order).where(Order.id_user == user_id).order_by(Order.order_date.desc(), Order.id.desc())
    ).scalars().all()
    log.info("orders.listed", user_id=user_id, count=len(orders))
    return [OrderOut.from_order(o) for o in orders]


@router.get("/api/orders/{order_id}", response_model=OrderOut, responses=ERROR_RESPONSES)
def get_order(
    order_id: str,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_session),
):
    parsed_id = parse_positive_int(order_id, MAX_ROW_ID)
    if parsed_id is None:
        raise ValidationError("ID de orden invalido")
    if not auth.is_admin and not auth.user_id:
        raise AuthError("Token de usuario requerido")

    stmt = select(Order).where(Order.id == parsed_id)
    if not auth.is_admin:
        stmt = stmt.where(Order.id_user == auth.user_id)
    order = session.execute(stmt).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Orden no encontrada")
    return OrderOut.from_order(order)


app.include_router(router)
