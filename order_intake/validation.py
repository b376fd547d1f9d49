"""Turn a raw purchase request into a canonical ``OrderIntent``.

Callers send the same field under several names. Every accepted spelling is
listed in ``FIELD_ALIASES``; the first alias holding a non-null value wins.
Nothing here touches storage.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .auth import AuthContext
from .errors import AuthError, AuthorizationError, NotFoundError, ValidationError
from .logging_config import get_logger
from .models import MAX_ROW_ID, MAX_TOTAL
from .schemas import OrderIntent, OrderLine, PaymentType

log = get_logger(__name__)

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    # request body
    "user_id": ("userId", "id_user"),
    "customer_details": ("customer_details", "customer"),
    "payment_type": ("paymentType", "type_payment"),
    # order lines
    "quantity": ("quantity", "qty", "cantidad"),
    "product_id": ("productId", "product_id", "id", "product"),
    "unit_price": ("unitPrice", "unit_price", "price"),
    "title": ("title", "name"),
}


def pick(source: Mapping[str, Any], field: str) -> Any:
    for alias in FIELD_ALIASES[field]:
        value = source.get(alias)
        if value is not None:
            return value
    return None


def parse_positive_int(value: Any, maximum: Optional[int] = None) -> Optional[int]:
    """Positive integer from an int or a numeric string; None otherwise,
    including values above ``maximum``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    if number <= 0 or (maximum is not None and number > maximum):
        return None
    return number


def parse_total(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        total = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not total.is_finite() or total < 0:
        return None
    return total


def resolve_owner(
    body: Mapping[str, Any],
    auth: AuthContext,
    force_user_id: Any = None,
    enforce_same_user: bool = False,
) -> int:
    token_user_id = auth.user_id
    forced_user_id = parse_positive_int(force_user_id, MAX_ROW_ID)

    if enforce_same_user and not token_user_id:
        log.warning("order.validation.user_token_required")
        raise AuthError("Token de usuario requerido para crear ordenes")

    if not auth.is_admin and not token_user_id and not forced_user_id:
        log.warning("order.validation.no_credentials")
        raise AuthError("Token de usuario requerido para crear ordenes")

    owner = forced_user_id or parse_positive_int(pick(body, "user_id"), MAX_ROW_ID) or token_user_id
    if not owner:
        log.warning("order.validation.owner_missing", body_user_id=pick(body, "user_id"))
        raise ValidationError("id_user es requerido")

    if (enforce_same_user or not auth.is_admin) and token_user_id and owner != token_user_id:
        log.warning("order.validation.cross_user", token_user_id=token_user_id, target_user_id=owner)
        raise AuthorizationError("No puedes crear ordenes para otros usuarios")

    return owner


def normalize_line(item: Any, index: int) -> OrderLine:
    """``index`` is 1-based and is what error details report."""
    if not isinstance(item, Mapping):
        raise ValidationError(f"quantity invalido en item {index}", details={"index": index})

    quantity = parse_positive_int(pick(item, "quantity"))
    if quantity is None:
        log.warning("order.validation.bad_quantity", index=index)
        raise ValidationError(f"quantity invalido en item {index}", details={"index": index})

    product_id = parse_positive_int(pick(item, "product_id"))
    if product_id is None:
        log.warning("order.validation.missing_product_id", index=index)
        raise ValidationError(f"productId es requerido en item {index}", details={"index": index})
    if product_id > MAX_ROW_ID:
        # no stored product can carry this id
        log.warning("order.validation.product_id_out_of_range", index=index, product_id=product_id)
        raise NotFoundError(f"Producto {product_id} no existe", details={"productId": product_id})

    title = pick(item, "title")
    return OrderLine(
        product_id=product_id,
        quantity=quantity,
        unit_price=parse_total(pick(item, "unit_price")),
        title=str(title) if title is not None else None,
        raw=dict(item),
    )


def validate_order_request(
    body: Any,
    auth: AuthContext,
    *,
    force_user_id: Any = None,
    enforce_same_user: bool = False,
    payment_type: Any = None,
) -> OrderIntent:
    """
    Validate a purchase request. Checks run in a fixed order and the first
    failure is raised: credentials, owning user, customer details, items,
    total, payment type, then each line.
    """
    if not isinstance(body, Mapping):
        raise ValidationError("El cuerpo de la solicitud debe ser un objeto JSON")

    owner = resolve_owner(body, auth, force_user_id, enforce_same_user)

    customer = pick(body, "customer_details")
    if not isinstance(customer, Mapping) or not customer.get("name") or not customer.get("email"):
        log.warning("order.validation.customer_incomplete")
        raise ValidationError("Datos del cliente incompletos")

    items = body.get("items")
    if not isinstance(items, list) or not items:
        log.warning("order.validation.no_items")
        raise ValidationError("La orden debe incluir productos")

    total = parse_total(body.get("total"))
    if total is None:
        log.warning("order.validation.bad_total", total=body.get("total"))
        raise ValidationError("El total debe ser un numero positivo")
    if total > MAX_TOTAL:
        log.warning("order.validation.total_too_large", total=str(total))
        raise ValidationError("El total excede el maximo permitido")

    raw_payment = payment_type or pick(body, "payment_type") or customer.get("paymentMethod")
    if not raw_payment:
        log.warning("order.validation.payment_type_missing")
        raise ValidationError("type_payment es requerido")

    lines = [normalize_line(item, index) for index, item in enumerate(items, start=1)]

    return OrderIntent(
        user_id=owner,
        customer_details=dict(customer),
        lines=lines,
        total=total,
        payment_type=PaymentType.parse(raw_payment),
        payment_method=str(raw_payment).strip(),
    )
