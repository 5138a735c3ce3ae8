"""Order engine: cart parsing, pricing and the transactional write path.

The ``order_items`` table exists in two shapes. Variant ``item`` references
``product_items`` and prices lines with the item price; variant ``product``
references ``products`` and uses the product's base price. Which one is live
is probed once per process and every read and write goes through the
matching ``LineSchema``.
"""
import logging
import threading
from datetime import datetime, time, timedelta
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy import Table, and_, func, inspect, insert, or_, select
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .auth import Principal
from .db import run_in_transaction
from .errors import Forbidden, InvalidProduct, InvalidRequest, NotFound
from .relay import NotificationRelay
from .utils import round_amount

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
# bounds of order_items.quantity (Integer) and orders.total (Numeric(10, 2))
MAX_QUANTITY = 2**31 - 1
MAX_TOTAL = Decimal("99999999.99")


class CartReference(NamedTuple):
    """A resolved catalog id; ``legacy`` marks ids taken from the secondary field that still needs mapping."""
    id: int
    legacy: bool = False


class CartLine(NamedTuple):
    reference: CartReference
    quantity: int


class PricedLine(NamedTuple):
    reference: int
    quantity: int
    price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def as_id(value: Any) -> Optional[int]:
    """Return ``value`` as a positive integer id, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str) and value.strip().isdecimal():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def resolve_reference(line: Dict[str, Any], field: str) -> Optional[int]:
    """Resolve ``field`` of a cart line to an id.

    Tries ``<field>_id``, then its camelCase alias, then ``<field>.id`` when
    the field holds an object, then the field itself when it is numeric.
    """
    snake = f"{field}_id"
    for key in (snake, _camel(snake)):
        ref = as_id(line.get(key))
        if ref is not None:
            return ref
    nested = line.get(field)
    if isinstance(nested, dict):
        return as_id(nested.get("id"))
    return as_id(nested)


def coerce_quantity(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 1
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return 1
    if not number.is_finite():
        return 1
    if number > MAX_QUANTITY:
        raise InvalidRequest("quantity too large")
    return max(1, int(number.to_integral_value(rounding=ROUND_FLOOR)))


class LineSchema:
    """One deployed shape of ``order_items``."""

    variant: str = ""
    reference_column: str = ""
    legacy_column: str = ""
    primary_fields: Sequence[str] = ()
    legacy_fields: Sequence[str] = ()

    @property
    def table(self) -> Table:
        return models.LINE_TABLES[self.variant]

    def parse(self, items: Iterable[Any]) -> List[CartLine]:
        lines = []
        for raw in items:
            if not isinstance(raw, dict):
                raise InvalidRequest("each item must be an object")
            reference = self.resolve(raw)
            if reference is None:
                raise InvalidProduct(f"Invalid {self.reference_column}")
            lines.append(CartLine(reference, coerce_quantity(raw.get("quantity"))))
        return lines

    def resolve(self, raw: Dict[str, Any]) -> Optional[CartReference]:
        for field in self.primary_fields:
            ref = resolve_reference(raw, field)
            if ref is not None:
                return CartReference(ref)
        for field in self.legacy_fields:
            ref = resolve_reference(raw, field)
            if ref is not None:
                return CartReference(ref, legacy=True)
        return None

    def catalog_prices(self, session: Session, ids: Iterable[int]) -> Dict[int, Decimal]:
        raise NotImplementedError

    def legacy_targets(self, session: Session, ids: Iterable[int]) -> Dict[int, int]:
        raise NotImplementedError

    def canonical_ids(self, session: Session, lines: Sequence[CartLine]) -> List[int]:
        """Map secondary-field references onto this shape's reference column by direct lookup."""
        legacy = {line.reference.id for line in lines if line.reference.legacy}
        targets = self.legacy_targets(session, legacy) if legacy else {}
        ids = []
        for line in lines:
            if not line.reference.legacy:
                ids.append(line.reference.id)
            elif line.reference.id in targets:
                ids.append(targets[line.reference.id])
            else:
                raise InvalidProduct(f"Invalid {self.legacy_column}")
        return ids

    def price_lines(self, session: Session, lines: Sequence[CartLine]) -> List[PricedLine]:
        ids = self.canonical_ids(session, lines)
        prices = self.catalog_prices(session, set(ids))
        priced = []
        for ref, line in zip(ids, lines):
            price = prices.get(ref)
            if price is None:
                raise InvalidProduct(f"Invalid {self.reference_column}")
            priced.append(PricedLine(ref, line.quantity, price))
        return priced

    def insert_lines(self, session: Session, order_id: int, lines: Sequence[PricedLine]) -> None:
        rows = [
            {"order_id": order_id, self.reference_column: line.reference, "quantity": line.quantity, "price": line.price}
            for line in lines
        ]
        session.execute(insert(self.table), rows)

    def catalog_table(self) -> Table:
        raise NotImplementedError

    def fetch_lines(self, session: Session, order_ids: Sequence[int]) -> Dict[int, List[Dict[str, Any]]]:
        by_order: Dict[int, List[Dict[str, Any]]] = {order_id: [] for order_id in order_ids}
        if not order_ids:
            return by_order
        lines = self.table
        catalog = self.catalog_table()
        reference = lines.c[self.reference_column]
        stmt = (
            select(lines.c.id, lines.c.order_id, reference, lines.c.quantity, lines.c.price, catalog.c.name)
            .select_from(lines.outerjoin(catalog, reference == catalog.c.id))
            .where(lines.c.order_id.in_(order_ids))
            .order_by(lines.c.id)
        )
        for row in session.execute(stmt):
            by_order[row.order_id].append(dict(row._mapping))
        return by_order


def _price(value) -> Decimal:
    # catalog rows with no price are sold at zero
    return round_amount(Decimal(value)) if value is not None else round_amount(ZERO)


class ItemLines(LineSchema):
    variant = "item"
    reference_column = "product_item_id"
    legacy_column = "product_id"
    primary_fields = ("product_item",)
    legacy_fields = ("product",)

    def catalog_table(self) -> Table:
        return models.ProductItem.__table__

    def legacy_targets(self, session, ids):
        # a product sells through its first available item
        Item = models.ProductItem
        rows = session.execute(
            select(Item.product_id, func.min(Item.id).label("item_id"))
            .where(Item.product_id.in_(ids), Item.available.is_(True))
            .group_by(Item.product_id)
        )
        return {row.product_id: row.item_id for row in rows}

    def catalog_prices(self, session, ids):
        if not ids:
            return {}
        rows = session.execute(select(models.ProductItem.id, models.ProductItem.price).where(models.ProductItem.id.in_(ids)))
        return {row.id: _price(row.price) for row in rows}


class ProductLines(LineSchema):
    variant = "product"
    reference_column = "product_id"
    legacy_column = "product_item_id"
    primary_fields = ("product",)
    legacy_fields = ("product_item",)

    def catalog_table(self) -> Table:
        return models.Product.__table__

    def legacy_targets(self, session, ids):
        rows = session.execute(
            select(models.ProductItem.id, models.ProductItem.product_id).where(models.ProductItem.id.in_(ids))
        )
        return {row.id: row.product_id for row in rows}

    def catalog_prices(self, session, ids):
        if not ids:
            return {}
        rows = session.execute(select(models.Product.id, models.Product.base_price).where(models.Product.id.in_(ids)))
        return {row.id: _price(row.base_price) for row in rows}


ITEM_LINES = ItemLines()
PRODUCT_LINES = ProductLines()


class LineSchemaDetector:
    """Probe ``order_items`` once and remember which shape is deployed."""

    def __init__(self):
        self._lock = threading.Lock()
        self._schema: Optional[LineSchema] = None

    def get(self, session: Session) -> LineSchema:
        schema = self._schema
        if schema is not None:
            return schema
        with self._lock:
            if self._schema is None:
                self._schema = self.probe(session)
            return self._schema

    @staticmethod
    def probe(session: Session) -> LineSchema:
        columns = {column["name"] for column in inspect(session.connection()).get_columns("order_items")}
        schema = PRODUCT_LINES if "product_id" in columns else ITEM_LINES
        logger.info("order_items schema detected: %s", schema.variant)
        return schema

    def reset(self) -> None:
        with self._lock:
            self._schema = None


line_schema = LineSchemaDetector()


def order_number(session: Session, order: models.Order) -> int:
    """1-based rank of ``order`` among orders created on the same day."""
    created = order.created_at
    day_start = datetime.combine(created.date(), time.min)
    Order = models.Order
    stmt = select(func.count(Order.id)).where(
        Order.created_at >= day_start,
        Order.created_at < day_start + timedelta(days=1),
        or_(Order.created_at < created, and_(Order.created_at == created, Order.id <= order.id)),
    )
    return session.execute(stmt).scalar_one()


def _order_dict(order: models.Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "total": order.total,
        "status": order.status,
        "created_at": order.created_at,
    }


class OrderService:
    def __init__(
        self,
        session_factory: sessionmaker,
        detector: Optional[LineSchemaDetector] = None,
        relay: Optional[NotificationRelay] = None,
    ):
        self.session_factory = session_factory
        self.detector = detector or line_schema
        self.relay = relay

    def create_order(self, user_id: int, items: Any) -> Dict[str, Any]:
        if not isinstance(items, list) or not items:
            raise InvalidRequest("items required")

        def work(session: Session):
            # explicit check for a nicer error than the foreign key violation
            if session.get(models.User, user_id) is None:
                raise InvalidRequest("user does not exist")
            schema = self.detector.get(session)
            priced = schema.price_lines(session, schema.parse(items))
            total = round_amount(sum((line.subtotal for line in priced), ZERO))
            if total > MAX_TOTAL:
                raise InvalidRequest("order total too large")
            order = models.Order(user_id=user_id, total=total, status="pending")
            session.add(order)
            session.flush()
            schema.insert_lines(session, order.id, priced)
            return order.id, total

        order_id, total = run_in_transaction(work, self.session_factory)
        logger.info("order %s created for user %s, total %s", order_id, user_id, total)
        self._notify("order_created", order_id, user_id, total)
        return {"id": order_id, "total": total, "status": "pending"}

    def update_status(self, order_id: int, status: Any) -> Dict[str, Any]:
        if status not in models.ORDER_STATUSES:
            raise InvalidRequest("Invalid status")

        def work(session: Session):
            order = session.get(models.Order, order_id)
            if order is None:
                raise NotFound("Order not found")
            order.status = status
            return order.user_id

        user_id = run_in_transaction(work, self.session_factory)
        logger.info("order %s status -> %s", order_id, status)
        self._notify("order_status_updated", order_id, user_id, status)
        return {"id": order_id, "user_id": user_id, "status": status}

    def get_order(self, order_id: int, principal: Principal) -> Dict[str, Any]:
        with self.session_factory() as session:
            order = session.get(models.Order, order_id)
            if order is None:
                raise NotFound("Order not found")
            if order.user_id != principal.id and not principal.is_staff:
                raise Forbidden()
            schema = self.detector.get(session)
            result = _order_dict(order)
            result["items"] = schema.fetch_lines(session, [order.id])[order.id]
            result["order_number"] = order_number(session, order)
            return result

    def list_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            orders = session.scalars(
                select(models.Order)
                .where(models.Order.user_id == user_id)
                .order_by(models.Order.created_at.desc(), models.Order.id.desc())
            ).all()
            return self._with_lines(session, orders)

    def list_all(self) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            orders = session.scalars(
                select(models.Order).order_by(models.Order.created_at.desc(), models.Order.id.desc())
            ).all()
            result = self._with_lines(session, orders)
            for data, order in zip(result, orders):
                data["user_name"] = order.user.name if order.user else None
                data["user_email"] = order.user.email if order.user else None
            return result

    def _with_lines(self, session: Session, orders: Sequence[models.Order]) -> List[Dict[str, Any]]:
        if not orders:
            return []
        lines = self.detector.get(session).fetch_lines(session, [order.id for order in orders])
        result = []
        for order in orders:
            data = _order_dict(order)
            data["items"] = lines[order.id]
            result.append(data)
        return result

    def _notify(self, method: str, *args) -> None:
        if self.relay is None:
            return
        try:
            getattr(self.relay, method)(*args)
        except Exception:
            # committed already; delivery is best-effort
            logger.exception("failed to publish %s for order %s", method, args[0])
