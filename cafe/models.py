from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base

ROLE_ADMIN = "admin"
ROLE_PERSONAL = "personal"
ROLE_PARISHIONER = "parishioner"
ROLES = (ROLE_ADMIN, ROLE_PERSONAL, ROLE_PARISHIONER)
STAFF_ROLES = frozenset({ROLE_ADMIN, ROLE_PERSONAL})

ORDER_STATUSES = ("pending", "preparing", "ready", "paid", "cancelled", "completed")


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False, unique=True)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    email = Column(String(320), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role = relationship("Role", lazy="joined")
    orders = relationship("Order", back_populates="user", cascade="all, delete-orphan")

    @property
    def role_name(self) -> str:
        # users without a role row are treated as regular customers
        return self.role.name if self.role else ROLE_PARISHIONER


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(10, 2), nullable=True)
    image_url = Column(String(500), nullable=True)
    available = Column(Boolean, nullable=False, default=True)

    category = relationship("Category")
    items = relationship("ProductItem", back_populates="product", cascade="all, delete-orphan")
    options = relationship("ProductOption", back_populates="product", cascade="all, delete-orphan")


class ProductItem(Base):
    __tablename__ = "product_items"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    sku = Column(String(64), nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    available = Column(Boolean, nullable=False, default=True)

    product = relationship("Product", back_populates="items")


class ProductOption(Base):
    __tablename__ = "product_options"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    value = Column(String(120), nullable=False)
    extra_price = Column(Numeric(10, 2), nullable=False, default=0)

    product = relationship("Product", back_populates="options")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    total = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    user = relationship("User", back_populates="orders")


# order_items is deployed in one of two shapes. Each shape lives in its own
# MetaData so only one of them is ever created against a database; the
# foreign keys point at the ORM tables through their Column objects.
def _line_columns():
    return (
        Column("id", Integer, primary_key=True),
        Column("order_id", Integer, ForeignKey(Order.__table__.c.id, ondelete="CASCADE"), nullable=False, index=True),
        Column("quantity", Integer, nullable=False),
        Column("price", Numeric(10, 2), nullable=False),
    )


order_items_by_item = Table(
    "order_items",
    MetaData(),
    *_line_columns(),
    Column("product_item_id", Integer, ForeignKey(ProductItem.__table__.c.id, ondelete="SET NULL"), nullable=True),
)

order_items_by_product = Table(
    "order_items",
    MetaData(),
    *_line_columns(),
    Column("product_id", Integer, ForeignKey(Product.__table__.c.id, ondelete="SET NULL"), nullable=True),
)

LINE_TABLES = {"item": order_items_by_item, "product": order_items_by_product}


def create_schema(bind, variant: str = "item") -> None:
    """Create every table, with ``order_items`` in the requested shape."""
    Base.metadata.create_all(bind=bind)
    line_table = LINE_TABLES[variant]
    line_table.metadata.create_all(bind=bind)
