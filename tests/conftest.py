import os
from decimal import Decimal
from typing import Generator, NamedTuple

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cafe import crud, models
from cafe.auth import create_access_token
from cafe.db import get_db, get_session_factory, make_engine
from cafe.main import app
from cafe.orders import LineSchemaDetector, OrderService, line_schema
from cafe.relay import NotificationRelay, get_relay


class Account(NamedTuple):
    id: int
    email: str
    role: str
    token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture
def schema_variant() -> str:
    return "item"


@pytest.fixture(scope="function")
def engine(schema_variant):
    # Use in-memory SQLite with a single connection
    engine = make_engine("sqlite://", poolclass=StaticPool)
    models.create_schema(engine, schema_variant)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    db = factory()
    try:
        crud.ensure_roles(db)
    finally:
        db.close()
    return factory


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def reset_line_schema():
    # the app-wide detector caches per process; every test gets its own database
    line_schema.reset()
    yield
    line_schema.reset()


@pytest.fixture
def relay() -> NotificationRelay:
    return NotificationRelay()


@pytest.fixture
def orders(session_factory, relay) -> OrderService:
    return OrderService(session_factory, LineSchemaDetector(), relay)


@pytest.fixture(scope="function")
def client(db_session, session_factory, relay):
    # Override dependencies to use the same in-memory database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_relay] = lambda: relay
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_account(db, name: str, role: str) -> Account:
    email = f"{name.lower()}@example.com"
    user = crud.create_user(db, name, email, "secret-pass", role=role)
    token = create_access_token(user.id, user.email, user.role_name)
    return Account(user.id, user.email, user.role_name, token)


@pytest.fixture
def customer(db_session) -> Account:
    return make_account(db_session, "Carla", models.ROLE_PARISHIONER)


@pytest.fixture
def other_customer(db_session) -> Account:
    return make_account(db_session, "Oscar", models.ROLE_PARISHIONER)


@pytest.fixture
def barista(db_session) -> Account:
    return make_account(db_session, "Paula", models.ROLE_PERSONAL)


@pytest.fixture
def admin(db_session) -> Account:
    return make_account(db_session, "Ada", models.ROLE_ADMIN)


@pytest.fixture
def catalog(db_session):
    """Products 1-3 with items 1-3; ids 1 and 2 cost 3.50 and 5.00 in both shapes."""
    drinks = models.Category(name="Drinks")
    db_session.add(drinks)
    db_session.flush()
    coffee = models.Product(id=1, category_id=drinks.id, name="Coffee", base_price=Decimal("3.50"))
    coffee.items = [models.ProductItem(id=1, name="Coffee regular", price=Decimal("3.50"))]
    sandwich = models.Product(id=2, name="Sandwich", base_price=Decimal("5.00"))
    sandwich.items = [models.ProductItem(id=2, name="Sandwich ham", price=Decimal("5.00"))]
    tea = models.Product(id=3, category_id=drinks.id, name="Tea", base_price=Decimal("2.25"))
    tea.items = [models.ProductItem(id=3, name="Tea small", price=Decimal("2.00"))]
    db_session.add_all([coffee, sandwich, tea])
    db_session.commit()
    return {"coffee": coffee.id, "sandwich": sandwich.id, "tea": tea.id}
