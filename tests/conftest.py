from decimal import Decimal
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from core.db import Base, build_engine, get_db, init_db
from main import app
from models.enums import UserRole
from models.product import Product
from models.shop import Shop
from models.user import User
from security import jwt as jwt_utils
from services.orders import OrderCoordinator, OrderLocks


@pytest.fixture()
def engine():
    engine = build_engine("sqlite:///:memory:")
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def file_engine(tmp_path):
    """File-backed SQLite for tests that use one session per thread."""
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    """Create a fresh database session for each test."""
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    db_session = TestingSessionLocal()
    yield db_session
    db_session.close()


@pytest.fixture()
def client(db):
    def _get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def coordinator():
    return OrderCoordinator(locks=OrderLocks())


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def customer(db):
    return _add(db, User(name="Asha Kumar", email="asha@example.com", phone="9000000001", role=UserRole.CUSTOMER))


@pytest.fixture
def other_customer(db):
    return _add(db, User(name="Ravi Iyer", email="ravi@example.com", phone="9000000002", role=UserRole.CUSTOMER))


@pytest.fixture
def shopkeeper(db):
    return _add(db, User(name="Meena Stores", email="meena@example.com", phone="9000000003", role=UserRole.SHOPKEEPER))


@pytest.fixture
def agent(db):
    return _add(
        db,
        User(
            name="Karthik",
            email="karthik@example.com",
            phone="9000000004",
            role=UserRole.DELIVERY_AGENT,
            is_available=True,
            latitude=9.93,
            longitude=78.12,
        ),
    )


@pytest.fixture
def admin(db):
    return _add(db, User(name="Ops", email="ops@example.com", role=UserRole.ADMIN))


@pytest.fixture
def shop(db, shopkeeper):
    return _add(
        db,
        Shop(
            owner_id=shopkeeper.id,
            name="Meena Provisions",
            phone="0452-2345678",
            address="12 Market Road, Madurai",
            latitude=9.9252,
            longitude=78.1198,
            delivery_fee=Decimal("20.00"),
            is_active=True,
        ),
    )


@pytest.fixture
def rice(db, shop):
    return _add(db, Product(shop_id=shop.id, name="Rice 1kg", price=Decimal("10.00"), available_quantity=10))


@pytest.fixture
def ghee(db, shop):
    return _add(db, Product(shop_id=shop.id, name="Ghee 500ml", price=Decimal("50.00"), available_quantity=5))


@pytest.fixture
def auth_headers():
    """Build bearer headers for a user."""
    def _headers(user: User) -> Dict[str, str]:
        token = jwt_utils.create_access_token(str(user.id), user.role.value)
        return {"Authorization": f"Bearer {token}"}
    return _headers
