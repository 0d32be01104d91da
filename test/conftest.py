import os

# Point settings at an in-memory database before anything imports the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SECRET_KEY"] = "test-secret-key"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from tableside import models
from tableside.db import get_session
from tableside.errors import GatewayUnavailableError
from tableside.main import app
from tableside.payment_gateway import GatewayIntent, PaymentGateway, get_gateway
from tableside.security import get_password_hash, token_for_user


class FakeGateway(PaymentGateway):
    """Records intents instead of calling Stripe."""

    def __init__(self):
        self.fail = False
        self.calls = []

    def create_intent(self, restaurant, amount_minor_units, currency, metadata, description=None):
        if self.fail:
            raise GatewayUnavailableError("Payment provider is unavailable, please try again")
        self.calls.append({
            "restaurant_id": restaurant.id,
            "amount": amount_minor_units,
            "currency": currency,
            "metadata": dict(metadata),
        })
        n = len(self.calls)
        return GatewayIntent(
            intent_id=f"pi_test_{n}",
            client_secret=f"pi_test_{n}_secret",
            amount_minor_units=amount_minor_units,
            currency=currency,
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session, gateway):
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def _group(session, restaurant, title, min_select, max_select, options, is_active=True):
    group = models.ModifierGroup(
        restaurant_id=restaurant.id,
        title=title,
        min_select=min_select,
        max_select=max_select,
        is_active=is_active,
    )
    session.add(group)
    session.flush()
    created = {}
    for sort_order, (name, delta) in enumerate(options):
        option = models.ModifierOption(
            group_id=group.id, title=name, price_delta_cents=delta, sort_order=sort_order
        )
        session.add(option)
        session.flush()
        created[name] = option
    return group, created


def _item(session, restaurant, title, price_cents, groups=(), **flags):
    item = models.MenuItem(restaurant_id=restaurant.id, title=title, price_cents=price_cents, **flags)
    session.add(item)
    session.flush()
    for sort_order, group in enumerate(groups):
        session.add(models.MenuItemModifierGroup(
            menu_item_id=item.id, group_id=group.id, sort_order=sort_order
        ))
    return item


@pytest.fixture
def seed(session):
    """One restaurant with a small menu, two tables, a staff member and a diner."""
    restaurant = models.Restaurant(name="Lokanta", region="TR", delivery_fee_cents=500,
                                   delivery_min_order_cents=3000)
    session.add(restaurant)
    session.flush()

    table = models.Table(restaurant_id=restaurant.id, name="Table 1")
    other_table = models.Table(restaurant_id=restaurant.id, name="Table 2")
    inactive_table = models.Table(restaurant_id=restaurant.id, name="Terrace", is_active=False)
    session.add_all([table, other_table, inactive_table])

    staff = models.User(email="staff@lokanta.test", hashed_password=get_password_hash("secret"),
                        restaurant_id=restaurant.id)
    diner = models.User(email="diner@example.test", hashed_password=get_password_hash("secret"))
    session.add_all([staff, diner])
    session.flush()

    size, size_options = _group(session, restaurant, "Size", 1, 1, [("Regular", 0), ("Large", 1000)])
    extras, extra_options = _group(
        session, restaurant, "Extras", 0, 2, [("Cheese", 200), ("Bacon", 300), ("Onion", 100)]
    )
    dressing, dressing_options = _group(
        session, restaurant, "Dressing", 1, 1, [("Vinaigrette", 0)], is_active=False
    )

    burger = _item(session, restaurant, "Burger", 5000, groups=[size, extras])
    salad = _item(session, restaurant, "Salad", 8000, groups=[dressing])
    soup = _item(session, restaurant, "Soup", 6000)
    sold_out = _item(session, restaurant, "Lobster", 20000, is_available=False)
    session.commit()

    return SimpleNamespace(
        restaurant=restaurant,
        table=table,
        other_table=other_table,
        inactive_table=inactive_table,
        staff=staff,
        diner=diner,
        size=size,
        size_options=size_options,
        extras=extras,
        extra_options=extra_options,
        dressing=dressing,
        dressing_options=dressing_options,
        burger=burger,
        salad=salad,
        soup=soup,
        sold_out=sold_out,
    )


@pytest.fixture
def staff_headers(seed):
    return {"Authorization": f"Bearer {token_for_user(seed.staff)}"}


@pytest.fixture
def diner_headers(seed):
    return {"Authorization": f"Bearer {token_for_user(seed.diner)}"}
