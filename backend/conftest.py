from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.pop("NOTIFICATIONS_PROVIDER", None)

from procuredb.database import make_engine  # noqa: E402
from procuredb.models import create_schema  # noqa: E402
from procuredb.apps.accounts import models as account_models  # noqa: E402
from procuredb.apps.notifications.providers import InMemoryProvider  # noqa: E402
from procuredb.apps.purchasing import schemas as purchasing_schemas  # noqa: E402
from procuredb.apps.purchasing import services as purchasing_services  # noqa: E402
from procuredb.apps.transfers import stock  # noqa: E402
from procuredb.utils.clock import FrozenClock  # noqa: E402
from procuredb.utils.identifiers import SequentialIdSource  # noqa: E402

TENANT_ID = "tenant-1"
OTHER_TENANT_ID = "tenant-2"
PRODUCT_ID = "product-1"


@pytest.fixture()
def engine():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(engine):
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def ids():
    return SequentialIdSource()


@pytest.fixture()
def provider():
    return InMemoryProvider()


@pytest.fixture()
def seed(db_session):
    """Two tenants, three locations, and one user per role.

    staff_a works at loc-a, staff_b at loc-b. The other tenant has its own
    admin so tenant-isolation tests have a real actor to use.
    """
    db = db_session
    db.add_all(
        [
            account_models.Tenant(id=TENANT_ID, name="Tenant One", slug="tenant-one"),
            account_models.Tenant(id=OTHER_TENANT_ID, name="Tenant Two", slug="tenant-two"),
        ]
    )
    locations = {}
    for code in ("a", "b", "c"):
        locations[code] = account_models.Location(
            id=f"loc-{code}", tenant_id=TENANT_ID, code=code.upper(), name=f"Location {code.upper()}"
        )
    db.add_all(locations.values())
    db.add(account_models.Location(id="loc-x", tenant_id=OTHER_TENANT_ID, code="X", name="Other tenant"))

    def make_user(user_id, role, location_id=None, tenant_id=TENANT_ID):
        user = account_models.User(
            id=user_id,
            tenant_id=tenant_id,
            email=f"{user_id}@example.com",
            full_name=user_id.replace("-", " ").title(),
            role=role,
            location_id=location_id,
        )
        db.add(user)
        return user

    users = SimpleNamespace(
        admin=make_user("admin-1", account_models.UserRole.ADMIN),
        manager=make_user("manager-1", account_models.UserRole.MANAGER),
        staff_a=make_user("staff-a", account_models.UserRole.STAFF, "loc-a"),
        staff_b=make_user("staff-b", account_models.UserRole.STAFF, "loc-b"),
        other_admin=make_user("admin-2", account_models.UserRole.ADMIN, tenant_id=OTHER_TENANT_ID),
    )
    db.flush()
    return SimpleNamespace(
        tenant_id=TENANT_ID,
        other_tenant_id=OTHER_TENANT_ID,
        product_id=PRODUCT_ID,
        locations=locations,
        users=users,
    )


@pytest.fixture()
def stocked(db_session, seed):
    """100 units of the seeded product at loc-a."""
    stock.set_on_hand(
        db_session, tenant_id=seed.tenant_id, product_id=seed.product_id, location_id="loc-a", quantity=100
    )
    return seed


@pytest.fixture()
def make_po(db_session, seed, clock, ids):
    """Factory for purchase orders; approved unless told otherwise."""

    def _make(quantities=(100,), *, approve=True, unit_price_cents=250, supplier_id="supplier-1"):
        po = purchasing_services.create_purchase_order(
            db_session,
            tenant_id=seed.tenant_id,
            created_by=seed.users.manager.id,
            data=purchasing_schemas.PurchaseOrderCreate(
                supplier_id=supplier_id,
                items=[
                    purchasing_schemas.POItemCreate(
                        product_id=seed.product_id, quantity_ordered=quantity, unit_price_cents=unit_price_cents
                    )
                    for quantity in quantities
                ],
            ),
            clock=clock,
            ids=ids,
        )
        if approve:
            purchasing_services.approve_purchase_order(
                db_session,
                tenant_id=seed.tenant_id,
                po_id=po.id,
                user_id=seed.users.manager.id,
                clock=clock,
                ids=ids,
            )
        return po

    return _make
