"""Shared test configuration and fixtures.

Tests run against an in-memory SQLite database (aiosqlite) shared through a
StaticPool, so no PostgreSQL instance is needed. Every test gets a fresh
schema. Stripe and email delivery are replaced with recording fakes.

Sessions opened by a test must be closed before the billing runner is
called: the whole test shares one SQLite connection.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import date
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import get_billing_runner, get_settings
from app.billing.errors import IdempotencyConflict
from app.billing.status import SubscriptionStatus
from app.config import Settings
from app.database import Base, get_db, make_session_factory
from app.main import app
from app.models.customer import Customer
from app.models.subscription import Subscription
from app.services.recurring_billing import BillingConfig, RecurringBillingRunner

TODAY = date(2026, 3, 2)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine with working SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN, which breaks SAVEPOINT; emit it ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(test_engine)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest_asyncio.fixture
async def create_subscription(session_factory, today):
    """Factory: insert a customer with one subscription, due today by default.

    Defaults give 4 sessions x 2500 cents = 10000 cents per cycle.
    """

    async def _create(**overrides) -> Subscription:
        unique = uuid.uuid4().hex[:8]
        stripe_customer_id = overrides.pop("stripe_customer_id", f"cus_test_{unique}")
        async with session_factory() as db:
            customer = Customer(
                email=f"customer-{unique}@test.com",
                first_name="Sanne",
                last_name="de Vries",
                stripe_customer_id=stripe_customer_id,
            )
            db.add(customer)
            await db.flush()

            fields = {
                "customer_id": customer.id,
                "stripe_payment_method_id": "pm_sepa_test",
                "mandate_completed": True,
                "price_per_session_cents": 2500,
                "sessions_per_cycle": 4,
                "frequency_label": "weekly",
                "status": SubscriptionStatus.ACTIVE,
                "next_renewal_date": today,
            }
            fields.update(overrides)
            subscription = Subscription(**fields)
            db.add(subscription)
            await db.commit()
            return subscription

    return _create


@pytest_asyncio.fixture
async def fetch_all(session_factory):
    """Factory: load rows of a model in a fresh session, optionally filtered."""

    async def _fetch(model, **filters) -> list:
        async with session_factory() as db:
            result = await db.execute(select(model).filter_by(**filters))
            return list(result.scalars().all())

    return _fetch


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------


class FakeGateway:
    """Records every Stripe call; behaves like Stripe for idempotency keys."""

    def __init__(self) -> None:
        self.charges: list[dict] = []
        self.invoice_documents: list[dict] = []
        self.charge_status = "succeeded"
        self.charge_error: Exception | None = None
        self.errors_by_customer: dict[str, Exception] = {}
        self.invoice_error: Exception | None = None
        self._requests_by_key: dict[str, tuple[dict, SimpleNamespace]] = {}

    @property
    def intents_created(self) -> int:
        return sum(1 for c in self.charges if c.get("intent_created"))

    async def create_off_session_charge(self, **kwargs):
        record = dict(kwargs)
        self.charges.append(record)
        error = self.errors_by_customer.get(kwargs["customer_id"]) or self.charge_error
        if error is not None:
            raise error

        key = kwargs.get("idempotency_key")
        params = {k: v for k, v in kwargs.items() if k != "idempotency_key"}
        if key and key in self._requests_by_key:
            original_params, intent = self._requests_by_key[key]
            if params != original_params:
                raise IdempotencyConflict(
                    f"Idempotency key {key} was already used with different parameters",
                    status="idempotency_error",
                )
            return intent

        record["intent_created"] = True
        intent = SimpleNamespace(id=f"pi_test_{self.intents_created}", status=self.charge_status)
        if key:
            self._requests_by_key[key] = (params, intent)
        return intent

    async def create_invoice_document(self, **kwargs):
        self.invoice_documents.append(kwargs)
        if self.invoice_error is not None:
            raise self.invoice_error
        number = len(self.invoice_documents)
        return SimpleNamespace(
            id=f"in_test_{number}",
            status="paid" if kwargs["mark_paid"] else "open",
            invoice_pdf=f"https://pay.stripe.test/invoice/in_test_{number}/pdf",
            hosted_invoice_url=None,
        )


class FakeNotifier:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent = []
        self.error: Exception | None = None

    async def send(self, notification) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(notification)

    def by_template(self, template: str) -> list:
        return [n for n in self.sent if n.template == template]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_runner(session_factory, gateway, notifier, sleeps, today):
    """Factory: RecurringBillingRunner wired to the fakes and a fixed clock."""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def _make(**config_overrides) -> RecurringBillingRunner:
        return RecurringBillingRunner(
            session_factory=session_factory,
            gateway=gateway,
            notifier=notifier,
            config=BillingConfig(**config_overrides),
            sleep=_sleep,
            clock=lambda: today,
        )

    return _make


@pytest.fixture
def runner(make_runner) -> RecurringBillingRunner:
    return make_runner()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test_cleancycle",
        cron_secret="cron-secret-123",
        environment="development",
    )


@pytest_asyncio.fixture
async def client(
    session_factory, runner, test_settings
) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient with the test database, runner and settings injected."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_runner] = lambda: runner
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers(test_settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {test_settings.cron_secret}"}
