import asyncio
import os
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from http.cookies import SimpleCookie
from unittest.mock import MagicMock, patch

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing

# Configure before any lobster import reads the environment
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("DRIVERS_CONFIG", None)


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool

import lobster.celery_app  # noqa: E402,F401
import lobster.models  # noqa: E402,F401
from lobster.db import Base, SessionLocal, engine  # noqa: E402
from lobster.drivers.fake import FakeDriver  # noqa: E402
from lobster.drivers.registry import DriverRegistry, set_default_registry  # noqa: E402
from lobster.models.image import Image, ImageStatus  # noqa: E402
from lobster.models.plan import Plan  # noqa: E402
from lobster.models.user import User, UserStatus  # noqa: E402
from lobster.models.vm import VirtualMachine, VmStatus  # noqa: E402
from lobster.services.auth_service import make_password  # noqa: E402
from lobster.services.common import BILLING_PRECISION  # noqa: E402
from lobster.services.payment_service import FakePayment, PaymentRegistry  # noqa: E402

REGION = "test"
PASSWORD = "password123"


class SyncASGIClient:
    def __init__(self, app):
        self._app = app
        self._cookies = httpx.Cookies()

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
            follow_redirects=True,
            cookies=self._cookies,
        ) as client:
            response = await client.request(method, url, **kwargs)
            # Persist the client cookie jar, not only response cookies, so
            # HttpOnly/redirect-set cookies survive across requests.
            self._cookies.update(client.cookies)
            for raw_cookie in response.headers.get_list("set-cookie"):
                parsed = SimpleCookie()
                parsed.load(raw_cookie)
                for key, morsel in parsed.items():
                    if morsel.value == "" or morsel["max-age"] == "0":
                        stale = [(c.domain, c.path, c.name) for c in self._cookies.jar if c.name == key]
                        for domain, path, name in stale:
                            self._cookies.jar.clear(domain, path, name)
        self._cookies.update(response.cookies)
        return response

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        return None

    @property
    def cookies(self):
        return self._cookies

    def form_token(self, page: str = "/panel/token") -> str:
        return self.get(page).json()["token"]

    def login(self, username: str, password: str = PASSWORD):
        token = self.form_token("/login")
        return self.post(
            "/auth/login",
            data={"token": token, "username": username, "password": password},
            follow_redirects=False,
        )


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture()
def db_session():
    """Database session sharing the StaticPool connection with the app."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def fake_driver():
    return FakeDriver(bandwidth=0)


@pytest.fixture()
def registry(fake_driver):
    registry = DriverRegistry()
    registry.register(REGION, fake_driver)
    registry.freeze()
    set_default_registry(registry)
    yield registry
    set_default_registry(None)


@pytest.fixture(autouse=True)
def outbox():
    """Capture every email instead of talking to SMTP."""
    sent = []

    def _send(to_email, subject, body, bcc=None):
        sent.append({"to": to_email, "subject": subject, "body": body, "bcc": bcc or []})
        return True

    with patch("lobster.services.email.send_email", side_effect=_send):
        yield sent


@pytest.fixture(autouse=True)
def _tasks_use_test_session(db_session):
    """Run eager Celery tasks against the test session."""
    patches = [
        patch("lobster.tasks.vms.SessionLocal"),
        patch("lobster.tasks.billing.SessionLocal"),
        patch("lobster.tasks.images.SessionLocal"),
    ]
    mocks = [p.start() for p in patches]
    for mock_sl in mocks:
        mock_sl.return_value.__enter__ = lambda s: db_session
        mock_sl.return_value.__exit__ = MagicMock(return_value=False)
    yield
    for p in patches:
        p.stop()


def make_user(db_session, username: str = "alice", credit: float = 10, admin: bool = False, **fields) -> User:
    user = User(
        username=username,
        email=fields.pop("email", f"{username}@example.com"),
        password_hash=make_password(PASSWORD),
        credit=int(credit * BILLING_PRECISION),
        status=fields.pop("status", UserStatus.active),
        admin=admin,
        **fields,
    )
    db_session.add(user)
    db_session.commit()
    return user


def make_plan(db_session, name: str = "small", price: float = 0.01, bandwidth: int = 1000, **fields) -> Plan:
    plan = Plan(
        name=name,
        price=int(price * BILLING_PRECISION),
        ram=fields.pop("ram", 1024),
        cpu=fields.pop("cpu", 1),
        storage=fields.pop("storage", 20),
        bandwidth=bandwidth,
        **fields,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


def make_image(db_session, name: str = "debian", user_id: int | None = None, **fields) -> Image:
    image = Image(
        user_id=user_id,
        region=fields.pop("region", REGION),
        name=name,
        identification=fields.pop("identification", f"img-{name}"),
        status=fields.pop("status", ImageStatus.active),
        **fields,
    )
    db_session.add(image)
    db_session.commit()
    return image


def make_vm(db_session, user: User, plan: Plan, name: str = "web1", **fields) -> VirtualMachine:
    now = datetime.now(UTC)
    vm = VirtualMachine(
        user_id=user.id,
        plan_id=plan.id,
        region=fields.pop("region", REGION),
        name=name,
        identification=fields.pop("identification", f"fake-{name}"),
        status=fields.pop("status", VmStatus.active),
        created_time=fields.pop("created_time", now),
        time_billed=fields.pop("time_billed", now),
        **fields,
    )
    db_session.add(vm)
    db_session.commit()
    return vm


@pytest.fixture()
def user(db_session):
    return make_user(db_session)


@pytest.fixture()
def admin_user(db_session):
    return make_user(db_session, "root", admin=True)


@pytest.fixture()
def plan(db_session):
    return make_plan(db_session)


@pytest.fixture()
def image(db_session):
    return make_image(db_session)


@pytest.fixture()
def vm(db_session, user, plan, registry):
    return make_vm(db_session, user, plan)


@pytest.fixture()
def payments():
    payments = PaymentRegistry()
    payments.register("fake", FakePayment())
    return payments


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, registry, payments):
    """Test client with database dependency override and test registries."""
    from lobster.api.deps import get_db as api_get_db
    from lobster.main import app
    from lobster.web.deps import get_db as web_get_db

    def override_get_db():
        return db_session

    app.dependency_overrides[api_get_db] = override_get_db
    app.dependency_overrides[web_get_db] = override_get_db
    app.state.registry = registry
    app.state.payments = payments

    @asynccontextmanager
    async def _test_lifespan(_app):
        yield

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _test_lifespan
    test_client = SyncASGIClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.router.lifespan_context = original_lifespan
        app.dependency_overrides.clear()


@pytest.fixture()
def user_client(client, user):
    response = client.login(user.username)
    assert response.status_code == 303
    assert response.headers["location"] == "/panel/dashboard"
    return client


@pytest.fixture()
def admin_client(client, admin_user):
    response = client.login(admin_user.username)
    assert response.status_code == 303
    return client
