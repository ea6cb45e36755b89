import pytest
import fakeredis
from fastapi.testclient import TestClient

from storefront.config import Settings
from storefront.infra.sql import make_async_engine
from storefront.model.payments import create_schema, new_store
from storefront.provider import PaymentAdapter
from storefront.server import create_app

CALLBACK_TOKEN = "cb-test-token"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/test.db",
        xendit_secret_key="xnd_development_test_key",
        xendit_callback_token=CALLBACK_TOKEN,
        public_base_url="http://testserver",
        log_level="DEBUG",
    )


class FakeAdapter(PaymentAdapter):
    """Records invoice requests and hands out sequential invoice ids."""

    name = "fake"

    def __init__(self):
        self.requests = []
        self.fail_with = None
        self._n = 0

    def ensure_configured(self):
        return None

    async def create_invoice(self, http, request):
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        self._n += 1
        invoice_id = f"inv_{self._n:04d}"
        return {
            "invoice_id": invoice_id,
            "invoice_url": f"https://checkout.example/web/{invoice_id}",
            "status": "PENDING",
            "expiry_date": None,
        }


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def client(settings, adapter):
    app = create_app(settings, adapter=adapter)
    with TestClient(app) as c:
        yield c


@pytest.fixture(params=["sql", "redis"])
async def make_store(request, settings):
    """Factory of stores sharing one backend; each call is a new session."""
    if request.param == "sql":
        engine, SessionAsync, gated = make_async_engine(settings)
        async with engine.begin() as conn:
            await create_schema(conn)
        sessions = []

        def make():
            session = SessionAsync()
            sessions.append(session)
            return new_store("sql", db=session, gated=gated)

        yield make
        for session in sessions:
            await session.close()
        await engine.dispose()
    else:
        r = fakeredis.FakeAsyncRedis(
            server=fakeredis.FakeServer(), decode_responses=True
        )
        yield lambda: new_store("redis", r=r)
        await r.aclose()


def order_fixture(invoice_id="inv_0001",
                  external_id="order-1700000000000-abc1234",
                  created_at=1700000000.0):
    items = [
        {"product_id": "P-001", "name": "Kopi", "price": 55000, "quantity": 2},
        {"product_id": "P-002", "name": "Teh", "price": 30000, "quantity": 1},
    ]
    order = {
        "id": f"id-{external_id}",
        "external_id": external_id,
        "payer_email": "buyer@example.com",
        "items": items,
        "subtotal": 140000,
        "shipping_cost": 25000,
        "total": 165000,
        "currency": "IDR",
        "created_at": created_at,
    }
    payment = {
        "invoice_id": invoice_id,
        "amount": 165000,
        "currency": "IDR",
        "invoice_url": f"https://checkout.example/web/{invoice_id}",
    }
    return order, payment
