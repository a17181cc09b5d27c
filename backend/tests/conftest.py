import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from contract_confirm.domain.confirmation import container
from contract_confirm.domain.confirmation.memory import InMemoryConfirmationStore
from contract_confirm.domain.confirmation.models import (
    ContractRecord,
    CustomerProjection,
    PhoneRecord,
)
from contract_confirm.domain.confirmation.policy import ConfirmationConfig
from contract_confirm.domain.confirmation.service import ConfirmationSessionManager
from contract_confirm.domain.confirmation.sms import SmsSendResult
from contract_confirm.domain.confirmation.verifier import OtpVerifier
from contract_confirm.infra import postgres
from contract_confirm.main import app
from contract_confirm.settings import settings


if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


FRONTEND_URL = "https://app.example.test"
START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingSmsGateway:
    provider = "test"

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_with: str | None = None

    async def send(self, phone_number, template_id, parameters):
        self.sent.append({"phone": phone_number, "template_id": template_id, "parameters": dict(parameters)})
        if self.fail_with:
            return SmsSendResult(success=False, error=self.fail_with, raw_response={"status": 0})
        return SmsSendResult(
            success=True,
            provider_message_id=f"msg-{len(self.sent)}",
            raw_response={"status": 1, "data": {"messageId": len(self.sent)}},
        )

    @property
    def last_code(self) -> str:
        return self.sent[-1]["parameters"]["Code"]

    @property
    def last_token(self) -> str:
        return self.sent[-1]["parameters"]["Link"].rsplit("/", 1)[1]


def build_contract(
    contract_id: str = "contract-1",
    *,
    status: str = "DRAFT",
    home_number: str | None = "09121234567",
    phone_numbers: list[PhoneRecord] | None = None,
) -> ContractRecord:
    return ContractRecord(
        id=contract_id,
        contract_number=f"C-{contract_id}",
        status=status,
        title="Stone supply",
        total_amount=1250000,
        currency="IRR",
        created_at=START - timedelta(days=1),
        customer=CustomerProjection(
            first_name="Sara",
            last_name="Ahmadi",
            home_number=home_number,
            phone_numbers=phone_numbers or [],
        ),
        items=[{"id": "item-1", "description": "Travertine slab", "quantity": 12}],
        deliveries=[{"id": "delivery-1", "deliveryDate": "2026-04-01"}],
        payments=[{"id": "payment-1", "amount": 500000}],
    )


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    from contract_confirm.infra.redis import redis_client, set_redis_client

    original = redis_client._client
    client = FakeRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(original)
        await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
    async def _noop():
        return None

    monkeypatch.setattr(postgres, "init_pool", _noop)
    monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
    """Staff API tests authenticate via X-User-Id headers, which are only accepted in dev mode."""
    original_env = settings.environment
    settings.environment = "dev"
    try:
        yield
    finally:
        settings.environment = original_env


@pytest.fixture
def clock():
    return MutableClock(START)


@pytest.fixture
def gateway():
    return RecordingSmsGateway()


@pytest.fixture
def config():
    return ConfirmationConfig(frontend_url=FRONTEND_URL)


@pytest.fixture
def store():
    memory = InMemoryConfirmationStore()
    memory.add_contract(build_contract())
    return memory


@pytest.fixture
def manager(store, gateway, config, clock):
    return ConfirmationSessionManager(store, gateway, config, clock=clock)


@pytest.fixture
def verifier(store, clock):
    return OtpVerifier(store, clock=clock)


@pytest.fixture
def configured_container(store, gateway, config, clock):
    container.configure(store=store, gateway=gateway, config=config, clock=clock)
    try:
        yield container
    finally:
        container.reset()


@pytest_asyncio.fixture
async def api_client(configured_container):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def make_contract():
    return build_contract
