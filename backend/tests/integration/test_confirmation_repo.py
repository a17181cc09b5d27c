from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import AsyncIterator, Iterator

import asyncpg
import pytest
import pytest_asyncio

from contract_confirm.domain.confirmation import audit, policy
from contract_confirm.domain.confirmation.models import AuditEvent, SessionStatus
from contract_confirm.domain.confirmation.service import ConfirmationSessionManager
from contract_confirm.domain.confirmation.verifier import OtpVerifier
from contract_confirm.infra import postgres
from contract_confirm.infra.confirmation_repo import PostgresConfirmationStore
from contract_confirm.obs import health

pytestmark = pytest.mark.asyncio

BACKEND_ROOT = Path(__file__).resolve().parents[2]
MIGRATIONS_DIR = BACKEND_ROOT / "contract_confirm" / "infra" / "migrations"

SALES_SCHEMA = """
CREATE TABLE crm_customers (
    id TEXT PRIMARY KEY,
    first_name TEXT,
    last_name TEXT,
    company_name TEXT,
    home_number TEXT,
    work_number TEXT,
    project_manager_number TEXT
);
CREATE TABLE crm_customer_phone_numbers (
    id SERIAL PRIMARY KEY,
    customer_id TEXT NOT NULL REFERENCES crm_customers (id),
    phone_number TEXT,
    is_primary BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE crm_customer_contacts (
    id SERIAL PRIMARY KEY,
    customer_id TEXT NOT NULL REFERENCES crm_customers (id),
    mobile TEXT,
    phone TEXT,
    is_primary BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE sales_contracts (
    id TEXT PRIMARY KEY,
    contract_number TEXT NOT NULL,
    customer_id TEXT REFERENCES crm_customers (id),
    title TEXT,
    title_persian TEXT,
    contract_data JSONB,
    status TEXT NOT NULL,
    total_amount NUMERIC,
    currency TEXT,
    signatures JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE products (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    code TEXT
);
CREATE TABLE contract_items (
    id SERIAL PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES sales_contracts (id),
    product_id TEXT REFERENCES products (id),
    description TEXT,
    quantity NUMERIC,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE contract_deliveries (
    id SERIAL PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES sales_contracts (id),
    delivery_date DATE
);
CREATE TABLE contract_payments (
    id SERIAL PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES sales_contracts (id),
    amount NUMERIC,
    payment_date DATE
);
CREATE TABLE payment_installments (
    id SERIAL PRIMARY KEY,
    payment_id INTEGER NOT NULL REFERENCES contract_payments (id),
    installment_number INTEGER NOT NULL,
    amount NUMERIC,
    due_date DATE
);
"""


@pytest.fixture(scope="module")
def postgres_container() -> Iterator["PostgresContainer"]:
    testcontainers = pytest.importorskip(
        "testcontainers.postgres",
        reason="testcontainers.postgres is required for integration tests",
    )
    PostgresContainer = testcontainers.PostgresContainer
    try:
        container = PostgresContainer("postgres:16-alpine")
        container.start()
    except Exception as exc:  # pragma: no cover - environment without docker
        pytest.skip(f"unable to start postgres container: {exc}")
    try:
        yield container
    finally:
        container.stop()


async def _run_migrations(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("DROP SCHEMA IF EXISTS public CASCADE")
        await conn.execute("CREATE SCHEMA public")
        await conn.execute("GRANT ALL ON SCHEMA public TO PUBLIC")
        await conn.execute(SALES_SCHEMA)
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text(encoding="utf-8"))


async def _seed(pool: asyncpg.Pool, contract_id: str = "contract-1", status: str = "DRAFT") -> None:
    async with pool.acquire() as conn:
        await conn.execute(
            "INSERT INTO crm_customers (id, first_name, last_name) VALUES ($1, 'Sara', 'Ahmadi')",
            f"cust-{contract_id}",
        )
        await conn.execute(
            "INSERT INTO crm_customer_phone_numbers (customer_id, phone_number, is_primary) VALUES ($1, '09121234567', TRUE)",
            f"cust-{contract_id}",
        )
        await conn.execute(
            """
            INSERT INTO sales_contracts (id, contract_number, customer_id, title, status, total_amount, currency, signatures)
            VALUES ($1, $2, $3, 'Stone supply', $4, 1250000, 'IRR', $5::jsonb)
            """,
            contract_id,
            f"C-{contract_id}",
            f"cust-{contract_id}",
            status,
            json.dumps({"salesRep": {"by": "staff-1"}}),
        )
        await conn.execute(
            "INSERT INTO products (id, name, code) VALUES ($1, 'Travertine slab 2cm', 'TRV-20') ON CONFLICT DO NOTHING",
            "prod-trv",
        )
        await conn.execute(
            """
            INSERT INTO contract_items (contract_id, product_id, description, quantity)
            VALUES ($1, 'prod-trv', 'Travertine slab', 12)
            """,
            contract_id,
        )
        payment_id = await conn.fetchval(
            "INSERT INTO contract_payments (contract_id, amount, payment_date) VALUES ($1, 1250000, '2026-01-10') RETURNING id",
            contract_id,
        )
        await conn.executemany(
            "INSERT INTO payment_installments (payment_id, installment_number, amount, due_date) VALUES ($1, $2, $3, $4)",
            [
                (payment_id, 2, 625000, date(2026, 3, 10)),
                (payment_id, 1, 625000, date(2026, 2, 10)),
            ],
        )


@pytest_asyncio.fixture(scope="function")
async def postgres_pool(postgres_container) -> AsyncIterator[asyncpg.Pool]:
    url = postgres_container.get_connection_url().replace("postgresql+psycopg2", "postgresql")
    pool = await asyncpg.create_pool(dsn=url, min_size=1, max_size=4)
    await _run_migrations(pool)
    await _seed(pool)
    postgres.set_pool(pool)
    try:
        yield pool
    finally:
        postgres.set_pool(None)
        await pool.close()


@pytest.fixture
def pg_store(postgres_pool) -> PostgresConfirmationStore:
    return PostgresConfirmationStore(postgres_pool)


@pytest.fixture
def pg_manager(pg_store, gateway, config, clock) -> ConfirmationSessionManager:
    return ConfirmationSessionManager(pg_store, gateway, config, clock=clock)


@pytest.fixture
def pg_verifier(pg_store, clock) -> OtpVerifier:
    return OtpVerifier(pg_store, clock=clock)


async def test_issue_view_verify_round_trip(pg_manager, pg_verifier, pg_store, postgres_pool, gateway):
    issued = await pg_manager.issue_or_resend("contract-1", "staff-1")
    view = await pg_manager.resolve_by_token(gateway.last_token)
    assert view.contract.customer.display_name == "Sara Ahmadi"
    assert view.contract.items[0]["description"] == "Travertine slab"
    assert view.contract.items[0]["product"] == {"id": "prod-trv", "name": "Travertine slab 2cm", "code": "TRV-20"}
    installments = view.contract.payments[0]["installments"]
    assert [i["installment_number"] for i in installments] == [1, 2]
    assert installments[0]["due_date"] == date(2026, 2, 10)

    verified = await pg_verifier.verify(gateway.last_token, gateway.last_code)
    assert verified.contract_status == "APPROVED"

    async with postgres_pool.acquire() as conn:
        contract = await conn.fetchrow("SELECT status, signatures FROM sales_contracts WHERE id = 'contract-1'")
        session = await conn.fetchrow(
            "SELECT status, token_hash FROM contract_confirmation_sessions WHERE id = $1", issued.session_id
        )
    signatures = json.loads(contract["signatures"])
    assert contract["status"] == "APPROVED"
    assert signatures["digitalConfirmation"]["status"] == "VERIFIED"
    assert signatures["salesRep"] == {"by": "staff-1"}
    assert session["status"] == SessionStatus.VERIFIED.value
    assert session["token_hash"] != gateway.last_token

    async with pg_store.begin() as tx:
        entries = await tx.audit.list_for_contract("contract-1")
    assert [e.event_type for e in entries] == [
        AuditEvent.LINK_CREATED,
        AuditEvent.SMS_SENT,
        AuditEvent.LINK_OPENED,
        AuditEvent.OTP_SUBMITTED,
        AuditEvent.OTP_VERIFIED,
    ]
    assert all(audit.verify_entry_hash(e) for e in entries)


async def test_one_pending_session_per_contract_is_enforced(pg_manager, postgres_pool):
    await pg_manager.issue_or_resend("contract-1", "staff-1")
    await pg_manager.issue_or_resend("contract-1", "staff-1")

    async with postgres_pool.acquire() as conn:
        pending = await conn.fetchval(
            "SELECT count(*) FROM contract_confirmation_sessions WHERE contract_id = 'contract-1' AND status = 'PENDING'"
        )
        with pytest.raises(asyncpg.UniqueViolationError):
            await conn.execute(
                """
                INSERT INTO contract_confirmation_sessions (
                    id, contract_id, token_hash, phone_number, otp_code_hash, otp_expires_at,
                    link_expires_at, status, max_attempts
                )
                VALUES ('dup', 'contract-1', repeat('a', 64), '0912', repeat('b', 64), now(), now(), 'PENDING', 5)
                """
            )
    assert pending == 1


async def test_failed_attempts_persist_and_audit_is_append_only(pg_manager, pg_verifier, postgres_pool, gateway):
    issued = await pg_manager.issue_or_resend("contract-1", "staff-1")
    wrong = "111111" if gateway.last_code != "111111" else "222222"

    with pytest.raises(policy.IncorrectCode):
        await pg_verifier.verify(gateway.last_token, wrong)

    async with postgres_pool.acquire() as conn:
        attempts = await conn.fetchval(
            "SELECT attempts_used FROM contract_confirmation_sessions WHERE id = $1", issued.session_id
        )
        with pytest.raises(asyncpg.PostgresError):
            await conn.execute("UPDATE contract_confirmation_audit_log SET event_type = 'X'")
    assert attempts == 1


async def test_cancel_stamps_contract_and_cancels_sessions(pg_manager, postgres_pool, gateway):
    await pg_manager.issue_or_resend("contract-1", "staff-1")

    result = await pg_manager.cancel("contract-1", "manager-1")

    assert result.sessions_cancelled == 1
    with pytest.raises(policy.LinkCancelled):
        await pg_manager.resolve_by_token(gateway.last_token)
    async with postgres_pool.acquire() as conn:
        row = await conn.fetchrow("SELECT status, signatures FROM sales_contracts WHERE id = 'contract-1'")
    assert row["status"] == "CANCELLED"
    assert json.loads(row["signatures"])["cancellation"]["previousStatus"] == "PENDING_APPROVAL"


async def test_readiness_reports_postgres_and_redis(postgres_pool):
    status_code, payload = await health.readiness()

    assert status_code == 200
    assert payload["checks"]["postgres"]["ok"] is True
    assert payload["checks"]["redis"]["ok"] is True
