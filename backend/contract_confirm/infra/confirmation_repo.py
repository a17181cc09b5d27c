"""PostgreSQL persistence for confirmation sessions, contracts and the audit log.

Contract, customer, item, product, delivery, payment and installment rows
belong to the sales/CRM schema; this module only reads them and stamps
``status``/``signatures`` on ``sales_contracts``.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence

import asyncpg

from contract_confirm.domain.confirmation.models import (
    AuditEvent,
    AuditLogEntry,
    CancellationStamp,
    ConfirmationSession,
    ContractRecord,
    ContractSignatures,
    ContractStatus,
    CustomerProjection,
    DigitalConfirmation,
    PhoneRecord,
    PrimaryContact,
    SessionStatus,
    coerce_json,
)
from contract_confirm.domain.confirmation.policy import SessionConflict

_SESSION_COLUMNS = """
    id, contract_id, token_hash, phone_number, otp_code_hash, otp_expires_at, link_expires_at,
    status, attempts_used, max_attempts, resend_count, last_sent_at, verified_at, cancelled_at,
    created_by, created_at
"""

_AUDIT_COLUMNS = """
    id, contract_id, session_id, event_type, event_payload, provider, provider_message_id,
    provider_raw_response, ip_address, user_agent, accept_language, device_fingerprint, referrer,
    event_at, event_hash
"""


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _parse_update_count(status: str) -> int:
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _jsonable_rows(rows: Sequence[asyncpg.Record]) -> list[dict[str, Any]]:
    return [dict(row) for row in rows]


def _to_session(row: asyncpg.Record | None) -> ConfirmationSession | None:
    return ConfirmationSession.from_record(row) if row is not None else None


class PostgresSessionRepository:
    """Stores sessions in contract_confirmation_sessions."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get(self, session_id: str, *, for_update: bool = False) -> ConfirmationSession | None:
        lock = " FOR UPDATE" if for_update else ""
        row = await self._conn.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM contract_confirmation_sessions WHERE id = $1{lock}",
            session_id,
        )
        return _to_session(row)

    async def get_by_token_hash(self, token_hash: str) -> ConfirmationSession | None:
        row = await self._conn.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM contract_confirmation_sessions WHERE token_hash = $1",
            token_hash,
        )
        return _to_session(row)

    async def find_active_pending(self, contract_id: str, now: datetime) -> ConfirmationSession | None:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM contract_confirmation_sessions
            WHERE contract_id = $1 AND status = 'PENDING' AND link_expires_at > $2
            ORDER BY created_at DESC
            LIMIT 1
            """,
            contract_id,
            now,
        )
        return _to_session(row)

    async def latest_for_contract(self, contract_id: str) -> ConfirmationSession | None:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM contract_confirmation_sessions
            WHERE contract_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            contract_id,
        )
        return _to_session(row)

    async def insert(self, session: ConfirmationSession) -> ConfirmationSession:
        try:
            row = await self._conn.fetchrow(
                f"""
                INSERT INTO contract_confirmation_sessions (
                    id, contract_id, token_hash, phone_number, otp_code_hash, otp_expires_at,
                    link_expires_at, status, attempts_used, max_attempts, resend_count, last_sent_at,
                    created_by, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, COALESCE($14, now()))
                RETURNING {_SESSION_COLUMNS}
                """,
                session.id,
                session.contract_id,
                session.token_hash,
                session.phone_number,
                session.otp_code_hash,
                session.otp_expires_at,
                session.link_expires_at,
                session.status.value,
                session.attempts_used,
                session.max_attempts,
                session.resend_count,
                session.last_sent_at,
                session.created_by,
                session.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            if "token_hash" in (exc.constraint_name or ""):
                raise SessionConflict("token_collision") from exc
            raise SessionConflict("pending_session_exists") from exc
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert confirmation session")
        return ConfirmationSession.from_record(row)

    async def cancel_pending(self, contract_id: str, cancelled_at: datetime) -> int:
        status = await self._conn.execute(
            """
            UPDATE contract_confirmation_sessions
            SET status = 'CANCELLED', cancelled_at = $2
            WHERE contract_id = $1 AND status = 'PENDING'
            """,
            contract_id,
            cancelled_at,
        )
        return _parse_update_count(status)

    async def rotate_otp(
        self,
        session_id: str,
        *,
        otp_code_hash: str,
        otp_expires_at: datetime,
        sent_at: datetime,
        token_hash: Optional[str] = None,
    ) -> ConfirmationSession | None:
        try:
            row = await self._conn.fetchrow(
                f"""
                UPDATE contract_confirmation_sessions
                SET otp_code_hash = $2,
                    otp_expires_at = $3,
                    attempts_used = 0,
                    resend_count = resend_count + 1,
                    last_sent_at = $4,
                    token_hash = COALESCE($5, token_hash)
                WHERE id = $1 AND status = 'PENDING'
                RETURNING {_SESSION_COLUMNS}
                """,
                session_id,
                otp_code_hash,
                otp_expires_at,
                sent_at,
                token_hash,
            )
        except asyncpg.UniqueViolationError as exc:
            raise SessionConflict("token_collision") from exc
        return _to_session(row)

    async def record_failed_attempt(
        self,
        session_id: str,
        *,
        attempts_used: int,
        status: SessionStatus,
    ) -> ConfirmationSession | None:
        row = await self._conn.fetchrow(
            f"""
            UPDATE contract_confirmation_sessions
            SET attempts_used = $2, status = $3
            WHERE id = $1 AND status = 'PENDING' AND attempts_used < $2
            RETURNING {_SESSION_COLUMNS}
            """,
            session_id,
            attempts_used,
            status.value,
        )
        return _to_session(row)

    async def mark_verified(
        self,
        session_id: str,
        *,
        attempts_used: int,
        verified_at: datetime,
    ) -> ConfirmationSession | None:
        row = await self._conn.fetchrow(
            f"""
            UPDATE contract_confirmation_sessions
            SET status = 'VERIFIED', verified_at = $3, attempts_used = GREATEST(attempts_used, $2)
            WHERE id = $1 AND status = 'PENDING'
            RETURNING {_SESSION_COLUMNS}
            """,
            session_id,
            attempts_used,
            verified_at,
        )
        return _to_session(row)

    async def mark_expired(self, session_id: str) -> bool:
        status = await self._conn.execute(
            "UPDATE contract_confirmation_sessions SET status = 'EXPIRED' WHERE id = $1 AND status = 'PENDING'",
            session_id,
        )
        return _parse_update_count(status) > 0

    async def expire_stale(self, now: datetime) -> int:
        status = await self._conn.execute(
            """
            UPDATE contract_confirmation_sessions
            SET status = 'EXPIRED'
            WHERE status = 'PENDING' AND link_expires_at <= $1
            """,
            now,
        )
        return _parse_update_count(status)


class PostgresContractRepository:
    """Reads sales_contracts plus its CRM customer and stamps confirmation outcomes."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get(
        self,
        contract_id: str,
        *,
        for_update: bool = False,
        include_details: bool = False,
    ) -> ContractRecord | None:
        lock = " FOR UPDATE OF c" if for_update else ""
        row = await self._conn.fetchrow(
            f"""
            SELECT c.id, c.contract_number, c.title, c.title_persian, c.contract_data, c.status,
                   c.total_amount, c.currency, c.created_at, c.signatures, c.customer_id,
                   cu.first_name, cu.last_name, cu.company_name, cu.home_number, cu.work_number,
                   cu.project_manager_number
            FROM sales_contracts c
            LEFT JOIN crm_customers cu ON cu.id = c.customer_id
            WHERE c.id = $1{lock}
            """,
            contract_id,
        )
        if row is None:
            return None
        customer = await self._load_customer(row)
        record = ContractRecord(
            id=str(row["id"]),
            contract_number=str(row["contract_number"]),
            status=str(row["status"]),
            customer=customer,
            title=row["title"],
            title_persian=row["title_persian"],
            contract_data=coerce_json(row["contract_data"]),
            total_amount=row["total_amount"],
            currency=row["currency"],
            created_at=row["created_at"],
            signatures=ContractSignatures.from_json(row["signatures"]),
        )
        if include_details:
            record.items = await self._load_items(contract_id)
            record.deliveries = _jsonable_rows(
                await self._conn.fetch(
                    "SELECT * FROM contract_deliveries WHERE contract_id = $1 ORDER BY delivery_date",
                    contract_id,
                )
            )
            record.payments = await self._load_payments(contract_id)
        return record

    async def _load_items(self, contract_id: str) -> list[dict[str, Any]]:
        rows = await self._conn.fetch(
            """
            SELECT i.*, p.name AS product_name, p.code AS product_code
            FROM contract_items i
            LEFT JOIN products p ON p.id = i.product_id
            WHERE i.contract_id = $1
            ORDER BY i.created_at
            """,
            contract_id,
        )
        items: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            name = item.pop("product_name")
            code = item.pop("product_code")
            item["product"] = {"id": item["product_id"], "name": name, "code": code} if item.get("product_id") else None
            items.append(item)
        return items

    async def _load_payments(self, contract_id: str) -> list[dict[str, Any]]:
        payments = _jsonable_rows(
            await self._conn.fetch(
                "SELECT * FROM contract_payments WHERE contract_id = $1 ORDER BY payment_date",
                contract_id,
            )
        )
        if not payments:
            return payments
        installments = await self._conn.fetch(
            """
            SELECT *
            FROM payment_installments
            WHERE payment_id::text = ANY($1::text[])
            ORDER BY payment_id, installment_number
            """,
            [str(p["id"]) for p in payments],
        )
        by_payment: dict[str, list[dict[str, Any]]] = {}
        for row in installments:
            by_payment.setdefault(str(row["payment_id"]), []).append(dict(row))
        for payment in payments:
            payment["installments"] = by_payment.get(str(payment["id"]), [])
        return payments

    async def _load_customer(self, row: asyncpg.Record) -> CustomerProjection:
        customer_id = row["customer_id"]
        if customer_id is None:
            return CustomerProjection()
        phones = await self._conn.fetch(
            """
            SELECT phone_number, is_primary
            FROM crm_customer_phone_numbers
            WHERE customer_id = $1
            ORDER BY created_at
            """,
            customer_id,
        )
        contact = await self._conn.fetchrow(
            """
            SELECT mobile, phone
            FROM crm_customer_contacts
            WHERE customer_id = $1 AND is_primary = TRUE
            ORDER BY created_at
            LIMIT 1
            """,
            customer_id,
        )
        return CustomerProjection(
            first_name=row["first_name"],
            last_name=row["last_name"],
            company_name=row["company_name"],
            home_number=row["home_number"],
            work_number=row["work_number"],
            project_manager_number=row["project_manager_number"],
            phone_numbers=[PhoneRecord(number=p["phone_number"], is_primary=bool(p["is_primary"])) for p in phones],
            primary_contact=PrimaryContact(mobile=contact["mobile"], phone=contact["phone"]) if contact else None,
        )

    async def _stamp(self, contract_id: str, status: str, key: str, value: dict[str, Any], *, only_from: Optional[str] = None) -> int:
        guard = " AND status = $5" if only_from else ""
        args: list[Any] = [contract_id, status, key, _dump(value)]
        if only_from:
            args.append(only_from)
        result = await self._conn.execute(
            f"""
            UPDATE sales_contracts
            SET status = $2,
                signatures = COALESCE(signatures, '{{}}'::jsonb) || jsonb_build_object($3::text, $4::jsonb),
                updated_at = now()
            WHERE id = $1{guard}
            """,
            *args,
        )
        return _parse_update_count(result)

    async def mark_pending_confirmation(self, contract_id: str, stamp: DigitalConfirmation) -> bool:
        updated = await self._stamp(
            contract_id,
            ContractStatus.PENDING_APPROVAL.value,
            ContractSignatures.DIGITAL_CONFIRMATION_KEY,
            stamp.to_dict(),
            only_from=ContractStatus.DRAFT.value,
        )
        return updated > 0

    async def mark_approved(self, contract_id: str, stamp: DigitalConfirmation) -> None:
        updated = await self._stamp(
            contract_id,
            ContractStatus.APPROVED.value,
            ContractSignatures.DIGITAL_CONFIRMATION_KEY,
            stamp.to_dict(),
        )
        if updated == 0:
            raise RuntimeError(f"contract {contract_id} disappeared during approval")

    async def mark_cancelled(self, contract_id: str, stamp: CancellationStamp) -> None:
        await self._stamp(
            contract_id,
            ContractStatus.CANCELLED.value,
            ContractSignatures.CANCELLATION_KEY,
            stamp.to_dict(),
        )


class PostgresAuditLogRepository:
    """Append-only writer for contract_confirmation_audit_log."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        evidence = entry.evidence
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO contract_confirmation_audit_log (
                contract_id, session_id, event_type, event_payload, provider, provider_message_id,
                provider_raw_response, ip_address, user_agent, accept_language, device_fingerprint,
                referrer, event_at, event_hash
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13, $14)
            RETURNING {_AUDIT_COLUMNS}
            """,
            entry.contract_id,
            entry.session_id,
            entry.event_type.value,
            _dump(entry.payload),
            entry.provider,
            entry.provider_message_id,
            _dump(entry.provider_raw_response),
            evidence.ip_address,
            evidence.user_agent,
            evidence.accept_language,
            evidence.device_fingerprint,
            evidence.referrer,
            entry.event_at,
            entry.event_hash,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to append audit entry")
        return AuditLogEntry.from_record(row)

    async def last_event(
        self,
        contract_id: str,
        event_type: AuditEvent,
        *,
        session_id: Optional[str] = None,
    ) -> AuditLogEntry | None:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_AUDIT_COLUMNS}
            FROM contract_confirmation_audit_log
            WHERE contract_id = $1 AND event_type = $2 AND ($3::text IS NULL OR session_id = $3)
            ORDER BY event_at DESC, id DESC
            LIMIT 1
            """,
            contract_id,
            event_type.value,
            session_id,
        )
        return AuditLogEntry.from_record(row) if row is not None else None

    async def list_for_contract(self, contract_id: str, *, limit: int = 100) -> Sequence[AuditLogEntry]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_AUDIT_COLUMNS}
            FROM contract_confirmation_audit_log
            WHERE contract_id = $1
            ORDER BY event_at DESC, id DESC
            LIMIT $2
            """,
            contract_id,
            limit,
        )
        return [AuditLogEntry.from_record(row) for row in reversed(rows)]


class PostgresUnitOfWork:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self.sessions = PostgresSessionRepository(conn)
        self.contracts = PostgresContractRepository(conn)
        self.audit = PostgresAuditLogRepository(conn)


class PostgresConfirmationStore:
    """One asyncpg transaction per unit of work."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[PostgresUnitOfWork]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)
