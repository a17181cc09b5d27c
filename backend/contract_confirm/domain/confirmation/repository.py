"""Storage contracts for confirmation sessions, contracts, and the audit trail.

All session mutators only touch rows that are still ``PENDING`` and return
``None`` (or a zero count) when the row has already left that state, so a
session can never move back out of a terminal status.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol, Sequence

from contract_confirm.domain.confirmation.models import (
	AuditEvent,
	AuditLogEntry,
	CancellationStamp,
	ConfirmationSession,
	ContractRecord,
	DigitalConfirmation,
	SessionStatus,
)


class ConfirmationSessionRepository(Protocol):
	async def get(self, session_id: str, *, for_update: bool = False) -> ConfirmationSession | None:
		...

	async def get_by_token_hash(self, token_hash: str) -> ConfirmationSession | None:
		...

	async def find_active_pending(self, contract_id: str, now: datetime) -> ConfirmationSession | None:
		...

	async def latest_for_contract(self, contract_id: str) -> ConfirmationSession | None:
		...

	async def insert(self, session: ConfirmationSession) -> ConfirmationSession:
		...

	async def cancel_pending(self, contract_id: str, cancelled_at: datetime) -> int:
		...

	async def rotate_otp(
		self,
		session_id: str,
		*,
		otp_code_hash: str,
		otp_expires_at: datetime,
		sent_at: datetime,
		token_hash: Optional[str] = None,
	) -> ConfirmationSession | None:
		...

	async def record_failed_attempt(
		self,
		session_id: str,
		*,
		attempts_used: int,
		status: SessionStatus,
	) -> ConfirmationSession | None:
		...

	async def mark_verified(
		self,
		session_id: str,
		*,
		attempts_used: int,
		verified_at: datetime,
	) -> ConfirmationSession | None:
		...

	async def mark_expired(self, session_id: str) -> bool:
		...

	async def expire_stale(self, now: datetime) -> int:
		...


class ContractRepository(Protocol):
	async def get(
		self,
		contract_id: str,
		*,
		for_update: bool = False,
		include_details: bool = False,
	) -> ContractRecord | None:
		...

	async def mark_pending_confirmation(self, contract_id: str, stamp: DigitalConfirmation) -> bool:
		"""Move a ``DRAFT`` contract to ``PENDING_APPROVAL``; no-op for any other status."""

	async def mark_approved(self, contract_id: str, stamp: DigitalConfirmation) -> None:
		...

	async def mark_cancelled(self, contract_id: str, stamp: CancellationStamp) -> None:
		...


class AuditLogRepository(Protocol):
	async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
		...

	async def last_event(
		self,
		contract_id: str,
		event_type: AuditEvent,
		*,
		session_id: Optional[str] = None,
	) -> AuditLogEntry | None:
		...

	async def list_for_contract(self, contract_id: str, *, limit: int = 100) -> Sequence[AuditLogEntry]:
		...


class ConfirmationUnitOfWork(Protocol):
	sessions: ConfirmationSessionRepository
	contracts: ContractRepository
	audit: AuditLogRepository


class ConfirmationStore(Protocol):
	def begin(self) -> AsyncContextManager[ConfirmationUnitOfWork]:
		"""Open a transaction; commits on clean exit, rolls back when the block raises."""
