"""In-memory confirmation store used by tests and local development."""

from __future__ import annotations

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

from contract_confirm.domain.confirmation.models import (
	AuditEvent,
	AuditLogEntry,
	CancellationStamp,
	ConfirmationSession,
	ContractRecord,
	ContractStatus,
	DigitalConfirmation,
	SessionStatus,
)
from contract_confirm.domain.confirmation.policy import SessionConflict


class InMemoryConfirmationStore:
	"""Single-process store. Transactions are serialised and rolled back from a snapshot."""

	def __init__(self) -> None:
		self.sessions: dict[str, ConfirmationSession] = {}
		self.contracts: dict[str, ContractRecord] = {}
		self.audit: list[AuditLogEntry] = []
		self._audit_ids = itertools.count(1)
		self._lock = asyncio.Lock()

	def add_contract(self, contract: ContractRecord) -> ContractRecord:
		self.contracts[contract.id] = contract
		return contract

	def audit_events(self, contract_id: Optional[str] = None) -> list[AuditEvent]:
		return [entry.event_type for entry in self.audit if contract_id is None or entry.contract_id == contract_id]

	@asynccontextmanager
	async def begin(self) -> AsyncIterator["InMemoryUnitOfWork"]:
		async with self._lock:
			snapshot = copy.deepcopy((self.sessions, self.contracts, self.audit))
			try:
				yield InMemoryUnitOfWork(self)
			except BaseException:
				self.sessions, self.contracts, self.audit = snapshot
				raise


class InMemoryUnitOfWork:
	def __init__(self, store: InMemoryConfirmationStore) -> None:
		self.sessions = InMemorySessionRepository(store)
		self.contracts = InMemoryContractRepository(store)
		self.audit = InMemoryAuditLogRepository(store)


class InMemorySessionRepository:
	def __init__(self, store: InMemoryConfirmationStore) -> None:
		self._store = store

	def _pending(self, session_id: str) -> ConfirmationSession | None:
		session = self._store.sessions.get(session_id)
		if session is None or session.status is not SessionStatus.PENDING:
			return None
		return session

	async def get(self, session_id: str, *, for_update: bool = False) -> ConfirmationSession | None:
		session = self._store.sessions.get(session_id)
		return copy.deepcopy(session) if session else None

	async def get_by_token_hash(self, token_hash: str) -> ConfirmationSession | None:
		for session in self._store.sessions.values():
			if session.token_hash == token_hash:
				return copy.deepcopy(session)
		return None

	async def find_active_pending(self, contract_id: str, now: datetime) -> ConfirmationSession | None:
		candidates = [
			session
			for session in self._store.sessions.values()
			if session.contract_id == contract_id
			and session.status is SessionStatus.PENDING
			and session.link_expires_at > now
		]
		if not candidates:
			return None
		latest = max(candidates, key=lambda item: item.created_at or datetime.min)
		return copy.deepcopy(latest)

	async def latest_for_contract(self, contract_id: str) -> ConfirmationSession | None:
		candidates = [s for s in self._store.sessions.values() if s.contract_id == contract_id]
		if not candidates:
			return None
		return copy.deepcopy(max(candidates, key=lambda item: item.created_at or datetime.min))

	async def insert(self, session: ConfirmationSession) -> ConfirmationSession:
		for existing in self._store.sessions.values():
			if existing.token_hash == session.token_hash:
				raise SessionConflict("token_collision")
			if (
				session.status is SessionStatus.PENDING
				and existing.contract_id == session.contract_id
				and existing.status is SessionStatus.PENDING
			):
				raise SessionConflict("pending_session_exists")
		self._store.sessions[session.id] = copy.deepcopy(session)
		return copy.deepcopy(session)

	async def cancel_pending(self, contract_id: str, cancelled_at: datetime) -> int:
		count = 0
		for session_id, session in list(self._store.sessions.items()):
			if session.contract_id == contract_id and session.status is SessionStatus.PENDING:
				self._store.sessions[session_id] = replace(
					session, status=SessionStatus.CANCELLED, cancelled_at=cancelled_at
				)
				count += 1
		return count

	async def rotate_otp(
		self,
		session_id: str,
		*,
		otp_code_hash: str,
		otp_expires_at: datetime,
		sent_at: datetime,
		token_hash: Optional[str] = None,
	) -> ConfirmationSession | None:
		session = self._pending(session_id)
		if session is None:
			return None
		if token_hash is not None and token_hash != session.token_hash:
			for other in self._store.sessions.values():
				if other.token_hash == token_hash:
					raise SessionConflict("token_collision")
		updated = replace(
			session,
			otp_code_hash=otp_code_hash,
			otp_expires_at=otp_expires_at,
			attempts_used=0,
			resend_count=session.resend_count + 1,
			last_sent_at=sent_at,
			token_hash=token_hash or session.token_hash,
		)
		self._store.sessions[session_id] = updated
		return copy.deepcopy(updated)

	async def record_failed_attempt(
		self,
		session_id: str,
		*,
		attempts_used: int,
		status: SessionStatus,
	) -> ConfirmationSession | None:
		session = self._pending(session_id)
		if session is None or attempts_used <= session.attempts_used:
			return None
		updated = replace(session, attempts_used=attempts_used, status=status)
		self._store.sessions[session_id] = updated
		return copy.deepcopy(updated)

	async def mark_verified(
		self,
		session_id: str,
		*,
		attempts_used: int,
		verified_at: datetime,
	) -> ConfirmationSession | None:
		session = self._pending(session_id)
		if session is None:
			return None
		updated = replace(
			session,
			status=SessionStatus.VERIFIED,
			attempts_used=max(attempts_used, session.attempts_used),
			verified_at=verified_at,
		)
		self._store.sessions[session_id] = updated
		return copy.deepcopy(updated)

	async def mark_expired(self, session_id: str) -> bool:
		session = self._pending(session_id)
		if session is None:
			return False
		self._store.sessions[session_id] = replace(session, status=SessionStatus.EXPIRED)
		return True

	async def expire_stale(self, now: datetime) -> int:
		count = 0
		for session_id, session in list(self._store.sessions.items()):
			if session.status is SessionStatus.PENDING and session.link_expires_at <= now:
				self._store.sessions[session_id] = replace(session, status=SessionStatus.EXPIRED)
				count += 1
		return count


class InMemoryContractRepository:
	def __init__(self, store: InMemoryConfirmationStore) -> None:
		self._store = store

	async def get(
		self,
		contract_id: str,
		*,
		for_update: bool = False,
		include_details: bool = False,
	) -> ContractRecord | None:
		contract = self._store.contracts.get(contract_id)
		return copy.deepcopy(contract) if contract else None

	async def mark_pending_confirmation(self, contract_id: str, stamp: DigitalConfirmation) -> bool:
		contract = self._store.contracts.get(contract_id)
		if contract is None or contract.status != ContractStatus.DRAFT.value:
			return False
		contract.status = ContractStatus.PENDING_APPROVAL.value
		contract.signatures.digital_confirmation = copy.deepcopy(stamp)
		return True

	async def mark_approved(self, contract_id: str, stamp: DigitalConfirmation) -> None:
		contract = self._store.contracts[contract_id]
		contract.status = ContractStatus.APPROVED.value
		contract.signatures.digital_confirmation = copy.deepcopy(stamp)

	async def mark_cancelled(self, contract_id: str, stamp: CancellationStamp) -> None:
		contract = self._store.contracts[contract_id]
		contract.status = ContractStatus.CANCELLED.value
		contract.signatures.cancellation = copy.deepcopy(stamp)


class InMemoryAuditLogRepository:
	def __init__(self, store: InMemoryConfirmationStore) -> None:
		self._store = store

	async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
		stored = replace(entry, id=next(self._store._audit_ids))
		self._store.audit.append(stored)
		return copy.deepcopy(stored)

	async def last_event(
		self,
		contract_id: str,
		event_type: AuditEvent,
		*,
		session_id: Optional[str] = None,
	) -> AuditLogEntry | None:
		for entry in reversed(self._store.audit):
			if entry.contract_id != contract_id or entry.event_type is not event_type:
				continue
			if session_id is not None and entry.session_id != session_id:
				continue
			return copy.deepcopy(entry)
		return None

	async def list_for_contract(self, contract_id: str, *, limit: int = 100) -> Sequence[AuditLogEntry]:
		entries = [copy.deepcopy(e) for e in self._store.audit if e.contract_id == contract_id]
		return entries[-limit:]
