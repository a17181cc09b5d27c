"""OTP verification for public confirmation links."""

from __future__ import annotations

import logging
from typing import Optional

from contract_confirm.domain.confirmation import audit, hashing, policy
from contract_confirm.domain.confirmation.models import (
	AuditEvent,
	ContractStatus,
	DigitalConfirmation,
	RequestEvidence,
	SessionStatus,
	VerifyResult,
)
from contract_confirm.domain.confirmation.repository import ConfirmationStore
from contract_confirm.domain.confirmation.service import Clock, utc_now
from contract_confirm.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class OtpVerifier:
	"""Checks a submitted code against a session and approves the contract on success.

	Failure-path audit entries and counters are committed before the error is
	raised. The success path commits session, contract and audit together, or
	nothing at all.
	"""

	def __init__(self, store: ConfirmationStore, *, clock: Clock = utc_now) -> None:
		self._store = store
		self._clock = clock

	async def verify(
		self,
		raw_token: str,
		submitted_code: object,
		meta: Optional[RequestEvidence] = None,
	) -> VerifyResult:
		try:
			raw_token = policy.guard_token_shape(raw_token)
		except policy.ConfirmationError as exc:
			obs_metrics.inc_confirm_verify(exc.reason)
			raise
		# an unknown link answers invalid_link whatever the code looks like
		code_error: Optional[policy.ConfirmationError] = None
		code = ""
		try:
			code = policy.normalise_code(submitted_code)
		except policy.ConfirmationError as exc:
			code_error = exc
		meta = meta or RequestEvidence()
		token_hash = hashing.hash_value(raw_token)
		now = self._clock()
		error: Optional[policy.ConfirmationError] = None
		result: Optional[VerifyResult] = None

		async with self._store.begin() as tx:
			peek = await tx.sessions.get_by_token_hash(token_hash)
			if peek is not None:
				# lock order is contract then session, same as issuance and cancel
				await tx.contracts.get(peek.contract_id, for_update=True)
				session = await tx.sessions.get(peek.id, for_update=True)
			else:
				session = None

			if session is None:
				error = policy.InvalidLink()
			elif code_error is not None:
				error = code_error
			elif session.is_pending() and session.link_expired(now):
				await tx.sessions.mark_expired(session.id)
				error = policy.LinkExpired()
			elif not session.is_pending():
				error = policy.error_for_status(session.status)
			else:
				await audit.append_event(
					tx.audit,
					session.contract_id,
					AuditEvent.OTP_SUBMITTED,
					event_at=now,
					session_id=session.id,
					payload={"codeLength": len(code)},
					meta=meta,
				)
				if session.otp_expired(now):
					error = policy.CodeExpired()
				elif session.attempts_exhausted():
					error = policy.AttemptsExhausted()
				elif not hashing.digests_match(hashing.hash_value(code), session.otp_code_hash):
					attempts = session.attempts_used + 1
					locked = attempts >= session.max_attempts
					updated = await tx.sessions.record_failed_attempt(
						session.id,
						attempts_used=attempts,
						status=SessionStatus.EXPIRED if locked else SessionStatus.PENDING,
					)
					if updated is None:
						raise policy.SessionConflict("session_changed")
					await audit.append_event(
						tx.audit,
						session.contract_id,
						AuditEvent.OTP_FAILED,
						event_at=now,
						session_id=session.id,
						payload={"attemptsUsed": attempts, "maxAttempts": session.max_attempts, "locked": locked},
						meta=meta,
					)
					error = policy.IncorrectCode(attempts_remaining=max(0, session.max_attempts - attempts))
				else:
					verified = await tx.sessions.mark_verified(
						session.id,
						attempts_used=session.attempts_used + 1,
						verified_at=now,
					)
					if verified is None:
						raise policy.SessionConflict("session_changed")
					await tx.contracts.mark_approved(
						session.contract_id,
						DigitalConfirmation(
							status=SessionStatus.VERIFIED,
							session_id=session.id,
							phone_number=session.phone_number,
							verified_at=now,
						),
					)
					await audit.append_event(
						tx.audit,
						session.contract_id,
						AuditEvent.OTP_VERIFIED,
						event_at=now,
						session_id=session.id,
						payload={"attemptsUsed": verified.attempts_used},
						meta=meta,
					)
					result = VerifyResult(
						contract_id=session.contract_id,
						session_id=session.id,
						contract_status=ContractStatus.APPROVED.value,
						verified_at=now,
					)

		if error is not None:
			obs_metrics.inc_confirm_verify(error.reason)
			logger.info("confirmation_verify_rejected", extra={"reason": error.reason})
			raise error
		assert result is not None
		obs_metrics.inc_confirm_verify("ok")
		logger.info(
			"confirmation_verified",
			extra={"contract_id": result.contract_id, "session_id": result.session_id},
		)
		return result
