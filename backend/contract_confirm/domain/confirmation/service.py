"""Confirmation session lifecycle: issuance, resend, cancellation, link resolution."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from contract_confirm.domain.confirmation import audit, hashing, policy
from contract_confirm.domain.confirmation.models import (
	AuditEvent,
	CancellationStamp,
	CancelResult,
	ConfirmationSession,
	ConfirmationStatus,
	ContractRecord,
	ContractStatus,
	DigitalConfirmation,
	IssueResult,
	PublicContractView,
	RequestEvidence,
	SessionStatus,
)
from contract_confirm.domain.confirmation.repository import ConfirmationStore
from contract_confirm.domain.confirmation.sms import SmsGateway, SmsSendResult, mask_number
from contract_confirm.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(slots=True)
class _Issued:
	session: ConfirmationSession
	raw_token: str
	contract_status: str


class ConfirmationSessionManager:
	"""Owns the session lifecycle for one contract at a time."""

	def __init__(
		self,
		store: ConfirmationStore,
		gateway: SmsGateway,
		config: policy.ConfirmationConfig,
		*,
		clock: Clock = utc_now,
	) -> None:
		self._store = store
		self._gateway = gateway
		self._config = config
		self._clock = clock

	@property
	def config(self) -> policy.ConfirmationConfig:
		return self._config

	async def issue_or_resend(
		self,
		contract_id: str,
		requested_by: str,
		*,
		resend: bool = False,
		meta: Optional[RequestEvidence] = None,
		raw_token: Optional[str] = None,
	) -> IssueResult:
		"""Create a confirmation session (or rotate the OTP of the active one) and send it.

		``raw_token`` is only known to public callers. When it is given the
		active session must be the one it identifies, and the link is kept.
		Staff resends re-key the token so a working link can be delivered.
		"""
		mode = "resend" if resend else "issue"
		meta = meta or RequestEvidence()
		otp_code = hashing.generate_otp(self._config.otp_length)
		try:
			issued, contract = await self._write_session(
				contract_id, requested_by, resend=resend, otp_code=otp_code, meta=meta, raw_token=raw_token
			)
		except policy.ConfirmationError as exc:
			obs_metrics.inc_confirm_issue(mode, exc.reason)
			raise

		session = issued.session
		public_link = self._config.public_link(issued.raw_token)
		sms_result = await self._dispatch_sms(contract, session.phone_number, otp_code, public_link)

		async with self._store.begin() as tx:
			await audit.append_event(
				tx.audit,
				contract.id,
				AuditEvent.SMS_SENT,
				event_at=self._clock(),
				session_id=session.id,
				payload={"success": sms_result.success, "resend": resend, "error": sms_result.error},
				provider=self._gateway.provider,
				provider_message_id=sms_result.provider_message_id,
				provider_raw_response=sms_result.raw_response,
				meta=meta,
			)

		if not sms_result.success:
			obs_metrics.inc_confirm_issue(mode, "sms_failed")
			logger.warning(
				"confirmation_sms_failed",
				extra={"contract_id": contract.id, "session_id": session.id, "error": sms_result.error},
			)
			raise policy.DownstreamFailure(sms_result.error)

		obs_metrics.inc_confirm_issue(mode, "ok")
		logger.info(
			"confirmation_issued",
			extra={
				"contract_id": contract.id,
				"session_id": session.id,
				"mode": mode,
				"requested_by": requested_by,
				"resend_count": session.resend_count,
			},
		)
		return IssueResult(
			contract_id=contract.id,
			contract_status=issued.contract_status,
			session_id=session.id,
			phone_number=session.phone_number,
			public_link=public_link,
			link_expires_at=session.link_expires_at,
			otp_expires_at=session.otp_expires_at,
			resend_count=session.resend_count,
			message_id=sms_result.provider_message_id,
		)

	async def _write_session(
		self,
		contract_id: str,
		requested_by: str,
		*,
		resend: bool,
		otp_code: str,
		meta: RequestEvidence,
		raw_token: Optional[str],
	) -> tuple[_Issued, ContractRecord]:
		now = self._clock()
		otp_hash = hashing.hash_value(otp_code)
		async with self._store.begin() as tx:
			contract = await tx.contracts.get(contract_id, for_update=True)
			if contract is None:
				raise policy.ConfirmationNotFound()
			if contract.status == ContractStatus.CANCELLED.value:
				raise policy.ContractCancelled()
			phone_number = policy.resolve_customer_phone(contract.customer)
			if not phone_number:
				raise policy.ValidationFailed("phone_missing", "Customer has no phone number on file")

			active = await tx.sessions.find_active_pending(contract.id, now)
			if raw_token is not None and (
				active is None or not hashing.digests_match(hashing.hash_value(raw_token), active.token_hash)
			):
				raise policy.SessionExpired()

			if resend and active is not None:
				retry_after = policy.cooldown_remaining(
					active.last_sent_at, now, self._config.resend_cooldown_seconds
				)
				if retry_after > 0:
					raise policy.Throttled(retry_after)
				token = raw_token or hashing.generate_public_token()
				session = await tx.sessions.rotate_otp(
					active.id,
					otp_code_hash=otp_hash,
					otp_expires_at=now + self._config.otp_ttl,
					sent_at=now,
					token_hash=None if raw_token else hashing.hash_value(token),
				)
				if session is None:
					raise policy.SessionConflict("session_changed")
			else:
				superseded = await tx.sessions.cancel_pending(contract.id, now)
				token = hashing.generate_public_token()
				session = await tx.sessions.insert(
					ConfirmationSession(
						id=str(uuid.uuid4()),
						contract_id=contract.id,
						token_hash=hashing.hash_value(token),
						phone_number=phone_number,
						otp_code_hash=otp_hash,
						otp_expires_at=now + self._config.otp_ttl,
						link_expires_at=now + self._config.link_ttl,
						status=SessionStatus.PENDING,
						max_attempts=self._config.max_attempts,
						attempts_used=0,
						resend_count=0,
						last_sent_at=now,
						created_by=requested_by,
						created_at=now,
					)
				)
				if superseded:
					logger.info(
						"confirmation_sessions_superseded",
						extra={"contract_id": contract.id, "count": superseded},
					)

			await audit.append_event(
				tx.audit,
				contract.id,
				AuditEvent.LINK_CREATED,
				event_at=now,
				session_id=session.id,
				payload={
					"linkExpiresAt": session.link_expires_at.isoformat(),
					"otpExpiresAt": session.otp_expires_at.isoformat(),
					"resend": resend,
					"resendCount": session.resend_count,
					"requestedBy": requested_by,
				},
				meta=meta,
			)

			contract_status = contract.status
			if contract.status == ContractStatus.DRAFT.value:
				moved = await tx.contracts.mark_pending_confirmation(
					contract.id,
					DigitalConfirmation(
						status=SessionStatus.PENDING,
						session_id=session.id,
						phone_number=session.phone_number,
						sent_at=now,
					),
				)
				if moved:
					contract_status = ContractStatus.PENDING_APPROVAL.value
		return _Issued(session=session, raw_token=token, contract_status=contract_status), contract

	async def _dispatch_sms(
		self,
		contract: ContractRecord,
		phone_number: str,
		otp_code: str,
		public_link: str,
	) -> SmsSendResult:
		parameters = {
			"Code": otp_code,
			"Name": contract.customer.display_name,
			"ContractNumber": contract.contract_number,
			"Link": public_link,
		}
		start = time.perf_counter()
		try:
			result = await self._gateway.send(phone_number, self._config.sms_template_id, parameters)
		except Exception as exc:  # pragma: no cover - adapters return failure results
			logger.exception("confirmation_sms_gateway_error", extra={"to_masked": mask_number(phone_number)})
			result = SmsSendResult(success=False, error=type(exc).__name__)
		obs_metrics.observe_sms(self._gateway.provider, result.success, time.perf_counter() - start)
		return result

	async def resend_from_public_token(
		self,
		raw_token: str,
		meta: Optional[RequestEvidence] = None,
	) -> IssueResult:
		"""Rotate the OTP for the link holder. The link itself never changes here."""
		raw_token = policy.guard_token_shape(raw_token)
		now = self._clock()
		async with self._store.begin() as tx:
			session = await tx.sessions.get_by_token_hash(hashing.hash_value(raw_token))
		if session is None:
			raise policy.InvalidLink()
		if not session.is_pending():
			raise policy.error_for_status(session.status)
		if session.link_expired(now):
			raise policy.LinkExpired()
		return await self.issue_or_resend(
			session.contract_id,
			policy.PUBLIC_RESEND_ACTOR,
			resend=True,
			meta=meta,
			raw_token=raw_token,
		)

	async def cancel(
		self,
		contract_id: str,
		requested_by: str,
		*,
		allow_cancel_after_approval: bool = False,
		meta: Optional[RequestEvidence] = None,
	) -> CancelResult:
		now = self._clock()
		async with self._store.begin() as tx:
			contract = await tx.contracts.get(contract_id, for_update=True)
			if contract is None:
				raise policy.ConfirmationNotFound()
			if contract.status == ContractStatus.CANCELLED.value:
				obs_metrics.inc_confirm_cancel("noop")
				return CancelResult(contract_id=contract.id, status=contract.status, already_cancelled=True)
			if contract.status == ContractStatus.APPROVED.value and not allow_cancel_after_approval:
				obs_metrics.inc_confirm_cancel("locked")
				raise policy.ApprovedContractLocked()

			previous_status = contract.status
			await tx.contracts.mark_cancelled(
				contract.id,
				CancellationStamp(by=requested_by, at=now, previous_status=previous_status),
			)
			cancelled = await tx.sessions.cancel_pending(contract.id, now)
			await audit.append_event(
				tx.audit,
				contract.id,
				AuditEvent.CONTRACT_CANCELLED,
				event_at=now,
				payload={
					"cancelledBy": requested_by,
					"previousStatus": previous_status,
					"sessionsCancelled": cancelled,
				},
				meta=meta,
			)
		obs_metrics.inc_confirm_cancel("ok")
		logger.info(
			"contract_cancelled",
			extra={"contract_id": contract_id, "previous_status": previous_status, "sessions_cancelled": cancelled},
		)
		return CancelResult(
			contract_id=contract_id,
			status=ContractStatus.CANCELLED.value,
			sessions_cancelled=cancelled,
		)

	async def resolve_by_token(
		self,
		raw_token: str,
		meta: Optional[RequestEvidence] = None,
	) -> PublicContractView:
		"""Return the read-only contract projection for a public link."""
		try:
			raw_token = policy.guard_token_shape(raw_token)
		except policy.InvalidLink:
			obs_metrics.inc_link_open("invalid_link")
			raise
		now = self._clock()
		error: Optional[policy.ConfirmationError] = None
		view: Optional[PublicContractView] = None
		async with self._store.begin() as tx:
			session = await tx.sessions.get_by_token_hash(hashing.hash_value(raw_token))
			contract = await tx.contracts.get(session.contract_id, include_details=True) if session else None
			if session is None or contract is None:
				error = policy.InvalidLink()
			elif session.status is SessionStatus.CANCELLED:
				error = policy.LinkCancelled()
			elif session.link_expired(now):
				if session.is_pending():
					await tx.sessions.mark_expired(session.id)
				error = policy.LinkExpired()
			else:
				await audit.append_event(
					tx.audit,
					contract.id,
					AuditEvent.LINK_OPENED,
					event_at=now,
					session_id=session.id,
					payload={"status": session.status.value},
					meta=meta,
				)
				view = PublicContractView(
					session_id=session.id,
					session_status=session.status,
					contract_status=contract.status,
					otp_expires_at=session.otp_expires_at,
					link_expires_at=session.link_expires_at,
					contract=contract,
					customer_phone=mask_number(session.phone_number),
				)
		if error is not None:
			obs_metrics.inc_link_open(error.reason)
			raise error
		assert view is not None
		obs_metrics.inc_link_open("ok")
		return view

	async def get_status(self, contract_id: str) -> ConfirmationStatus:
		async with self._store.begin() as tx:
			contract = await tx.contracts.get(contract_id)
			if contract is None:
				raise policy.ConfirmationNotFound()
			session = await tx.sessions.latest_for_contract(contract_id)
			opened = None
			if session is not None:
				opened = await tx.audit.last_event(contract_id, AuditEvent.LINK_OPENED, session_id=session.id)
		return ConfirmationStatus(
			contract_id=contract.id,
			contract_status=contract.status,
			session_status=session.status if session else None,
			phone_number=session.phone_number if session else None,
			link_expires_at=session.link_expires_at if session else None,
			otp_expires_at=session.otp_expires_at if session else None,
			attempts_used=session.attempts_used if session else 0,
			max_attempts=session.max_attempts if session else self._config.max_attempts,
			resend_count=session.resend_count if session else 0,
			last_sent_at=session.last_sent_at if session else None,
			last_opened_at=opened.event_at if opened else None,
			verified_at=session.verified_at if session else None,
		)
