"""Policy constants, errors, and guards for the confirmation workflow."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from contract_confirm.domain.confirmation.models import CustomerProjection, SessionStatus

MIN_TOKEN_LENGTH = 32
CODE_MIN_LEN = 4
CODE_MAX_LEN = 8
PUBLIC_RESEND_ACTOR = "public-resend"
CANCEL_APPROVED_ROLES = frozenset({"admin", "contracts.cancel_approved"})


class ConfirmationError(ValueError):
	"""Raised when a confirmation operation cannot proceed.

	``reason`` is a stable machine-readable code; ``message`` is safe to show
	to the link holder.
	"""

	http_status = 400
	default_message = "Confirmation request failed"

	def __init__(self, reason: str, message: Optional[str] = None):
		super().__init__(reason)
		self.reason = reason
		self.message = message or self.default_message


class ConfirmationNotFound(ConfirmationError):
	http_status = 404
	default_message = "Contract not found"

	def __init__(self, reason: str = "contract_not_found", message: Optional[str] = None):
		super().__init__(reason, message)


class InvalidLink(ConfirmationNotFound):
	"""Unknown, malformed or otherwise unusable token. Always the same message."""

	http_status = 400
	default_message = "Invalid confirmation link"

	def __init__(self) -> None:
		super().__init__("invalid_link")


class InvalidState(ConfirmationError):
	default_message = "This confirmation link is no longer usable"


class ContractCancelled(InvalidState):
	default_message = "This contract has been cancelled"

	def __init__(self) -> None:
		super().__init__("contract_cancelled")


class AlreadyVerified(InvalidState):
	default_message = "This contract has already been confirmed"

	def __init__(self) -> None:
		super().__init__("already_verified")


class SessionExpired(InvalidState):
	def __init__(self) -> None:
		super().__init__("session_expired")


class LinkCancelled(InvalidState):
	default_message = "This confirmation link has been cancelled"

	def __init__(self) -> None:
		super().__init__("link_cancelled")


class ApprovedContractLocked(InvalidState):
	default_message = "Approved contracts can only be cancelled with elevated permission"

	def __init__(self) -> None:
		super().__init__("approved_contract_locked")


class SessionConflict(InvalidState):
	"""A concurrent writer changed the session or token uniqueness was violated."""

	default_message = "Confirmation session changed concurrently; retry"


class Expired(ConfirmationError):
	pass


class LinkExpired(Expired):
	default_message = "This confirmation link has expired"

	def __init__(self) -> None:
		super().__init__("link_expired")


class CodeExpired(Expired):
	default_message = "The verification code has expired; request a new code"

	def __init__(self) -> None:
		super().__init__("code_expired")


class AttemptsExhausted(ConfirmationError):
	default_message = "Too many incorrect attempts; request a new code"

	def __init__(self) -> None:
		super().__init__("attempts_exhausted")


class IncorrectCode(ConfirmationError):
	default_message = "Incorrect verification code"

	def __init__(self, attempts_remaining: int = 0) -> None:
		super().__init__("code_incorrect")
		self.attempts_remaining = attempts_remaining


class Throttled(ConfirmationError):
	def __init__(self, retry_after_seconds: int) -> None:
		super().__init__(
			"resend_throttled",
			f"Please wait {retry_after_seconds} seconds before requesting a new code",
		)
		self.retry_after_seconds = retry_after_seconds


class ValidationFailed(ConfirmationError):
	default_message = "Invalid request"


class DownstreamFailure(ConfirmationError):
	"""The SMS provider rejected or failed the send. Session state is already committed."""

	default_message = "Failed to send confirmation SMS"

	def __init__(self, detail: Optional[str] = None) -> None:
		super().__init__("sms_failed")
		self.detail = detail


@dataclass(frozen=True, slots=True)
class ConfirmationConfig:
	frontend_url: str = "http://localhost:3000"
	link_ttl: timedelta = timedelta(days=60)
	otp_ttl: timedelta = timedelta(minutes=10)
	max_attempts: int = 5
	resend_cooldown_seconds: int = 60
	otp_length: int = 6
	sms_template_id: int = 123456

	@classmethod
	def from_settings(cls, settings) -> "ConfirmationConfig":
		return cls(
			frontend_url=settings.frontend_url,
			link_ttl=timedelta(days=settings.confirm_link_ttl_days),
			otp_ttl=timedelta(minutes=settings.confirm_otp_ttl_minutes),
			max_attempts=settings.confirm_max_attempts,
			resend_cooldown_seconds=settings.confirm_resend_cooldown_seconds,
			otp_length=settings.confirm_otp_length,
			sms_template_id=settings.sms_ir_template_id,
		)

	def public_link(self, raw_token: str) -> str:
		return f"{self.frontend_url.rstrip('/')}/contracts/confirm/{raw_token}"


def _clean(value: Optional[str]) -> Optional[str]:
	if value is None:
		return None
	text = str(value).strip()
	return text or None


def _primary_phone_record(customer: CustomerProjection) -> Optional[str]:
	for record in customer.phone_numbers:
		if record.is_primary and _clean(record.number):
			return _clean(record.number)
	return None


def _first_phone_record(customer: CustomerProjection) -> Optional[str]:
	if customer.phone_numbers:
		return _clean(customer.phone_numbers[0].number)
	return None


def _contact_mobile(customer: CustomerProjection) -> Optional[str]:
	return _clean(customer.primary_contact.mobile) if customer.primary_contact else None


def _contact_phone(customer: CustomerProjection) -> Optional[str]:
	return _clean(customer.primary_contact.phone) if customer.primary_contact else None


PHONE_EXTRACTORS: Sequence[Callable[[CustomerProjection], Optional[str]]] = (
	lambda customer: _clean(customer.home_number),
	lambda customer: _clean(customer.work_number),
	lambda customer: _clean(customer.project_manager_number),
	_primary_phone_record,
	_first_phone_record,
	_contact_mobile,
	_contact_phone,
)


def resolve_customer_phone(customer: CustomerProjection) -> Optional[str]:
	"""Return the first non-empty phone in priority order, or ``None``."""
	for extractor in PHONE_EXTRACTORS:
		phone = extractor(customer)
		if phone:
			return phone
	return None


def cooldown_remaining(last_sent_at: Optional[datetime], now: datetime, cooldown_seconds: int) -> int:
	"""Whole seconds the caller must still wait before another send; 0 when allowed."""
	if last_sent_at is None or cooldown_seconds <= 0:
		return 0
	elapsed = (now - last_sent_at).total_seconds()
	if elapsed >= cooldown_seconds:
		return 0
	return max(1, math.ceil(cooldown_seconds - elapsed))


def normalise_code(code: object) -> str:
	if not isinstance(code, (str, int)) or isinstance(code, bool):
		raise ValidationFailed("code_invalid", "Invalid verification code")
	text = str(code).strip()
	if not (CODE_MIN_LEN <= len(text) <= CODE_MAX_LEN) or not text.isdigit():
		raise ValidationFailed("code_invalid", "Invalid verification code")
	return text


def guard_token_shape(raw_token: object) -> str:
	if not isinstance(raw_token, str) or len(raw_token.strip()) < MIN_TOKEN_LENGTH:
		raise InvalidLink()
	return raw_token.strip()


def error_for_status(status: SessionStatus) -> ConfirmationError:
	"""Map a non-pending session status to the error served to the caller."""
	if status is SessionStatus.VERIFIED:
		return AlreadyVerified()
	if status is SessionStatus.CANCELLED:
		return LinkCancelled()
	return SessionExpired()


def can_cancel_approved(roles: Sequence[str]) -> bool:
	return any(role in CANCEL_APPROVED_ROLES for role in roles)
