"""Domain models for the public contract confirmation workflow."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

RecordLike = Mapping[str, Any]


class SessionStatus(str, Enum):
	PENDING = "PENDING"
	VERIFIED = "VERIFIED"
	EXPIRED = "EXPIRED"
	CANCELLED = "CANCELLED"


class ContractStatus(str, Enum):
	DRAFT = "DRAFT"
	PENDING_APPROVAL = "PENDING_APPROVAL"
	APPROVED = "APPROVED"
	REJECTED = "REJECTED"
	CANCELLED = "CANCELLED"


class AuditEvent(str, Enum):
	LINK_CREATED = "LINK_CREATED"
	SMS_SENT = "SMS_SENT"
	LINK_OPENED = "LINK_OPENED"
	OTP_SUBMITTED = "OTP_SUBMITTED"
	OTP_FAILED = "OTP_FAILED"
	OTP_VERIFIED = "OTP_VERIFIED"
	CONTRACT_CANCELLED = "CONTRACT_CANCELLED"


def coerce_json(value: Any) -> Any:
	"""Decode JSON/JSONB column values that may arrive as text or bytes."""
	if value is None:
		return None
	if isinstance(value, (bytes, bytearray, memoryview)):
		value = bytes(value).decode("utf-8")
	if isinstance(value, str):
		try:
			return json.loads(value)
		except json.JSONDecodeError:
			return None
	return value


def _coerce_json_to_dict(value: Any) -> dict[str, Any]:
	decoded = coerce_json(value)
	if isinstance(decoded, Mapping):
		return dict(decoded)
	return {}


def _iso(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
	if value is None or isinstance(value, datetime):
		return value
	try:
		return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	except ValueError:
		return None


def _opt_str(value: Any) -> Optional[str]:
	if value is None:
		return None
	text = str(value).strip()
	return text or None


@dataclass(slots=True)
class RequestEvidence:
	"""Best-effort caller evidence captured by the HTTP layer."""

	ip_address: Optional[str] = None
	user_agent: Optional[str] = None
	accept_language: Optional[str] = None
	device_fingerprint: Optional[str] = None
	referrer: Optional[str] = None

	def to_dict(self) -> dict[str, Optional[str]]:
		return {
			"ip_address": self.ip_address,
			"user_agent": self.user_agent,
			"accept_language": self.accept_language,
			"device_fingerprint": self.device_fingerprint,
			"referrer": self.referrer,
		}


@dataclass(slots=True)
class ConfirmationSession:
	"""One confirmation attempt for a contract. Only hashes of the token and OTP are kept."""

	id: str
	contract_id: str
	token_hash: str
	phone_number: str
	otp_code_hash: str
	otp_expires_at: datetime
	link_expires_at: datetime
	status: SessionStatus
	max_attempts: int
	attempts_used: int = 0
	resend_count: int = 0
	last_sent_at: Optional[datetime] = None
	verified_at: Optional[datetime] = None
	cancelled_at: Optional[datetime] = None
	created_by: Optional[str] = None
	created_at: Optional[datetime] = None

	def is_pending(self) -> bool:
		return self.status is SessionStatus.PENDING

	def link_expired(self, now: datetime) -> bool:
		return self.link_expires_at <= now

	def otp_expired(self, now: datetime) -> bool:
		return self.otp_expires_at <= now

	def attempts_exhausted(self) -> bool:
		return self.attempts_used >= self.max_attempts

	@classmethod
	def from_record(cls, record: RecordLike) -> "ConfirmationSession":
		return cls(
			id=str(record["id"]),
			contract_id=str(record["contract_id"]),
			token_hash=str(record["token_hash"]),
			phone_number=str(record["phone_number"]),
			otp_code_hash=str(record["otp_code_hash"]),
			otp_expires_at=record["otp_expires_at"],
			link_expires_at=record["link_expires_at"],
			status=SessionStatus(str(record["status"])),
			max_attempts=int(record["max_attempts"]),
			attempts_used=int(record.get("attempts_used") or 0),
			resend_count=int(record.get("resend_count") or 0),
			last_sent_at=record.get("last_sent_at"),
			verified_at=record.get("verified_at"),
			cancelled_at=record.get("cancelled_at"),
			created_by=_opt_str(record.get("created_by")),
			created_at=record.get("created_at"),
		)


@dataclass(slots=True)
class AuditLogEntry:
	"""Append-only, hash-stamped record of one observable confirmation event."""

	contract_id: str
	event_type: AuditEvent
	event_at: datetime
	event_hash: str
	session_id: Optional[str] = None
	payload: dict[str, Any] = field(default_factory=dict)
	provider: Optional[str] = None
	provider_message_id: Optional[str] = None
	provider_raw_response: Any = None
	evidence: RequestEvidence = field(default_factory=RequestEvidence)
	id: Optional[int] = None

	@classmethod
	def from_record(cls, record: RecordLike) -> "AuditLogEntry":
		return cls(
			id=int(record["id"]) if record.get("id") is not None else None,
			contract_id=str(record["contract_id"]),
			session_id=_opt_str(record.get("session_id")),
			event_type=AuditEvent(str(record["event_type"])),
			event_at=record["event_at"],
			event_hash=str(record["event_hash"]),
			payload=_coerce_json_to_dict(record.get("event_payload")),
			provider=_opt_str(record.get("provider")),
			provider_message_id=_opt_str(record.get("provider_message_id")),
			provider_raw_response=coerce_json(record.get("provider_raw_response")),
			evidence=RequestEvidence(
				ip_address=_opt_str(record.get("ip_address")),
				user_agent=_opt_str(record.get("user_agent")),
				accept_language=_opt_str(record.get("accept_language")),
				device_fingerprint=_opt_str(record.get("device_fingerprint")),
				referrer=_opt_str(record.get("referrer")),
			),
		)


@dataclass(slots=True)
class PhoneRecord:
	number: Optional[str]
	is_primary: bool = False


@dataclass(slots=True)
class PrimaryContact:
	mobile: Optional[str] = None
	phone: Optional[str] = None


@dataclass(slots=True)
class CustomerProjection:
	"""The customer fields the confirmation flow reads from the CRM."""

	first_name: Optional[str] = None
	last_name: Optional[str] = None
	company_name: Optional[str] = None
	home_number: Optional[str] = None
	work_number: Optional[str] = None
	project_manager_number: Optional[str] = None
	phone_numbers: list[PhoneRecord] = field(default_factory=list)
	primary_contact: Optional[PrimaryContact] = None

	@property
	def display_name(self) -> str:
		full_name = " ".join(part for part in (self.first_name, self.last_name) if part).strip()
		if full_name:
			return full_name
		return self.company_name or "Customer"


@dataclass(slots=True)
class DigitalConfirmation:
	status: SessionStatus
	session_id: str
	phone_number: str
	sent_at: Optional[datetime] = None
	verified_at: Optional[datetime] = None

	def to_dict(self) -> dict[str, Any]:
		payload: dict[str, Any] = {
			"status": self.status.value,
			"sessionId": self.session_id,
			"phoneNumber": self.phone_number,
		}
		if self.sent_at is not None:
			payload["sentAt"] = _iso(self.sent_at)
		if self.verified_at is not None:
			payload["verifiedAt"] = _iso(self.verified_at)
		return payload

	@classmethod
	def from_mapping(cls, data: Mapping[str, Any]) -> "DigitalConfirmation | None":
		try:
			status = SessionStatus(str(data.get("status")))
		except ValueError:
			return None
		return cls(
			status=status,
			session_id=str(data.get("sessionId") or ""),
			phone_number=str(data.get("phoneNumber") or ""),
			sent_at=_parse_dt(data.get("sentAt")),
			verified_at=_parse_dt(data.get("verifiedAt")),
		)


@dataclass(slots=True)
class CancellationStamp:
	by: str
	at: datetime
	previous_status: str

	def to_dict(self) -> dict[str, Any]:
		return {"by": self.by, "at": _iso(self.at), "previousStatus": self.previous_status}

	@classmethod
	def from_mapping(cls, data: Mapping[str, Any]) -> "CancellationStamp | None":
		at = _parse_dt(data.get("at"))
		if at is None:
			return None
		return cls(by=str(data.get("by") or ""), at=at, previous_status=str(data.get("previousStatus") or ""))


@dataclass(slots=True)
class ContractSignatures:
	"""Typed view over the contract's signatures JSON.

	Keys written by other subsystems are preserved untouched in ``extra``.
	"""

	digital_confirmation: Optional[DigitalConfirmation] = None
	cancellation: Optional[CancellationStamp] = None
	extra: dict[str, Any] = field(default_factory=dict)

	DIGITAL_CONFIRMATION_KEY = "digitalConfirmation"
	CANCELLATION_KEY = "cancellation"

	@classmethod
	def from_json(cls, value: Any) -> "ContractSignatures":
		data = _coerce_json_to_dict(value)
		digital_raw = data.pop(cls.DIGITAL_CONFIRMATION_KEY, None)
		cancel_raw = data.pop(cls.CANCELLATION_KEY, None)
		return cls(
			digital_confirmation=DigitalConfirmation.from_mapping(digital_raw) if isinstance(digital_raw, Mapping) else None,
			cancellation=CancellationStamp.from_mapping(cancel_raw) if isinstance(cancel_raw, Mapping) else None,
			extra=data,
		)


@dataclass(slots=True)
class ContractRecord:
	"""Projection of the external sales contract the workflow reads and stamps."""

	id: str
	contract_number: str
	status: str
	customer: CustomerProjection
	title: Optional[str] = None
	title_persian: Optional[str] = None
	contract_data: Any = None
	total_amount: Any = None
	currency: Optional[str] = None
	created_at: Optional[datetime] = None
	items: Sequence[Mapping[str, Any]] = field(default_factory=list)
	deliveries: Sequence[Mapping[str, Any]] = field(default_factory=list)
	payments: Sequence[Mapping[str, Any]] = field(default_factory=list)
	signatures: ContractSignatures = field(default_factory=ContractSignatures)


@dataclass(slots=True)
class IssueResult:
	contract_id: str
	contract_status: str
	session_id: str
	phone_number: str
	public_link: str
	link_expires_at: datetime
	otp_expires_at: datetime
	resend_count: int
	message_id: Optional[str] = None


@dataclass(slots=True)
class CancelResult:
	contract_id: str
	status: str
	sessions_cancelled: int = 0
	already_cancelled: bool = False


@dataclass(slots=True)
class VerifyResult:
	contract_id: str
	session_id: str
	contract_status: str
	verified_at: datetime


@dataclass(slots=True)
class ConfirmationStatus:
	contract_id: str
	contract_status: str
	session_status: Optional[SessionStatus]
	phone_number: Optional[str]
	link_expires_at: Optional[datetime]
	otp_expires_at: Optional[datetime]
	attempts_used: int
	max_attempts: int
	resend_count: int
	last_sent_at: Optional[datetime]
	last_opened_at: Optional[datetime]
	verified_at: Optional[datetime]

	@property
	def is_approved(self) -> bool:
		return self.contract_status == ContractStatus.APPROVED.value


@dataclass(slots=True)
class PublicContractView:
	"""Read-only projection served to the unauthenticated link holder."""

	session_id: str
	session_status: SessionStatus
	contract_status: str
	otp_expires_at: datetime
	link_expires_at: datetime
	contract: ContractRecord
	customer_phone: Optional[str]

	def to_dict(self) -> dict[str, Any]:
		contract = self.contract
		customer = contract.customer
		return {
			"sessionId": self.session_id,
			"status": self.session_status.value,
			"contractStatus": self.contract_status,
			"otpExpiresAt": _iso(self.otp_expires_at),
			"linkExpiresAt": _iso(self.link_expires_at),
			"contract": {
				"id": contract.id,
				"contractNumber": contract.contract_number,
				"title": contract.title,
				"titlePersian": contract.title_persian,
				"contractData": contract.contract_data,
				"totalAmount": contract.total_amount,
				"currency": contract.currency,
				"createdAt": _iso(contract.created_at),
				"customer": {
					"firstName": customer.first_name,
					"lastName": customer.last_name,
					"companyName": customer.company_name,
					"displayName": customer.display_name,
					"phoneNumber": self.customer_phone,
				},
				"items": list(contract.items),
				"deliveries": list(contract.deliveries),
				"payments": list(contract.payments),
			},
		}
