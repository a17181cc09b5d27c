"""Pydantic schemas for the confirmation HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel

from contract_confirm.domain.confirmation.models import CancelResult, ConfirmationStatus, IssueResult, VerifyResult

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
	success: bool = True
	data: Optional[T] = None
	message: Optional[str] = None


class VerifyRequest(BaseModel):
	code: Optional[Union[str, int]] = None


class IssueResponse(BaseModel):
	contractId: str
	status: str
	sessionId: str
	phoneNumber: str
	publicLink: str
	expiresAt: datetime
	otpExpiresAt: datetime
	resendCount: int
	messageId: Optional[str] = None

	@classmethod
	def from_result(cls, result: IssueResult) -> "IssueResponse":
		return cls(
			contractId=result.contract_id,
			status=result.contract_status,
			sessionId=result.session_id,
			phoneNumber=result.phone_number,
			publicLink=result.public_link,
			expiresAt=result.link_expires_at,
			otpExpiresAt=result.otp_expires_at,
			resendCount=result.resend_count,
			messageId=result.message_id,
		)


class PublicResendResponse(BaseModel):
	otpExpiresAt: datetime
	expiresAt: datetime

	@classmethod
	def from_result(cls, result: IssueResult) -> "PublicResendResponse":
		return cls(otpExpiresAt=result.otp_expires_at, expiresAt=result.link_expires_at)


class VerifyResponse(BaseModel):
	contractId: str
	sessionId: str
	status: str
	verifiedAt: datetime

	@classmethod
	def from_result(cls, result: VerifyResult) -> "VerifyResponse":
		return cls(
			contractId=result.contract_id,
			sessionId=result.session_id,
			status=result.contract_status,
			verifiedAt=result.verified_at,
		)


class StatusResponse(BaseModel):
	contractId: str
	contractStatus: str
	sessionStatus: Optional[str] = None
	phoneNumber: Optional[str] = None
	linkExpiresAt: Optional[datetime] = None
	otpExpiresAt: Optional[datetime] = None
	attemptsUsed: int = 0
	maxAttempts: int
	resendCount: int = 0
	lastSentAt: Optional[datetime] = None
	lastOpenedAt: Optional[datetime] = None
	verifiedAt: Optional[datetime] = None
	isApproved: bool = False

	@classmethod
	def from_status(cls, state: ConfirmationStatus) -> "StatusResponse":
		return cls(
			contractId=state.contract_id,
			contractStatus=state.contract_status,
			sessionStatus=state.session_status.value if state.session_status else None,
			phoneNumber=state.phone_number,
			linkExpiresAt=state.link_expires_at,
			otpExpiresAt=state.otp_expires_at,
			attemptsUsed=state.attempts_used,
			maxAttempts=state.max_attempts,
			resendCount=state.resend_count,
			lastSentAt=state.last_sent_at,
			lastOpenedAt=state.last_opened_at,
			verifiedAt=state.verified_at,
			isApproved=state.is_approved,
		)


class CancelResponse(BaseModel):
	contractId: str
	status: str
	sessionsCancelled: int = 0
	alreadyCancelled: bool = False

	@classmethod
	def from_result(cls, result: CancelResult) -> "CancelResponse":
		return cls(
			contractId=result.contract_id,
			status=result.status,
			sessionsCancelled=result.sessions_cancelled,
			alreadyCancelled=result.already_cancelled,
		)


PublicContractPayload = dict[str, Any]
