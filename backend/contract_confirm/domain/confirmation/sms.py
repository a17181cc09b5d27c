"""SMS gateway adapters used to deliver confirmation codes."""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

_NON_DIGIT = re.compile(r"[^\d+]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class SmsSendResult:
	success: bool
	provider_message_id: Optional[str] = None
	raw_response: Any = None
	error: Optional[str] = None


class SmsGateway(Protocol):
	provider: str

	async def send(self, phone_number: str, template_id: int, parameters: Mapping[str, str]) -> SmsSendResult:
		...


def normalise_phone_number(phone: str) -> str:
	"""Normalise an Iranian mobile number to the national ``09xxxxxxxxx`` form.

	Raises ``ValueError("phone_invalid")`` when the input cannot be coerced.
	"""
	formatted = _NON_DIGIT.sub("", _WHITESPACE.sub("", phone or ""))
	if formatted.startswith("+"):
		formatted = formatted[1:]
	if formatted.startswith("0"):
		formatted = formatted[1:]
	if not formatted.startswith("98"):
		formatted = f"98{formatted}"
	if len(formatted) == 12:
		formatted = f"0{formatted[2:]}"
	if not formatted.startswith("09"):
		if formatted.startswith("9") and len(formatted) == 10:
			formatted = f"0{formatted}"
		else:
			raise ValueError("phone_invalid")
	if len(formatted) != 11 or not formatted.isdigit():
		raise ValueError("phone_invalid")
	return formatted


def mask_number(phone: str) -> str:
	if len(phone) <= 4:
		return phone
	return f"{phone[:-4]}XXXX"


def hash_number(phone: str) -> str:
	return hashlib.sha256(phone.encode("utf-8")).hexdigest()[:12]


class LoggingSmsGateway:
	"""Development gateway that logs the send without disclosing the code or number."""

	provider = "log"

	async def send(self, phone_number: str, template_id: int, parameters: Mapping[str, str]) -> SmsSendResult:
		message_id = f"log-{uuid.uuid4().hex[:12]}"
		logger.info(
			"sms_stub_send",
			extra={
				"to_masked": mask_number(phone_number),
				"hash": hash_number(phone_number),
				"template": template_id,
				"params": sorted(parameters.keys()),
				"message_id": message_id,
			},
		)
		return SmsSendResult(success=True, provider_message_id=message_id, raw_response={"stub": True})


@dataclass
class SmsIrGateway:
	"""sms.ir ``send/verify`` client. Never raises; failures come back as results."""

	api_key: str
	http: httpx.AsyncClient
	api_url: str = "https://api.sms.ir/v1"
	request_timeout: float = 5.0
	provider: str = "sms.ir"

	async def send(self, phone_number: str, template_id: int, parameters: Mapping[str, str]) -> SmsSendResult:
		try:
			mobile = normalise_phone_number(phone_number)
		except ValueError:
			return SmsSendResult(success=False, error="Invalid phone number format")

		body = {
			"mobile": mobile,
			"templateId": template_id,
			"parameters": [{"name": name, "value": str(value)} for name, value in parameters.items()],
		}
		headers = {"Accept": "text/plain", "x-api-key": self.api_key}
		try:
			response = await self.http.post(
				f"{self.api_url.rstrip('/')}/send/verify",
				json=body,
				headers=headers,
				timeout=self.request_timeout,
			)
		except httpx.TimeoutException:
			logger.warning("sms_send_timeout", extra={"to_masked": mask_number(mobile)})
			return SmsSendResult(success=False, error="No response from SMS service")
		except httpx.HTTPError as exc:
			logger.warning("sms_send_transport_error", extra={"to_masked": mask_number(mobile), "error": type(exc).__name__})
			return SmsSendResult(success=False, error="SMS transport error")

		data = _json_or_none(response)
		if response.status_code >= 400:
			message = _message_from(data) or f"SMS API error ({response.status_code})"
			return SmsSendResult(success=False, raw_response=data, error=message)
		if isinstance(data, Mapping) and data.get("status") == 1:
			inner = data.get("data") if isinstance(data.get("data"), Mapping) else {}
			message_id = inner.get("messageId")
			return SmsSendResult(
				success=True,
				provider_message_id=str(message_id) if message_id is not None else None,
				raw_response=data,
			)
		return SmsSendResult(success=False, raw_response=data, error=_message_from(data) or "Failed to send SMS")


def _json_or_none(response: httpx.Response) -> Any:
	try:
		return response.json()
	except ValueError:
		return None


def _message_from(data: Any) -> Optional[str]:
	if isinstance(data, Mapping):
		message = data.get("message") or data.get("error")
		if message:
			return str(message)
	return None


def build_gateway(settings, *, http: Optional[httpx.AsyncClient] = None) -> SmsGateway:
	"""Pick the sms.ir adapter when an API key is configured, else the logging stub."""
	if settings.sms_ir_api_key:
		return SmsIrGateway(
			api_key=settings.sms_ir_api_key,
			http=http or httpx.AsyncClient(timeout=settings.sms_timeout_seconds),
			api_url=settings.sms_ir_api_url,
			request_timeout=settings.sms_timeout_seconds,
		)
	return LoggingSmsGateway()
