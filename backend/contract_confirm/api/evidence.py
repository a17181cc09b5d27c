"""Request evidence extraction for audit entries."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from contract_confirm.domain.confirmation.models import RequestEvidence

_MAX_HEADER_LENGTH = 512


def _header(request: Request, name: str) -> Optional[str]:
	value = request.headers.get(name)
	if value is None:
		return None
	value = value.strip()
	return value[:_MAX_HEADER_LENGTH] or None


def _forwarded_hops(request: Request) -> list[str]:
	forwarded = request.headers.get("x-forwarded-for") or ""
	return [hop.strip() for hop in forwarded.split(",") if hop.strip()]


def client_ip(request: Request) -> Optional[str]:
	"""First ``X-Forwarded-For`` hop, else the peer address. Audit evidence only."""
	hops = _forwarded_hops(request)
	if hops:
		return hops[0][:_MAX_HEADER_LENGTH]
	return request.client.host if request.client else None


def rate_limit_ip(request: Request, trusted_proxies: int = 0) -> Optional[str]:
	"""Address to throttle on.

	With no trusted proxies this is the socket peer. Behind ``trusted_proxies``
	reverse proxies, each appending to ``X-Forwarded-For``, the client is the
	hop that many entries from the right; hops left of it are caller supplied.
	"""
	peer = request.client.host if request.client else None
	if trusted_proxies <= 0:
		return peer
	hops = _forwarded_hops(request)
	if len(hops) < trusted_proxies:
		return peer
	return hops[-trusted_proxies]


def request_evidence(request: Request) -> RequestEvidence:
	return RequestEvidence(
		ip_address=client_ip(request),
		user_agent=_header(request, "user-agent"),
		accept_language=_header(request, "accept-language"),
		device_fingerprint=_header(request, "x-device-fingerprint"),
		referrer=_header(request, "referer"),
	)
