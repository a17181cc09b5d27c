"""Token, OTP and audit digest helpers."""

from __future__ import annotations

import hashlib
import hmac
import json
import random
import secrets
from typing import Any, Mapping

_RNG = random.SystemRandom()

TOKEN_BYTES = 32


def hash_value(value: str) -> str:
	"""Return the lowercase hex SHA-256 digest of ``value``."""
	return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_public_token() -> str:
	"""Return 32 random bytes hex-encoded (64 chars). Never persisted."""
	return secrets.token_hex(TOKEN_BYTES)


def generate_otp(length: int = 6) -> str:
	"""Generate a numeric OTP without a leading zero using a cryptographically safe RNG."""
	if length < 4:
		raise ValueError("otp_length_too_short")
	return str(_RNG.randint(10 ** (length - 1), 10**length - 1))


def digests_match(left: str, right: str) -> bool:
	"""Constant-time comparison of two hex digests."""
	return hmac.compare_digest(left.encode("ascii"), right.encode("ascii"))


def canonical_json(data: Mapping[str, Any]) -> str:
	return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def digest_mapping(data: Mapping[str, Any]) -> str:
	return hash_value(canonical_json(data))
