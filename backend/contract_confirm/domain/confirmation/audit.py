"""Append-only audit trail helpers for confirmation events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from contract_confirm.domain.confirmation import hashing
from contract_confirm.domain.confirmation.models import AuditEvent, AuditLogEntry, RequestEvidence
from contract_confirm.domain.confirmation.repository import AuditLogRepository

logger = logging.getLogger(__name__)


def _hash_fields(entry: AuditLogEntry) -> Dict[str, Any]:
	return {
		"contractId": entry.contract_id,
		"sessionId": entry.session_id,
		"eventType": entry.event_type.value,
		"eventPayload": entry.payload,
		"provider": entry.provider,
		"providerMessageId": entry.provider_message_id,
		"evidence": entry.evidence.to_dict(),
		"at": entry.event_at.isoformat(),
	}


def compute_event_hash(entry: AuditLogEntry) -> str:
	"""SHA-256 over the canonical JSON of the entry's content and timestamp."""
	return hashing.digest_mapping(_hash_fields(entry))


def verify_entry_hash(entry: AuditLogEntry) -> bool:
	"""Return ``True`` when the stored hash still matches the entry content."""
	return hashing.digests_match(compute_event_hash(entry), entry.event_hash)


def build_entry(
	contract_id: str,
	event_type: AuditEvent,
	*,
	event_at: datetime,
	session_id: Optional[str] = None,
	payload: Optional[Dict[str, Any]] = None,
	provider: Optional[str] = None,
	provider_message_id: Optional[str] = None,
	provider_raw_response: Any = None,
	meta: Optional[RequestEvidence] = None,
) -> AuditLogEntry:
	entry = AuditLogEntry(
		contract_id=contract_id,
		session_id=session_id,
		event_type=event_type,
		event_at=event_at,
		event_hash="",
		payload=dict(payload or {}),
		provider=provider,
		provider_message_id=provider_message_id,
		provider_raw_response=provider_raw_response,
		evidence=meta or RequestEvidence(),
	)
	entry.event_hash = compute_event_hash(entry)
	return entry


async def append_event(
	repo: AuditLogRepository,
	contract_id: str,
	event_type: AuditEvent,
	*,
	event_at: datetime,
	session_id: Optional[str] = None,
	payload: Optional[Dict[str, Any]] = None,
	provider: Optional[str] = None,
	provider_message_id: Optional[str] = None,
	provider_raw_response: Any = None,
	meta: Optional[RequestEvidence] = None,
) -> AuditLogEntry:
	"""Hash and persist one entry inside the caller's transaction."""
	entry = build_entry(
		contract_id,
		event_type,
		event_at=event_at,
		session_id=session_id,
		payload=payload,
		provider=provider,
		provider_message_id=provider_message_id,
		provider_raw_response=provider_raw_response,
		meta=meta,
	)
	stored = await repo.append(entry)
	logger.info(
		"confirmation_audit",
		extra={
			"event": event_type.value,
			"contract_id": contract_id,
			"session_id": session_id,
			"event_hash": stored.event_hash[:12],
		},
	)
	return stored
