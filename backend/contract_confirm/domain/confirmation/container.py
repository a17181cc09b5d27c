"""Lightweight service container for the confirmation workflow."""

from __future__ import annotations

from typing import Optional

import asyncpg

from contract_confirm.domain.confirmation.memory import InMemoryConfirmationStore
from contract_confirm.domain.confirmation.policy import ConfirmationConfig
from contract_confirm.domain.confirmation.repository import ConfirmationStore
from contract_confirm.domain.confirmation.service import Clock, ConfirmationSessionManager, utc_now
from contract_confirm.domain.confirmation.sms import SmsGateway, build_gateway
from contract_confirm.domain.confirmation.verifier import OtpVerifier
from contract_confirm.settings import settings

_store: ConfirmationStore = InMemoryConfirmationStore()
_gateway: Optional[SmsGateway] = None
_config: ConfirmationConfig = ConfirmationConfig.from_settings(settings)
_clock: Clock = utc_now
_manager: Optional[ConfirmationSessionManager] = None
_verifier: Optional[OtpVerifier] = None


def configure(
	*,
	store: Optional[ConfirmationStore] = None,
	gateway: Optional[SmsGateway] = None,
	config: Optional[ConfirmationConfig] = None,
	clock: Optional[Clock] = None,
) -> None:
	"""Swap collaborators; cached services are rebuilt on next access."""
	global _store, _gateway, _config, _clock, _manager, _verifier
	if store is not None:
		_store = store
	if gateway is not None:
		_gateway = gateway
	if config is not None:
		_config = config
	if clock is not None:
		_clock = clock
	_manager = None
	_verifier = None


def configure_postgres(pool: asyncpg.Pool) -> None:
	from contract_confirm.infra.confirmation_repo import PostgresConfirmationStore

	configure(store=PostgresConfirmationStore(pool))


def reset() -> None:
	global _store, _gateway, _config, _clock, _manager, _verifier
	_store = InMemoryConfirmationStore()
	_gateway = None
	_config = ConfirmationConfig.from_settings(settings)
	_clock = utc_now
	_manager = None
	_verifier = None


def get_store() -> ConfirmationStore:
	return _store


def get_gateway() -> SmsGateway:
	global _gateway
	if _gateway is None:
		_gateway = build_gateway(settings)
	return _gateway


def get_manager() -> ConfirmationSessionManager:
	global _manager
	if _manager is None:
		_manager = ConfirmationSessionManager(_store, get_gateway(), _config, clock=_clock)
	return _manager


def get_verifier() -> OtpVerifier:
	global _verifier
	if _verifier is None:
		_verifier = OtpVerifier(_store, clock=_clock)
	return _verifier
