"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contract_confirm.api import contracts, ops, public_contracts
from contract_confirm.api.errors import install_error_handlers
from contract_confirm.api.middleware_request_id import RequestIdMiddleware
from contract_confirm.domain.confirmation import container
from contract_confirm.domain.confirmation.sms import build_gateway
from contract_confirm.infra import postgres
from contract_confirm.maintenance import expire_sessions
from contract_confirm.maintenance.scheduler import MaintenanceScheduler
from contract_confirm.obs import init as obs_init
from contract_confirm.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	if pool is not None:
		container.configure_postgres(pool)
	sms_http = httpx.AsyncClient(timeout=settings.sms_timeout_seconds)
	container.configure(gateway=build_gateway(settings, http=sms_http))
	scheduler: MaintenanceScheduler | None = None
	if settings.expiry_sweep_enabled:
		scheduler = MaintenanceScheduler()
		scheduler.start()
		expire_sessions.install(scheduler, minutes=settings.expiry_sweep_minutes)
		app.state.maintenance_scheduler = scheduler
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		await sms_http.aclose()
		await postgres.close_pool()


app = FastAPI(title="Contract Confirmation API", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = [settings.frontend_url]
# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = [settings.frontend_url]
app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["GET", "POST", "OPTIONS"],
	allow_headers=["*"],
	expose_headers=["X-Request-Id", "Retry-After"],
)

obs_init(app)
app.add_middleware(RequestIdMiddleware)

app.include_router(public_contracts.router)
app.include_router(contracts.router)
app.include_router(ops.router)
