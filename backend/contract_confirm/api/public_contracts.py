"""Unauthenticated endpoints served to the holder of a confirmation link."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from contract_confirm.api.evidence import rate_limit_ip, request_evidence
from contract_confirm.domain.confirmation import container, schemas
from contract_confirm.infra import rate_limit
from contract_confirm.obs import metrics as obs_metrics
from contract_confirm.settings import settings

router = APIRouter(prefix="/contracts/confirm", tags=["public-contracts"])

RATE_LIMIT_KIND = "public_confirm"


async def enforce_public_rate_limit(request: Request) -> None:
	actor = rate_limit_ip(request, settings.trusted_proxy_count) or "unknown"
	if not await rate_limit.allow(RATE_LIMIT_KIND, actor, limit=settings.public_confirm_per_minute):
		obs_metrics.inc_rate_limited(RATE_LIMIT_KIND)
		raise rate_limit.RateLimitExceeded(RATE_LIMIT_KIND)


@router.get(
	"/{token}",
	response_model=schemas.Envelope[schemas.PublicContractPayload],
	dependencies=[Depends(enforce_public_rate_limit)],
)
async def get_public_contract(token: str, request: Request) -> schemas.Envelope[schemas.PublicContractPayload]:
	view = await container.get_manager().resolve_by_token(token, request_evidence(request))
	return schemas.Envelope(data=view.to_dict())


@router.post(
	"/{token}/verify",
	response_model=schemas.Envelope[schemas.VerifyResponse],
	dependencies=[Depends(enforce_public_rate_limit)],
)
async def verify_public_code(
	token: str,
	payload: schemas.VerifyRequest,
	request: Request,
) -> schemas.Envelope[schemas.VerifyResponse]:
	result = await container.get_verifier().verify(token, payload.code, request_evidence(request))
	return schemas.Envelope(data=schemas.VerifyResponse.from_result(result), message="Contract confirmed")


@router.post(
	"/{token}/resend",
	response_model=schemas.Envelope[schemas.PublicResendResponse],
	dependencies=[Depends(enforce_public_rate_limit)],
)
async def resend_public_code(token: str, request: Request) -> schemas.Envelope[schemas.PublicResendResponse]:
	result = await container.get_manager().resend_from_public_token(token, request_evidence(request))
	return schemas.Envelope(data=schemas.PublicResendResponse.from_result(result), message="A new code has been sent")
