"""Staff endpoints for sending, resending, inspecting and cancelling confirmations."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from contract_confirm.api.evidence import request_evidence
from contract_confirm.domain.confirmation import container, policy, schemas
from contract_confirm.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/sales/contracts", tags=["contracts"])


@router.post("/{contract_id}/send-for-confirmation", response_model=schemas.Envelope[schemas.IssueResponse])
async def send_for_confirmation(
	contract_id: str,
	request: Request,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.Envelope[schemas.IssueResponse]:
	result = await container.get_manager().issue_or_resend(
		contract_id,
		auth_user.id,
		resend=False,
		meta=request_evidence(request),
	)
	return schemas.Envelope(data=schemas.IssueResponse.from_result(result), message="Confirmation link sent")


@router.post("/{contract_id}/resend-confirmation", response_model=schemas.Envelope[schemas.IssueResponse])
async def resend_confirmation(
	contract_id: str,
	request: Request,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.Envelope[schemas.IssueResponse]:
	result = await container.get_manager().issue_or_resend(
		contract_id,
		auth_user.id,
		resend=True,
		meta=request_evidence(request),
	)
	return schemas.Envelope(data=schemas.IssueResponse.from_result(result), message="Confirmation code resent")


@router.get("/{contract_id}/confirmation-status", response_model=schemas.Envelope[schemas.StatusResponse])
async def confirmation_status(
	contract_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.Envelope[schemas.StatusResponse]:
	state = await container.get_manager().get_status(contract_id)
	return schemas.Envelope(data=schemas.StatusResponse.from_status(state))


@router.post("/{contract_id}/cancel", response_model=schemas.Envelope[schemas.CancelResponse])
async def cancel_contract(
	contract_id: str,
	request: Request,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.Envelope[schemas.CancelResponse]:
	result = await container.get_manager().cancel(
		contract_id,
		auth_user.id,
		allow_cancel_after_approval=policy.can_cancel_approved(auth_user.roles),
		meta=request_evidence(request),
	)
	message = "Contract already cancelled" if result.already_cancelled else "Contract cancelled"
	return schemas.Envelope(data=schemas.CancelResponse.from_result(result), message=message)
