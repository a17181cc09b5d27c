import asyncio

import pytest

from contract_confirm.domain.confirmation import hashing, policy
from contract_confirm.domain.confirmation.models import AuditEvent, ContractStatus, SessionStatus


def _pending(store, contract_id="contract-1"):
    return [s for s in store.sessions.values() if s.contract_id == contract_id and s.status is SessionStatus.PENDING]


@pytest.mark.asyncio
async def test_issue_creates_pending_session_and_moves_draft_contract(manager, store, gateway):
    result = await manager.issue_or_resend("contract-1", "staff-1")

    assert result.contract_status == ContractStatus.PENDING_APPROVAL.value
    assert result.phone_number == "09121234567"
    assert result.message_id == "msg-1"
    assert result.public_link == f"https://app.example.test/contracts/confirm/{gateway.last_token}"

    raw_token = gateway.last_token
    assert len(raw_token) == 64
    session = store.sessions[result.session_id]
    assert session.status is SessionStatus.PENDING
    assert session.token_hash == hashing.hash_value(raw_token)
    assert session.otp_code_hash == hashing.hash_value(gateway.last_code)
    assert raw_token not in session.token_hash
    assert session.attempts_used == 0
    assert session.resend_count == 0
    assert session.max_attempts == 5
    assert (session.otp_expires_at - session.created_at).total_seconds() == 600
    assert (session.link_expires_at - session.created_at).days == 60

    contract = store.contracts["contract-1"]
    assert contract.status == ContractStatus.PENDING_APPROVAL.value
    stamp = contract.signatures.digital_confirmation
    assert stamp is not None
    assert stamp.status is SessionStatus.PENDING
    assert stamp.session_id == session.id
    assert stamp.phone_number == "09121234567"

    assert store.audit_events("contract-1") == [AuditEvent.LINK_CREATED, AuditEvent.SMS_SENT]
    sms_entry = store.audit[-1]
    assert sms_entry.provider == "test"
    assert sms_entry.provider_message_id == "msg-1"
    assert sms_entry.payload["success"] is True


@pytest.mark.asyncio
async def test_sms_carries_customer_name_and_contract_number(manager, gateway):
    await manager.issue_or_resend("contract-1", "staff-1")

    params = gateway.sent[-1]["parameters"]
    assert params["Name"] == "Sara Ahmadi"
    assert params["ContractNumber"] == "C-contract-1"
    assert len(params["Code"]) == 6
    assert gateway.sent[-1]["template_id"] == 123456


@pytest.mark.asyncio
async def test_second_issue_supersedes_previous_session(manager, store, gateway, clock):
    first = await manager.issue_or_resend("contract-1", "staff-1")
    first_token = gateway.last_token
    clock.advance(seconds=5)

    second = await manager.issue_or_resend("contract-1", "staff-1")

    assert first.session_id != second.session_id
    assert store.sessions[first.session_id].status is SessionStatus.CANCELLED
    assert [s.id for s in _pending(store)] == [second.session_id]
    with pytest.raises(policy.LinkCancelled):
        await manager.resolve_by_token(first_token)


@pytest.mark.asyncio
async def test_resend_within_cooldown_is_throttled_with_remaining_seconds(manager, store, clock):
    issued = await manager.issue_or_resend("contract-1", "staff-1")
    before = store.sessions[issued.session_id]
    clock.advance(seconds=50)

    with pytest.raises(policy.Throttled) as excinfo:
        await manager.issue_or_resend("contract-1", "staff-1", resend=True)

    assert excinfo.value.retry_after_seconds == 10
    assert "10 seconds" in excinfo.value.message
    after = store.sessions[issued.session_id]
    assert after.otp_code_hash == before.otp_code_hash
    assert after.resend_count == 0
    assert after.last_sent_at == before.last_sent_at


@pytest.mark.asyncio
async def test_staff_resend_rotates_otp_and_rekeys_link(manager, store, gateway, clock):
    issued = await manager.issue_or_resend("contract-1", "staff-1")
    old_token = gateway.last_token
    clock.advance(seconds=61)

    resent = await manager.issue_or_resend("contract-1", "staff-1", resend=True)

    assert resent.session_id == issued.session_id
    assert resent.resend_count == 1
    session = store.sessions[issued.session_id]
    assert session.attempts_used == 0
    assert session.last_sent_at == clock.now
    assert gateway.last_token != old_token
    assert session.otp_code_hash == hashing.hash_value(gateway.last_code)
    with pytest.raises(policy.InvalidLink):
        await manager.resolve_by_token(old_token)
    view = await manager.resolve_by_token(gateway.last_token)
    assert view.session_id == issued.session_id


@pytest.mark.asyncio
async def test_resend_resets_attempt_counter(manager, store, gateway, clock, verifier):
    await manager.issue_or_resend("contract-1", "staff-1")
    token = gateway.last_token
    for _ in range(2):
        with pytest.raises(policy.IncorrectCode):
            await verifier.verify(token, "00000000")
    session_id = next(iter(store.sessions))
    assert store.sessions[session_id].attempts_used == 2

    clock.advance(seconds=60)
    await manager.resend_from_public_token(token)

    assert store.sessions[session_id].attempts_used == 0


@pytest.mark.asyncio
async def test_public_resend_keeps_link_and_replaces_code(manager, store, gateway, clock, verifier):
    issued = await manager.issue_or_resend("contract-1", "staff-1")
    token, old_code = gateway.last_token, gateway.last_code
    clock.advance(seconds=60)

    resent = await manager.resend_from_public_token(token)

    assert resent.session_id == issued.session_id
    assert gateway.last_token == token
    assert store.sessions[issued.session_id].token_hash == hashing.hash_value(token)
    assert store.sessions[issued.session_id].created_by == "staff-1"
    new_code = gateway.last_code
    if new_code != old_code:
        with pytest.raises(policy.IncorrectCode):
            await verifier.verify(token, old_code)
    result = await verifier.verify(token, new_code)
    assert result.contract_status == ContractStatus.APPROVED.value


@pytest.mark.asyncio
async def test_public_resend_is_throttled(manager, gateway, clock):
    await manager.issue_or_resend("contract-1", "staff-1")
    clock.advance(seconds=30)

    with pytest.raises(policy.Throttled) as excinfo:
        await manager.resend_from_public_token(gateway.last_token)

    assert excinfo.value.retry_after_seconds == 30
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_public_resend_rejects_unknown_and_superseded_tokens(manager, gateway, clock):
    with pytest.raises(policy.InvalidLink):
        await manager.resend_from_public_token("f" * 64)

    await manager.issue_or_resend("contract-1", "staff-1")
    stale = gateway.last_token
    await manager.issue_or_resend("contract-1", "staff-1")
    clock.advance(seconds=120)

    with pytest.raises(policy.LinkCancelled):
        await manager.resend_from_public_token(stale)


@pytest.mark.asyncio
async def test_resend_without_active_session_creates_fresh_one(manager, store):
    result = await manager.issue_or_resend("contract-1", "staff-1", resend=True)

    assert result.resend_count == 0
    assert [s.id for s in _pending(store)] == [result.session_id]


@pytest.mark.asyncio
async def test_issue_rejects_cancelled_unknown_and_phoneless_contracts(manager, store, make_contract):
    store.add_contract(make_contract("cancelled", status="CANCELLED"))
    store.add_contract(make_contract("no-phone", home_number=None))

    with pytest.raises(policy.ContractCancelled):
        await manager.issue_or_resend("cancelled", "staff-1")
    with pytest.raises(policy.ConfirmationNotFound):
        await manager.issue_or_resend("missing", "staff-1")
    with pytest.raises(policy.ValidationFailed) as excinfo:
        await manager.issue_or_resend("no-phone", "staff-1")
    assert excinfo.value.reason == "phone_missing"
    assert store.sessions == {}
    assert store.audit == []


@pytest.mark.asyncio
async def test_non_draft_contract_keeps_its_status(manager, store, make_contract):
    store.add_contract(make_contract("pending", status="PENDING_APPROVAL"))

    result = await manager.issue_or_resend("pending", "staff-1")

    assert result.contract_status == "PENDING_APPROVAL"
    assert store.contracts["pending"].signatures.digital_confirmation is None


@pytest.mark.asyncio
async def test_sms_failure_is_reported_after_state_is_committed(manager, store, gateway):
    gateway.fail_with = "Invalid template"

    with pytest.raises(policy.DownstreamFailure) as excinfo:
        await manager.issue_or_resend("contract-1", "staff-1")

    assert excinfo.value.detail == "Invalid template"
    assert len(_pending(store)) == 1
    assert store.audit_events("contract-1") == [AuditEvent.LINK_CREATED, AuditEvent.SMS_SENT]
    assert store.audit[-1].payload["success"] is False


@pytest.mark.asyncio
async def test_concurrent_issues_leave_single_pending_session(manager, store):
    await asyncio.gather(*(manager.issue_or_resend("contract-1", f"staff-{i}") for i in range(5)))

    assert len(_pending(store)) == 1
    assert len(store.sessions) == 5


@pytest.mark.asyncio
async def test_cancel_cancels_pending_sessions_and_stamps_contract(manager, store, gateway, clock):
    issued = await manager.issue_or_resend("contract-1", "staff-1")
    token = gateway.last_token

    result = await manager.cancel("contract-1", "manager-7")

    assert result.status == ContractStatus.CANCELLED.value
    assert result.sessions_cancelled == 1
    contract = store.contracts["contract-1"]
    assert contract.status == ContractStatus.CANCELLED.value
    assert contract.signatures.cancellation.by == "manager-7"
    assert contract.signatures.cancellation.previous_status == ContractStatus.PENDING_APPROVAL.value
    assert contract.signatures.digital_confirmation is not None
    assert store.sessions[issued.session_id].status is SessionStatus.CANCELLED
    assert store.audit_events("contract-1")[-1] is AuditEvent.CONTRACT_CANCELLED
    with pytest.raises(policy.LinkCancelled):
        await manager.resolve_by_token(token)


@pytest.mark.asyncio
async def test_cancel_is_noop_for_cancelled_contract(manager, store):
    await manager.cancel("contract-1", "manager-7")
    audit_count = len(store.audit)

    result = await manager.cancel("contract-1", "manager-7")

    assert result.already_cancelled is True
    assert len(store.audit) == audit_count


@pytest.mark.asyncio
async def test_cancel_approved_contract_requires_permission(manager, store, make_contract):
    store.add_contract(make_contract("approved", status="APPROVED"))

    with pytest.raises(policy.ApprovedContractLocked):
        await manager.cancel("approved", "sales-1")
    assert store.contracts["approved"].status == "APPROVED"

    result = await manager.cancel("approved", "admin-1", allow_cancel_after_approval=True)
    assert result.status == "CANCELLED"
    assert store.contracts["approved"].signatures.cancellation.previous_status == "APPROVED"


@pytest.mark.asyncio
async def test_cancel_unknown_contract(manager):
    with pytest.raises(policy.ConfirmationNotFound):
        await manager.cancel("missing", "staff-1")


@pytest.mark.asyncio
async def test_resolve_returns_projection_and_records_open(manager, store, gateway):
    await manager.issue_or_resend("contract-1", "staff-1")

    view = await manager.resolve_by_token(gateway.last_token)

    payload = view.to_dict()
    assert payload["status"] == "PENDING"
    assert payload["contractStatus"] == "PENDING_APPROVAL"
    assert payload["contract"]["contractNumber"] == "C-contract-1"
    assert payload["contract"]["customer"]["displayName"] == "Sara Ahmadi"
    assert payload["contract"]["items"][0]["description"] == "Travertine slab"
    assert payload["contract"]["deliveries"] and payload["contract"]["payments"]
    assert payload["contract"]["customer"]["phoneNumber"] == "0912123XXXX"
    serialized = repr(payload)
    assert gateway.last_token not in serialized
    assert "09121234567" not in serialized
    assert store.audit_events("contract-1")[-1] is AuditEvent.LINK_OPENED


@pytest.mark.asyncio
async def test_resolve_lazily_expires_link(manager, store, gateway, clock):
    issued = await manager.issue_or_resend("contract-1", "staff-1")
    clock.advance(days=61)

    with pytest.raises(policy.LinkExpired):
        await manager.resolve_by_token(gateway.last_token)

    assert store.sessions[issued.session_id].status is SessionStatus.EXPIRED
    with pytest.raises(policy.LinkExpired):
        await manager.resolve_by_token(gateway.last_token)


@pytest.mark.asyncio
async def test_resolve_unknown_and_malformed_tokens_raise_same_error(manager):
    with pytest.raises(policy.InvalidLink) as unknown:
        await manager.resolve_by_token("a" * 64)
    with pytest.raises(policy.InvalidLink) as malformed:
        await manager.resolve_by_token("short")

    assert unknown.value.message == malformed.value.message
    assert unknown.value.reason == malformed.value.reason


@pytest.mark.asyncio
async def test_verified_session_link_stays_viewable(manager, verifier, gateway):
    await manager.issue_or_resend("contract-1", "staff-1")
    await verifier.verify(gateway.last_token, gateway.last_code)

    view = await manager.resolve_by_token(gateway.last_token)

    assert view.session_status is SessionStatus.VERIFIED
    assert view.contract_status == "APPROVED"


@pytest.mark.asyncio
async def test_get_status_reports_latest_session(manager, gateway, clock):
    status = await manager.get_status("contract-1")
    assert status.session_status is None
    assert status.max_attempts == 5

    await manager.issue_or_resend("contract-1", "staff-1")
    clock.advance(minutes=2)
    await manager.resolve_by_token(gateway.last_token)

    status = await manager.get_status("contract-1")
    assert status.session_status is SessionStatus.PENDING
    assert status.contract_status == "PENDING_APPROVAL"
    assert status.phone_number == "09121234567"
    assert status.last_opened_at == clock.now
    assert status.is_approved is False

    with pytest.raises(policy.ConfirmationNotFound):
        await manager.get_status("missing")
