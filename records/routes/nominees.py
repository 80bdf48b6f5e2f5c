from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from records.routes._deps import (
    created_response,
    current_user,
    run_with_optional_idempotency,
    trace_id_from_request,
    user_id_from_request,
)
from records.schemas import (
    MobileOtpConfirmRequest,
    NomineeCreateRequest,
    NomineeInviteRequest,
    NomineeUpdateRequest,
    success_envelope,
)
from records.store import store

router = APIRouter(prefix="/api/v1", tags=["nominees"])


@router.post("/nominees/accept-invite/{invite_token}")
def accept_invite(invite_token: str, request: Request):
    data = store.accept_nominee_invite(user_id=user_id_from_request(request), invite_token=invite_token)
    return success_envelope(data, trace_id_from_request(request), "Invitation accepted successfully")


@router.post("/nominees")
def create_nominee(
    payload: NomineeCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    body = payload.model_dump(mode="json")
    user_id = user_id_from_request(request)
    data = run_with_optional_idempotency(
        request,
        endpoint="POST:/api/v1/nominees",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.create_nominee(user_id=user_id, payload=body),
    )
    return created_response(request, data, "Nominee created successfully")


@router.get("/nominees")
def list_nominees(request: Request, is_active: bool | None = Query(default=None)):
    nominees = store.list_nominees(user_id=user_id_from_request(request), is_active=is_active)
    return success_envelope({"nominees": nominees, "total": len(nominees)}, trace_id_from_request(request))


@router.get("/nominees/my-access")
def my_access(request: Request):
    accounts = store.my_nominee_access(user_id=user_id_from_request(request))
    return success_envelope({"accounts": accounts, "total": len(accounts)}, trace_id_from_request(request))


@router.get("/nominees/stats/summary")
def nominee_stats(request: Request):
    stats = store.nominee_stats(user_id=user_id_from_request(request))
    return success_envelope({"stats": stats}, trace_id_from_request(request))


@router.get("/nominees/{nominee_id}")
def get_nominee(nominee_id: str, request: Request):
    nominee = store.get_nominee(user_id=user_id_from_request(request), nominee_id=nominee_id)
    return success_envelope(nominee, trace_id_from_request(request))


@router.put("/nominees/{nominee_id}")
def update_nominee(nominee_id: str, payload: NomineeUpdateRequest, request: Request):
    nominee = store.update_nominee(
        user_id=user_id_from_request(request),
        nominee_id=nominee_id,
        payload=payload.model_dump(mode="json", exclude_unset=True),
    )
    return success_envelope(nominee, trace_id_from_request(request), "Nominee updated successfully")


@router.delete("/nominees/{nominee_id}")
def delete_nominee(nominee_id: str, request: Request):
    data = store.delete_nominee(user_id=user_id_from_request(request), nominee_id=nominee_id)
    return success_envelope(data, trace_id_from_request(request), "Nominee deleted successfully")


@router.post("/nominees/{nominee_id}/invite")
def invite_nominee(nominee_id: str, request: Request, payload: NomineeInviteRequest | None = None):
    body = payload or NomineeInviteRequest()
    auth = current_user(request)
    data = store.invite_nominee(
        user_id=auth.user_id,
        nominee_id=nominee_id,
        payload=body.model_dump(mode="json"),
        owner_name=auth.full_name or auth.email or auth.user_id,
        owner_email=auth.email,
    )
    message = (
        "Invitation sent successfully" if data["email_sent"] else "Invitation created but email failed to send"
    )
    return success_envelope(data, trace_id_from_request(request), message)


@router.put("/nominees/{nominee_id}/revoke")
def revoke_nominee(nominee_id: str, request: Request):
    nominee = store.revoke_nominee_access(user_id=user_id_from_request(request), nominee_id=nominee_id)
    return success_envelope(nominee, trace_id_from_request(request), "Nominee access revoked successfully")


@router.patch("/nominees/{nominee_id}/access-log")
def log_access(nominee_id: str, request: Request):
    data = store.log_nominee_access(user_id=user_id_from_request(request), nominee_id=nominee_id)
    return success_envelope(data, trace_id_from_request(request), "Access logged")


@router.post("/nominees/{nominee_id}/verify-mobile")
def send_mobile_otp(nominee_id: str, request: Request):
    data = store.send_nominee_mobile_otp(user_id=user_id_from_request(request), nominee_id=nominee_id)
    return success_envelope(data, trace_id_from_request(request), "OTP sent")


@router.post("/nominees/{nominee_id}/verify-mobile/confirm")
def confirm_mobile_otp(nominee_id: str, payload: MobileOtpConfirmRequest, request: Request):
    nominee = store.confirm_nominee_mobile_otp(
        user_id=user_id_from_request(request),
        nominee_id=nominee_id,
        otp=payload.otp,
    )
    return success_envelope(nominee, trace_id_from_request(request), "Mobile number verified")
