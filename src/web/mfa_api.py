"""
Multi-Factor Authentication (MFA) API

Device enrollment, verification and management for the calling user,
plus the administrative reset operations.

A successful verification marks the caller's session (the token's ``sid``)
as verified for the configured window; sensitive actions check that flag.
Secrets and backup codes are returned once, at setup or regeneration.
Administrators may only reset MFA for accounts they outrank.

MFA service calls touch the stores and hash backup codes, so they run in
the threadpool.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from audit.event_types import AuditAction, AuditResource, AuditResult
from core.container import SecurityCore
from security import mfa as mfa_codes
from security.exceptions import DeviceLockedError, MFARequiredError
from security.mfa import MFAResult
from security.mfa_device import DeviceType

from .dependencies import (
    AuthContext,
    ensure_can_manage,
    get_core,
    request_info,
    require_auth,
    require_escalation,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mfa", tags=["mfa"])

_STATUS_BY_CODE = {
    mfa_codes.USER_NOT_FOUND: 404,
    mfa_codes.DEVICE_NOT_FOUND: 404,
    mfa_codes.TOTP_ALREADY_EXISTS: 409,
    mfa_codes.ALREADY_VERIFIED: 409,
}


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SetupDeviceRequest(BaseModel):
    device_type: DeviceType = DeviceType.AUTHENTICATOR_APP
    device_name: str = Field(default="Authenticator", min_length=1, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=30)
    email_address: Optional[str] = Field(default=None, max_length=255)


class VerifySetupRequest(BaseModel):
    device_id: str
    code: str = Field(..., min_length=6, max_length=8)


class VerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)
    device_id: Optional[str] = None


class DeviceRequest(BaseModel):
    device_id: Optional[str] = None


def _respond(result: MFAResult) -> Any:
    """Success payload, or the failure rendered with its HTTP status."""
    if result.success:
        return result.to_dict()
    if result.code == mfa_codes.DEVICE_LOCKED:
        raise DeviceLockedError(result.message, lock_time_remaining=result.lock_time_remaining or 0)
    return JSONResponse(status_code=_STATUS_BY_CODE.get(result.code, 400), content=result.to_dict())


def _audit(core, ctx, request, action, result, description, resource_id=None, target_user_id=None, body=None):
    core.audit.log(
        action,
        actor_id=ctx.user_id,
        resource=AuditResource.MFA_DEVICE,
        resource_id=resource_id,
        target_user_id=target_user_id,
        result=AuditResult.SUCCESS if result.success else AuditResult.FAILURE,
        description=description,
        error_message=None if result.success else result.message,
        request=request_info(request, body=body),
        session_id=ctx.session_id,
        mfa_verified=result.success and action == AuditAction.MFA_VERIFIED,
        metadata={"code": result.code},
    )


# =============================================================================
# CALLER'S DEVICES
# =============================================================================

@router.get("/status")
async def mfa_status(
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return await run_in_threadpool(core.mfa.get_status, ctx.user_id, session_id=ctx.session_id)


@router.post("/setup")
async def setup_device(
    body: SetupDeviceRequest,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    """
    Start enrollment of a new device.

    Returns the device id, the provisioning URI and secret for
    authenticator apps, and the backup codes.
    """
    result = await run_in_threadpool(
        core.mfa.setup_device,
        ctx.user_id,
        body.device_type,
        body.device_name,
        phone_number=body.phone_number,
        email_address=body.email_address,
    )
    _audit(core, ctx, request, AuditAction.MFA_SETUP, result,
           f"MFA {body.device_type.value} device setup started",
           resource_id=result.data.get("device_id"),
           body={"device_type": body.device_type.value, "device_name": body.device_name})
    return _respond(result)


@router.post("/verify-setup")
async def verify_setup(
    body: VerifySetupRequest,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    result = await run_in_threadpool(
        core.mfa.verify_setup, body.device_id, body.code, user_id=ctx.user_id, session_id=ctx.session_id
    )
    action = AuditAction.MFA_VERIFIED if result.success else AuditAction.MFA_FAILED
    _audit(core, ctx, request, action, result, "MFA device setup verification", resource_id=body.device_id)
    return _respond(result)


@router.post("/verify")
async def verify(
    body: VerifyRequest,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    """Verify a code for this session (primary device unless device_id is given)."""
    result = await run_in_threadpool(
        core.mfa.verify, ctx.user_id, body.code, device_id=body.device_id, session_id=ctx.session_id
    )
    action = AuditAction.MFA_VERIFIED if result.success else AuditAction.MFA_FAILED
    _audit(core, ctx, request, action, result, "MFA verification",
           resource_id=result.data.get("device_id") or body.device_id)
    return _respond(result)


@router.post("/challenge")
async def send_challenge(
    body: DeviceRequest,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    return _respond(await run_in_threadpool(core.mfa.send_challenge, ctx.user_id, body.device_id or ""))


@router.get("/devices")
async def list_devices(
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return {"devices": await run_in_threadpool(core.mfa.list_devices, ctx.user_id)}


@router.delete("/devices/{device_id}")
async def remove_device(
    device_id: str,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    """Remove a device. The last active device cannot be removed while MFA is required."""
    result = await run_in_threadpool(core.mfa.remove_device, ctx.user_id, device_id)
    _audit(core, ctx, request, AuditAction.MFA_DISABLED, result, "MFA device removed", resource_id=device_id)
    return _respond(result)


@router.post("/devices/{device_id}/deactivate")
async def deactivate_device(
    device_id: str,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    result = await run_in_threadpool(core.mfa.deactivate_device, ctx.user_id, device_id)
    _audit(core, ctx, request, AuditAction.MFA_DISABLED, result, "MFA device deactivated", resource_id=device_id)
    return _respond(result)


@router.post("/backup-codes/regenerate")
async def regenerate_backup_codes(
    body: DeviceRequest,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
):
    """Issue a fresh set of backup codes. Requires a current session verification."""
    if not await run_in_threadpool(core.mfa.is_verification_current, ctx.session_id):
        raise MFARequiredError("MFA verification required to regenerate backup codes")
    result = await run_in_threadpool(core.mfa.regenerate_backup_codes, ctx.user_id, device_id=body.device_id)
    _audit(core, ctx, request, AuditAction.MFA_SETUP, result, "MFA backup codes regenerated",
           resource_id=result.data.get("device_id"))
    return _respond(result)


# =============================================================================
# ADMINISTRATION
# =============================================================================

@router.post("/admin/users/{user_id}/disable")
async def admin_disable(
    user_id: str,
    request: Request,
    ctx: AuthContext = Depends(require_escalation("reset_mfa")),
    core: SecurityCore = Depends(get_core),
):
    if await run_in_threadpool(core.store.get_user, user_id) is None:
        raise HTTPException(404, "User not found")
    await ensure_can_manage(core, ctx, user_id, "reset_mfa")
    result = await run_in_threadpool(core.mfa.admin_disable, user_id, actor_id=ctx.user_id)
    _audit(core, ctx, request, AuditAction.MFA_DISABLED, result, f"MFA disabled for user {user_id} by administrator",
           target_user_id=user_id)
    return _respond(result)


@router.post("/admin/devices/{device_id}/unlock")
async def admin_unlock_device(
    device_id: str,
    request: Request,
    ctx: AuthContext = Depends(require_escalation("reset_mfa")),
    core: SecurityCore = Depends(get_core),
):
    device = await run_in_threadpool(core.devices.get, device_id)
    if device is None:
        raise HTTPException(404, "MFA device not found")
    await ensure_can_manage(core, ctx, device.user_id, "reset_mfa")

    result = await run_in_threadpool(core.mfa.admin_unlock_device, device_id, actor_id=ctx.user_id)
    _audit(core, ctx, request, AuditAction.ACCOUNT_UNLOCKED, result, f"MFA device {device_id} unlocked by administrator",
           resource_id=device_id, target_user_id=device.user_id)
    return _respond(result)
