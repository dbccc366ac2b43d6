"""
Audit Trail API

Read access to the audit trail for roles holding ``audit_logs:read``
(super_admin, national_admin, auditor). Entries are returned masked;
exports are themselves audited as data exports.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from audit.event_types import AuditAction, AuditResource, AuditResult
from audit.storage import AuditFilter
from core.container import SecurityCore
from rbac.enums import Action, Resource, RiskLevel

from .dependencies import AuthContext, get_core, request_info, require_escalation, require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit", tags=["Audit Trail"])

_read_audit = require_permission(Resource.AUDIT_LOGS, Action.READ)


def _filters(
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    resource_id: Optional[str] = None,
    result: Optional[AuditResult] = None,
    risk_level: Optional[RiskLevel] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> AuditFilter:
    return AuditFilter(
        actor_id=actor_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        result=result,
        risk_level=risk_level,
        start_date=start_date,
        end_date=end_date,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/logs")
async def query_logs(
    filters: AuditFilter = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Paginated audit entries, newest first."""
    return await run_in_threadpool(core.audit.query, filters, page=page, limit=limit)


@router.get("/logs/{entry_id}")
async def get_log(
    entry_id: str,
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    entry = await run_in_threadpool(core.audit.get_entry, entry_id)
    if entry is None:
        raise HTTPException(404, "Audit entry not found")
    data = core.audit.mask_entry(entry)
    data["integrityVerified"] = entry.verify_integrity()
    return data


@router.get("/statistics")
async def statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return await run_in_threadpool(core.audit.get_statistics, start_date, end_date)


@router.get("/security-events")
async def security_events(
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return {"events": await run_in_threadpool(core.audit.get_security_events, since, limit=limit)}


@router.get("/security-stats")
async def security_stats(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return await run_in_threadpool(core.monitor.get_security_stats, hours)


@router.get("/export")
async def export_logs(
    request: Request,
    filters: AuditFilter = Depends(_filters),
    limit: int = Query(default=500, ge=1, le=500),
    ctx: AuthContext = Depends(_read_audit),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Masked entries for offline review; recorded as a data export."""
    result = await run_in_threadpool(core.audit.query, filters, page=1, limit=limit)
    core.audit.log(
        AuditAction.DATA_EXPORT,
        actor_id=ctx.user_id,
        resource=AuditResource.AUDIT_LOG,
        description=f"Exported {len(result['entries'])} audit entries",
        request=request_info(request),
        session_id=ctx.session_id,
        metadata={"count": len(result["entries"])},
    )
    return result


@router.post("/retention/cleanup")
async def cleanup_expired(
    request: Request,
    ctx: AuthContext = Depends(require_escalation("access_audit_logs")),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Delete entries whose retention date has passed."""
    removed = await run_in_threadpool(core.audit.cleanup_expired_logs)
    core.audit.log(
        AuditAction.BULK_OPERATION,
        actor_id=ctx.user_id,
        resource=AuditResource.AUDIT_LOG,
        description=f"Retention sweep removed {removed} audit entries",
        request=request_info(request),
        session_id=ctx.session_id,
        metadata={"removed": removed},
    )
    return {"success": True, "removed": removed}
