"""
Scope and condition checks used by the authorization engine.

All functions are pure: they take the acting user, the effective grant
and the request context, and return ``None`` when the check passes or a
human-readable denial reason when it fails.
"""

import ipaddress
import logging
from datetime import datetime
from typing import Iterable, Optional

from .enums import Scope
from .models import AccessContext, EffectivePermission, PermissionConditions, UserAccount

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# =============================================================================
# SCOPE
# =============================================================================

def check_scope(
    user: UserAccount,
    effective: EffectivePermission,
    context: AccessContext,
) -> Optional[str]:
    """Check the request context against the breadth of the grant."""
    scope = effective.scope

    if scope in (Scope.GLOBAL, Scope.NATIONAL, Scope.PERSONAL):
        return None

    if scope == Scope.STATE:
        if not user.state_id:
            return "User has no state assignment"
        if context.state_id and context.state_id != user.state_id:
            return "Access denied: different state"
        return None

    if scope == Scope.CAMPUS:
        if not user.campus_id:
            return "User has no campus assignment"
        if context.campus_id and context.campus_id != user.campus_id:
            return "Access denied: different campus"
        return None

    if scope == Scope.OWN_RECORDS:
        # With neither id supplied the handler filters on the actor itself
        if context.target_user_id and context.target_user_id != user.user_id:
            return "Access denied: can only access own records"
        if context.resource_owner_id and context.resource_owner_id != user.user_id:
            return "Access denied: can only access own resources"
        return None

    return "Unknown scope"


# =============================================================================
# CONDITIONS
# =============================================================================

def hour_allowed(hour: int, start: int, end: int) -> bool:
    """Inclusive hour window; start > end wraps around midnight."""
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


def check_conditions(
    conditions: PermissionConditions,
    context: AccessContext,
    now: datetime,
) -> Optional[str]:
    """Time window, weekday set, then IP block/allow lists."""
    if conditions.allowed_hours:
        start, end = conditions.allowed_hours
        if not hour_allowed(now.hour, start, end):
            return "Access denied: outside allowed hours"

    if conditions.allowed_days:
        today = WEEKDAYS[now.weekday()]
        if today not in {d.lower() for d in conditions.allowed_days}:
            return "Access denied: not allowed on this day"

    if conditions.blocked_ips or conditions.allowed_ips:
        ip = context.ip_address
        if ip and ip_matches(ip, conditions.blocked_ips):
            return "Access denied: IP address blocked"
        if conditions.allowed_ips and (not ip or not ip_matches(ip, conditions.allowed_ips)):
            return "Access denied: IP address not allowed"

    return None


def check_ip_ranges(ranges: Iterable[str], ip_address: Optional[str]) -> Optional[str]:
    """Role-level IP range restriction."""
    ranges = list(ranges)
    if not ranges:
        return None
    if not ip_address or not ip_matches(ip_address, ranges):
        return "Access denied: IP address outside role's allowed ranges"
    return None


def ip_matches(ip_address: str, entries: Iterable[str]) -> bool:
    """True when the address equals an entry or falls inside a CIDR entry."""
    try:
        address = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        logger.debug(f"Unparseable client address: {ip_address!r}")
        return any(ip_address == entry for entry in entries)

    for entry in entries:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry.strip(), strict=False):
                    return True
            elif address == ipaddress.ip_address(entry.strip()):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed IP condition entry: {entry!r}")
    return False
