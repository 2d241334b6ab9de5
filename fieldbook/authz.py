"""
Authorization predicate for staff actions.

Callers are reduced to a closed set of roles before any guard runs; the
guard itself is a pure function of (claims, action).
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .domain.scheduling.token_service import secrets_match

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    ANONYMOUS = "ANONYMOUS"


class StaffAction(str, Enum):
    CONFIRM_APPOINTMENT = "confirm_appointment"
    PROPOSE_RESCHEDULE = "propose_reschedule"
    REJECT_APPOINTMENT = "reject_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    COMPLETE_APPOINTMENT = "complete_appointment"
    SEND_REMINDER = "send_reminder"
    UPDATE_QUOTE = "update_quote"
    VIEW_STATS = "view_stats"
    VIEW_QUEUE_DETAILS = "view_queue_details"


# Staff run the day-to-day workflow; queue internals stay admin-only
ROLE_PERMISSIONS = {
    Role.ADMIN: frozenset(StaffAction),
    Role.STAFF: frozenset(StaffAction) - {StaffAction.VIEW_QUEUE_DETAILS},
    Role.ANONYMOUS: frozenset(),
}


class Claims(BaseModel):
    role: Role = Role.ANONYMOUS
    subject: Optional[str] = None


class AuthorizationDecision(BaseModel):
    allowed: bool
    role: Role
    action: StaffAction
    reason: Optional[str] = None


def authorize(claims: Claims, action: StaffAction) -> AuthorizationDecision:
    action = StaffAction(action)
    if action in ROLE_PERMISSIONS[claims.role]:
        return AuthorizationDecision(allowed=True, role=claims.role, action=action)
    logger.warning(f"🚫 {claims.role.value} denied {action.value}")
    return AuthorizationDecision(
        allowed=False,
        role=claims.role,
        action=action,
        reason=f"Role {claims.role.value} may not {action.value.replace('_', ' ')}",
    )


def claims_from_admin_key(presented: Optional[str], configured: Optional[str]) -> Claims:
    """ADMIN claims when the X-Admin-Key header matches the configured key"""
    if secrets_match(configured, presented):
        return Claims(role=Role.ADMIN, subject="admin-api-key")
    return Claims(role=Role.ANONYMOUS)
