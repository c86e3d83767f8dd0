"""
JustTry CRM - Permission System
Granular permission keys + role presets + FastAPI dependencies.
Lead visibility rules per role.
"""

import logging
from typing import Dict
from fastapi import Depends, HTTPException

from models import Lead, User, UserRole

logger = logging.getLogger("permissions")

# ════════════════════════════════════════════════════════════════════════
# ALL PERMISSION KEYS
# ════════════════════════════════════════════════════════════════════════

ALL_PERMISSION_KEYS = [
    "leads.view",
    "leads.create",
    "leads.edit",
    "leads.edit_status",
    "leads.assign",
    "leads.delete",
    "leads.add_documents",
    "leads.send_email",
    "leads.credit_check",

    "bank_details.edit",
    "bank_details.verify",

    "disbursements.initiate",

    "users.manage",
    "stats.view_all",
]

# ════════════════════════════════════════════════════════════════════════
# ROLE PRESETS
# ════════════════════════════════════════════════════════════════════════

ROLE_PRESETS: Dict[str, Dict[str, bool]] = {
    "admin": {
        "leads.view": True, "leads.create": True, "leads.edit": True, "leads.edit_status": True,
        "leads.assign": True, "leads.delete": True, "leads.add_documents": True,
        "leads.send_email": True, "leads.credit_check": True,
        "bank_details.edit": True, "bank_details.verify": False,
        "disbursements.initiate": True,
        "users.manage": True,
        "stats.view_all": True,
    },

    "back-office": {
        "leads.view": True, "leads.create": False, "leads.edit": False, "leads.edit_status": True,
        "leads.assign": False, "leads.delete": False, "leads.add_documents": True,
        "leads.send_email": True, "leads.credit_check": True,
        "bank_details.edit": True, "bank_details.verify": True,
        "disbursements.initiate": True,
        "users.manage": False,
        "stats.view_all": False,
    },

    "sales": {
        "leads.view": True, "leads.create": True, "leads.edit": True, "leads.edit_status": True,
        "leads.assign": False, "leads.delete": False, "leads.add_documents": True,
        "leads.send_email": True, "leads.credit_check": False,
        "bank_details.edit": True, "bank_details.verify": False,
        "disbursements.initiate": False,
        "users.manage": False,
        "stats.view_all": False,
    },
}

# Roles allowed to move a lead through its pipeline
STATUS_CHANGE_ROLES = {UserRole.SALES, UserRole.BACK_OFFICE, UserRole.ADMIN}


def get_preset_permissions(role: str) -> Dict[str, bool]:
    """Returns the default permissions for a role."""
    return dict(ROLE_PRESETS.get(role, ROLE_PRESETS["sales"]))


# ════════════════════════════════════════════════════════════════════════
# PERMISSION CHECK HELPERS
# ════════════════════════════════════════════════════════════════════════

def user_has_permission(user: User, key: str) -> bool:
    perms = get_preset_permissions(UserRole(user.role).value)
    return perms.get(key, False) is True


def build_lead_visibility_filter(user: User) -> dict:
    """
    MongoDB filter for the leads a user may see.
    - sales: leads assigned to them
    - back-office: leads of their service types (all when none configured)
    - admin: everything
    """
    if user.role == UserRole.SALES:
        return {"assigned_to": user.id}
    if user.role == UserRole.BACK_OFFICE and user.service_types:
        return {"service_type": {"$in": [s.value for s in user.service_types]}}
    return {}


def can_view_lead(user: User, lead: Lead) -> bool:
    if user.role == UserRole.SALES:
        return lead.assigned_to == user.id
    if user.role == UserRole.BACK_OFFICE and user.service_types:
        return lead.service_type in user.service_types
    return True


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_permission(permission_key: str):
    """
    FastAPI dependency factory.
    Usage: user: User = Depends(require_permission("leads.view"))
    """
    from routes.auth import get_current_user

    async def _check(user: User = Depends(get_current_user)):
        if not user_has_permission(user, permission_key):
            logger.warning(
                f"[PERMISSION_DENIED] user={user.email} "
                f"key={permission_key} role={user.role}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Permission required: {permission_key}"
            )
        return user

    return _check
