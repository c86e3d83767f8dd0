"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  JustTry CRM - Models Package                                                ║
║                                                                              ║
║  Exports all models for easy import                                          ║
║  from models import Lead, LeadHistory, User, UserRole, etc.                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Lead aggregate
from .lead import (
    ServiceType,
    SUB_CATEGORIES,
    PIPELINE_STATUSES,
    APPROVAL_STATUS,
    CLOSED_STATUSES,
    VALID_STATUS_TRANSITIONS,
    NEW_STATUS,
    ELIGIBILITY_CHECK_STATUS,
    APPROVED_STATUS,
    DISBURSED_STATUS,
    SYSTEM_USER,
    HistoryKind,
    CibilData,
    LeadHistory,
    AccountType,
    BankDetails,
    BankDetailsInput,
    DisbursementStatus,
    Disbursement,
    LeadDocumentRef,
    Lead,
    LeadCreate,
    LeadUpdate,
    StatusChangeRequest,
    LeadAssign,
    expected_approval_status,
    is_known_status,
    current_credit_check,
    latest_disbursement,
    is_closed,
)

# Auth
from .auth import (
    UserRole,
    VALID_ROLES,
    User,
    UserLogin,
    UserCreate,
    UserUpdate,
)

__all__ = [
    # Lead
    "ServiceType",
    "SUB_CATEGORIES",
    "PIPELINE_STATUSES",
    "APPROVAL_STATUS",
    "CLOSED_STATUSES",
    "VALID_STATUS_TRANSITIONS",
    "NEW_STATUS",
    "ELIGIBILITY_CHECK_STATUS",
    "APPROVED_STATUS",
    "DISBURSED_STATUS",
    "SYSTEM_USER",
    "HistoryKind",
    "CibilData",
    "LeadHistory",
    "AccountType",
    "BankDetails",
    "BankDetailsInput",
    "DisbursementStatus",
    "Disbursement",
    "LeadDocumentRef",
    "Lead",
    "LeadCreate",
    "LeadUpdate",
    "StatusChangeRequest",
    "LeadAssign",
    "expected_approval_status",
    "is_known_status",
    "current_credit_check",
    "latest_disbursement",
    "is_closed",
    # Auth
    "UserRole",
    "VALID_ROLES",
    "User",
    "UserLogin",
    "UserCreate",
    "UserUpdate",
]
