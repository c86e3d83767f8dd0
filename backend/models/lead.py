"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  JustTry CRM - Lead model                                                    ║
║                                                                              ║
║  RULES:                                                                      ║
║  1. history is append-only: an entry is never edited or removed              ║
║  2. status is DERIVED from the latest status-bearing history entry           ║
║  3. one disbursement per attempt: "initiated", then replaced by its outcome  ║
║  4. bank details are unique per lead, verified only by back-office           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ServiceType(str, Enum):
    LOAN = "Loan"
    INVESTMENT = "Investment"
    INSURANCE = "Insurance"


SUB_CATEGORIES: Dict[ServiceType, List[str]] = {
    ServiceType.LOAN: ["Personal Loan", "Business Loan", "Home Loan", "Vehicle Loan"],
    ServiceType.INVESTMENT: ["SIP/Mutual Funds", "Stocks/Demat", "Fixed Deposits", "Bonds"],
    ServiceType.INSURANCE: ["Health Insurance", "Life Insurance", "Vehicle Insurance", "Term Plans"],
}


# ════════════════════════════════════════════════════════════════════════════
# PIPELINE VOCABULARY
# ════════════════════════════════════════════════════════════════════════════

NEW_STATUS = "New"
ELIGIBILITY_CHECK_STATUS = "Eligibility Check"
APPROVED_STATUS = "Approved"
DISBURSED_STATUS = "Disbursed"
SYSTEM_USER = "system"

PIPELINE_STATUSES: Dict[ServiceType, List[str]] = {
    ServiceType.LOAN: [
        "New", "KYC Pending", "Documents Needed", "Eligibility Check",
        "Approved", "Rejected", "Disbursed", "Completed",
    ],
    ServiceType.INVESTMENT: [
        "New", "Risk Profiling", "KYC Verification", "Investment Planning",
        "Portfolio Creation", "Activated", "Completed",
    ],
    ServiceType.INSURANCE: [
        "New", "KYC Pending", "Medical Check", "Underwriting",
        "Approved / Rejected", "Policy Issued", "Completed",
    ],
}

# Status that fires the approval call + email
APPROVAL_STATUS: Dict[ServiceType, str] = {
    ServiceType.LOAN: "Approved",
    ServiceType.INVESTMENT: "Activated",
    ServiceType.INSURANCE: "Policy Issued",
}

# Won deals, counted as closed in team performance
CLOSED_STATUSES: Dict[ServiceType, List[str]] = {
    ServiceType.LOAN: ["Disbursed", "Completed"],
    ServiceType.INVESTMENT: ["Activated", "Completed"],
    ServiceType.INSURANCE: ["Policy Issued", "Completed"],
}

# Only enforced with STRICT_PIPELINE_TRANSITIONS=true
VALID_STATUS_TRANSITIONS: Dict[ServiceType, Dict[str, List[str]]] = {
    ServiceType.LOAN: {
        "New": ["KYC Pending", "Documents Needed", "Rejected"],
        "KYC Pending": ["Documents Needed", "Eligibility Check", "Rejected"],
        "Documents Needed": ["KYC Pending", "Eligibility Check", "Rejected"],
        "Eligibility Check": ["Documents Needed", "Approved", "Rejected"],
        "Approved": ["Rejected"],  # -> Disbursed ONLY via the disbursement gate
        "Disbursed": ["Completed"],
        "Rejected": [],  # TERMINAL
        "Completed": [],  # TERMINAL
    },
    ServiceType.INVESTMENT: {
        "New": ["Risk Profiling"],
        "Risk Profiling": ["KYC Verification"],
        "KYC Verification": ["Risk Profiling", "Investment Planning"],
        "Investment Planning": ["Portfolio Creation"],
        "Portfolio Creation": ["Investment Planning", "Activated"],
        "Activated": ["Completed"],
        "Completed": [],
    },
    ServiceType.INSURANCE: {
        "New": ["KYC Pending"],
        "KYC Pending": ["Medical Check", "Underwriting"],
        "Medical Check": ["Underwriting"],
        "Underwriting": ["Approved / Rejected"],
        "Approved / Rejected": ["Policy Issued", "Completed"],
        "Policy Issued": ["Completed"],
        "Completed": [],
    },
}


def expected_approval_status(service_type: ServiceType) -> str:
    return APPROVAL_STATUS[ServiceType(service_type)]


def is_known_status(service_type: ServiceType, status: str) -> bool:
    return status in PIPELINE_STATUSES[ServiceType(service_type)]


# ════════════════════════════════════════════════════════════════════════════
# HISTORY
# ════════════════════════════════════════════════════════════════════════════

class HistoryKind(str, Enum):
    STATUS_CHANGE = "status_change"
    CREDIT_CHECK = "credit_check"
    NOTIFICATION = "notification"
    DISBURSEMENT = "disbursement"
    NOTE = "note"


# Kinds whose status drives lead.status
STATUS_BEARING_KINDS = {HistoryKind.STATUS_CHANGE, HistoryKind.DISBURSEMENT}


class CibilData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    score: int
    risk_category: str
    total_accounts: int = 0
    overdue_accounts: int = 0
    report_date: str = ""
    data_source: str = ""


class LeadHistory(BaseModel):
    """Immutable audit entry. Never edited once appended."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    status: str
    timestamp: str
    user: str
    kind: HistoryKind = HistoryKind.STATUS_CHANGE
    remarks: Optional[str] = None
    cibil_data: Optional[CibilData] = None
    reference_id: Optional[str] = None


# ════════════════════════════════════════════════════════════════════════════
# BANK DETAILS / DISBURSEMENTS / DOCUMENTS
# ════════════════════════════════════════════════════════════════════════════

class AccountType(str, Enum):
    SAVINGS = "savings"
    CURRENT = "current"


class BankDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_holder_name: str
    account_number: str
    bank_name: str
    ifsc_code: str
    branch_name: Optional[str] = None
    account_type: AccountType = AccountType.SAVINGS
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return bool(self.verified_by) and bool(self.verified_at)


class BankDetailsInput(BaseModel):
    """Bank details as submitted by a user (verification fields excluded)"""
    account_holder_name: str
    account_number: str
    bank_name: str
    ifsc_code: str
    branch_name: Optional[str] = None
    account_type: AccountType = AccountType.SAVINGS

    @field_validator("ifsc_code")
    @classmethod
    def upper_ifsc(cls, v):
        return v.strip().upper()

    @field_validator("account_number")
    @classmethod
    def strip_account_number(cls, v):
        return v.replace(" ", "").strip()


class DisbursementStatus(str, Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"  # declared, never persisted: the gateway call is awaited in-request
    COMPLETED = "completed"
    FAILED = "failed"


class Disbursement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: float
    reference_id: str = ""
    status: DisbursementStatus = DisbursementStatus.INITIATED
    initiated_by: str
    initiated_at: str
    completed_at: Optional[str] = None
    failure_reason: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None


class LeadDocumentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    url: str
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[str] = None


# ════════════════════════════════════════════════════════════════════════════
# LEAD AGGREGATE
# ════════════════════════════════════════════════════════════════════════════

class Lead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    email: str = ""
    phone: str = ""
    service_type: ServiceType
    sub_category: str = ""
    value: float = Field(default=0, ge=0)
    assigned_to: Optional[str] = None
    created_at: str = ""
    documents: List[LeadDocumentRef] = Field(default_factory=list)
    history: List[LeadHistory] = Field(default_factory=list)
    bank_details: Optional[BankDetails] = None
    disbursements: List[Disbursement] = Field(default_factory=list)
    version: int = 0

    @computed_field
    @property
    def status(self) -> str:
        for entry in reversed(self.history):
            if entry.kind in STATUS_BEARING_KINDS:
                return entry.status
        return NEW_STATUS

    def with_entry(self, entry: LeadHistory) -> "Lead":
        """Copy of the lead with one more history entry."""
        updated = self.model_copy(deep=True)
        updated.history.append(entry)
        return updated

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


def current_credit_check(lead: Lead) -> Optional[LeadHistory]:
    """Latest history entry carrying credit-bureau data, None when never checked."""
    checks = [
        (entry.timestamp, position, entry)
        for position, entry in enumerate(lead.history)
        if entry.cibil_data is not None
    ]
    if not checks:
        return None
    return max(checks, key=lambda item: (item[0], item[1]))[2]


def latest_disbursement(lead: Lead) -> Optional[Disbursement]:
    return lead.disbursements[-1] if lead.disbursements else None


def is_closed(lead: Lead) -> bool:
    return lead.status in CLOSED_STATUSES[lead.service_type]


# ════════════════════════════════════════════════════════════════════════════
# REQUEST MODELS
# ════════════════════════════════════════════════════════════════════════════

class LeadCreate(BaseModel):
    name: str
    email: str = ""
    phone: str = ""
    service_type: ServiceType
    sub_category: str
    value: float = Field(default=0, ge=0)
    assigned_to: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_required(cls, v):
        if not v or not v.strip():
            raise ValueError("Lead name is required")
        return v.strip()

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.strip().lower()


class LeadUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    sub_category: Optional[str] = None
    value: Optional[float] = Field(default=None, ge=0)


class StatusChangeRequest(BaseModel):
    status: str
    remarks: Optional[str] = None


class LeadAssign(BaseModel):
    user_id: str
