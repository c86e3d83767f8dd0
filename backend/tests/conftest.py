"""
Shared fixtures: in-memory lead store, fake collaborators, users and leads.
No MongoDB, no network.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from models import (
    BankDetails,
    CibilData,
    HistoryKind,
    Lead,
    LeadHistory,
    ServiceType,
    User,
    UserRole,
)
from services.errors import ConcurrencyConflict, PersistenceFailure
from services.notification_dispatch import DispatchResult, EmailContent
from services.payment_gateway import PaymentGateway, TransferResult


# ════════════════════════════════════════════════════════════════════════════
# STORE
# ════════════════════════════════════════════════════════════════════════════

def _matches(doc: dict, query: dict) -> bool:
    for key, expected in query.items():
        if isinstance(expected, dict) and "$in" in expected:
            if doc.get(key) not in expected["$in"]:
                return False
        elif doc.get(key) != expected:
            return False
    return True


class InMemoryLeadStore:
    """Same contract as LeadStore, documents kept as JSON dicts."""

    def __init__(self):
        self.docs = {}
        self.saves: List[Lead] = []
        self.fail_saves = 0
        self.fail_after = None

    def seed(self, lead: Lead) -> Lead:
        stored = lead.model_copy(update={"version": max(lead.version, 1)})
        self.docs[stored.id] = stored.to_document()
        return stored

    async def get_lead(self, lead_id):
        doc = self.docs.get(lead_id)
        return Lead.model_validate(doc) if doc else None

    async def save_leads(self, leads):
        if self.fail_after is not None:
            if self.fail_after == 0:
                raise PersistenceFailure("storage unavailable")
            self.fail_after -= 1
        if self.fail_saves:
            self.fail_saves -= 1
            raise PersistenceFailure("storage unavailable")

        saved = []
        for lead in leads:
            current = self.docs.get(lead.id)
            if lead.version == 0 and current is not None:
                raise ConcurrencyConflict(f"Lead {lead.id} already exists")
            if lead.version > 0 and (current is None or current["version"] != lead.version):
                raise ConcurrencyConflict(f"Lead {lead.id} was modified by someone else")
            stored = lead.model_copy(update={"version": lead.version + 1})
            self.docs[lead.id] = stored.to_document()
            self.saves.append(stored)
            saved.append(stored)
        return saved

    async def list_leads(self, query=None, limit=500):
        docs = [d for d in self.docs.values() if _matches(d, query or {})]
        docs.sort(key=lambda d: d.get("created_at", ""), reverse=True)
        return [Lead.model_validate(d) for d in docs[:limit]]

    async def delete_lead(self, lead_id):
        return self.docs.pop(lead_id, None) is not None


# ════════════════════════════════════════════════════════════════════════════
# COLLABORATORS
# ════════════════════════════════════════════════════════════════════════════

class FakeComposer:

    def __init__(self):
        self.requests = []

    async def compose_custom_email(self, message, lead):
        self.requests.append((message, lead.id))
        return EmailContent(subject=f"Update for {lead.name}", html=f"<p>{message}</p>", text=message)


class FakeNotifier:
    """Records every dispatch. Results are configurable per channel."""

    def __init__(self):
        self.calls = []
        self.emails = []
        self.call_result = DispatchResult(success=True, reference_id="call-1")
        self.email_result = DispatchResult(success=True, reference_id="email-1")
        self.composer = FakeComposer()

    async def place_call(self, phone, name, service_type, status, lead_id):
        self.calls.append({"phone": phone, "name": name, "service_type": service_type,
                           "status": status, "lead_id": lead_id})
        return self.call_result

    async def send_email(self, email, name, service_type, status, lead_id, content=None):
        self.emails.append({"email": email, "name": name, "service_type": service_type,
                            "status": status, "lead_id": lead_id, "content": content})
        return self.email_result


class FakeCreditBureau:

    def __init__(self, score=780):
        self.score = score
        self.requests = []

    async def check(self, identity, name="", email="", phone=""):
        self.requests.append(identity)
        return CibilData(
            score=self.score,
            risk_category="Low Risk" if self.score >= 750 else "High Risk",
            total_accounts=4,
            overdue_accounts=0,
            report_date="2026-01-01T00:00:00+00:00",
            data_source="test",
        )


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self, results=None):
        self.results = list(results or [])
        self.transfers = []

    async def transfer(self, amount, bank_details, lead_id, email):
        self.transfers.append({"amount": amount, "lead_id": lead_id, "email": email})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return TransferResult(success=True, reference_id=f"pay-{len(self.transfers)}", raw={"status": "processed"})

    async def payout_status(self, reference_id):
        return {"status": "processed", "reference_id": reference_id}


class Clock:
    """Strictly increasing ISO timestamps."""

    def __init__(self):
        self.current = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current.isoformat()


# ════════════════════════════════════════════════════════════════════════════
# DATA
# ════════════════════════════════════════════════════════════════════════════

def make_user(role: UserRole, user_id: str = None, service_types=None) -> User:
    return User(
        id=user_id or f"USR-{role.value}",
        name=f"Test {role.value}",
        email=f"{role.value}@justtry.test",
        role=role,
        service_types=service_types or [],
    )


def make_lead(lead_id="LEAD-1", service_type=ServiceType.LOAN, status="New", value=500000,
              phone="9876543210", email="asha@example.com", assigned_to="USR-sales",
              bank_details=None, disbursements=None) -> Lead:
    history = [LeadHistory(
        status="New", timestamp="2025-12-01T10:00:00+00:00", user="USR-sales",
        kind=HistoryKind.STATUS_CHANGE, remarks="Lead created",
    )]
    if status != "New":
        history.append(LeadHistory(
            status=status, timestamp="2025-12-02T10:00:00+00:00", user="USR-back-office",
            kind=HistoryKind.STATUS_CHANGE,
        ))
    sub_categories = {
        ServiceType.LOAN: "Personal Loan",
        ServiceType.INVESTMENT: "SIP/Mutual Funds",
        ServiceType.INSURANCE: "Health Insurance",
    }
    return Lead(
        id=lead_id,
        name="Asha Rao",
        email=email,
        phone=phone,
        service_type=service_type,
        sub_category=sub_categories[service_type],
        value=value,
        assigned_to=assigned_to,
        created_at="2025-12-01T10:00:00+00:00",
        history=history,
        bank_details=bank_details,
        disbursements=disbursements or [],
    )


def verified_bank_details() -> BankDetails:
    return BankDetails(
        account_holder_name="Asha Rao",
        account_number="123456789012",
        bank_name="State Bank of India",
        ifsc_code="SBIN0001234",
        account_type="savings",
        verified_by="USR-back-office",
        verified_at="2025-12-03T10:00:00+00:00",
    )


@pytest.fixture
def store():
    return InMemoryLeadStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def bureau():
    return FakeCreditBureau()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sales_user():
    return make_user(UserRole.SALES)


@pytest.fixture
def back_office_user():
    return make_user(UserRole.BACK_OFFICE)


@pytest.fixture
def admin_user():
    return make_user(UserRole.ADMIN)
