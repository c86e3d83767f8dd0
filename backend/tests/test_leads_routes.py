"""
HTTP surface: FastAPI TestClient with overridden dependencies.
No MongoDB: the store is in memory, event logging is mocked.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

import routes.leads as leads_routes
import routes.stats as stats_routes
from routes.auth import get_current_user
from server import app
from services.disbursement_gate import DisbursementGate
from services.lead_records import LeadRecords
from services.notification_dispatch import DispatchResult, EmailComposer
from services.task_suggestions import TaskSuggester
from services.workflow_coordinator import WorkflowCoordinator
from tests.conftest import FakeCreditBureau, FakeGateway, FakeNotifier, make_lead, verified_bank_details
from services.payment_gateway import TransferResult


class Api:
    """TestClient plus the in-memory pieces behind it."""

    def __init__(self, store, clock, tmp_path, monkeypatch):
        self.store = store
        self.notifier = FakeNotifier()
        self.gateway = FakeGateway()
        self.user = None
        self.log_event = AsyncMock()
        monkeypatch.setattr(leads_routes, "log_event", self.log_event)

        workflow = WorkflowCoordinator(store=store, notifier=self.notifier, credit_bureau=FakeCreditBureau(),
                                       clock=clock, strict_transitions=False, timeout=1)
        gate = DisbursementGate(store=store, gateway=self.gateway, clock=clock, timeout=1)
        records = LeadRecords(store=store, documents_dir=tmp_path, clock=clock)

        app.dependency_overrides[get_current_user] = lambda: self.user
        app.dependency_overrides[leads_routes.get_workflow] = lambda: workflow
        app.dependency_overrides[leads_routes.get_gate] = lambda: gate
        app.dependency_overrides[leads_routes.get_records] = lambda: records
        app.dependency_overrides[leads_routes.get_task_suggester] = lambda: TaskSuggester(EmailComposer(api_key=""))
        self.client = TestClient(app)

    def as_user(self, user):
        self.user = user
        return self.client


@pytest.fixture
def api(store, clock, tmp_path, monkeypatch):
    yield Api(store, clock, tmp_path, monkeypatch)
    app.dependency_overrides.clear()


class TestStatusRoute:

    def test_change_status(self, api, back_office_user):
        api.store.seed(make_lead(status="KYC Pending"))

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/status",
                                                  json={"status": "Eligibility Check", "remarks": "docs ok"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["lead"]["status"] == "Eligibility Check"
        assert data["warnings"] == []

    def test_approval_warnings_returned(self, api, back_office_user):
        api.store.seed(make_lead(status="Eligibility Check"))
        api.notifier.call_result = DispatchResult(success=False, error="AI calling not configured")

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/status", json={"status": "Approved"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["lead"]["status"] == "Approved"
        assert len(data["warnings"]) == 1
        assert data["lead"]["history"][-1]["remarks"] == "AI email sent. Email ID: email-1"

    def test_empty_status_422(self, api, back_office_user):
        api.store.seed(make_lead())

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/status", json={"status": " "})

        assert resp.status_code == 422

    def test_unknown_lead_404(self, api, admin_user):
        resp = api.as_user(admin_user).post("/api/leads/LEAD-404/status", json={"status": "KYC Pending"})
        assert resp.status_code == 404

    def test_storage_down_503(self, api, admin_user):
        api.store.seed(make_lead())
        api.store.fail_saves = 1

        resp = api.as_user(admin_user).post("/api/leads/LEAD-1/status", json={"status": "KYC Pending"})

        assert resp.status_code == 503


class TestCreditCheckRoute:

    def test_sales_forbidden(self, api, sales_user):
        api.store.seed(make_lead())

        resp = api.as_user(sales_user).post("/api/leads/LEAD-1/credit-check", json={"pan": "ABCDE1234F"})

        assert resp.status_code == 403

    def test_recorded(self, api, back_office_user):
        api.store.seed(make_lead(status="Eligibility Check"))

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/credit-check", json={"pan": "ABCDE1234F"})

        assert resp.status_code == 200
        lead = resp.json()["lead"]
        assert lead["status"] == "Eligibility Check"
        assert lead["current_credit_check"]["score"] == 780
        assert lead["current_credit_check"]["rating"] == "Excellent"


class TestDisbursementRoutes:

    def test_eligibility(self, api, back_office_user):
        api.store.seed(make_lead(status="Approved"))

        resp = api.as_user(back_office_user).get("/api/leads/LEAD-1/disbursement/eligibility")

        assert resp.status_code == 200
        assert resp.json() == {"eligible": False, "reasons": ["bank details missing"]}

    def test_disburse(self, api, back_office_user):
        api.store.seed(make_lead(status="Approved", bank_details=verified_bank_details()))

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/disbursements")

        assert resp.status_code == 200
        data = resp.json()
        assert data["lead"]["status"] == "Disbursed"
        assert data["disbursement"]["status"] == "completed"
        assert data["lead"]["disbursement_eligible"] is False
        assert data["lead"]["latest_disbursement"]["reference_id"] == "pay-1"
        api.log_event.assert_awaited()

    def test_failed_disbursement_is_200_with_warning(self, api, back_office_user):
        api.store.seed(make_lead(status="Approved", bank_details=verified_bank_details()))
        api.gateway.results = [TransferResult(success=False, error="insufficient gateway balance")]

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/disbursements")

        assert resp.status_code == 200
        data = resp.json()
        assert data["disbursement"]["status"] == "failed"
        assert data["lead"]["status"] == "Approved"
        assert data["warnings"] == ["Disbursement failed: insufficient gateway balance"]

    def test_second_disbursement_409(self, api, back_office_user):
        api.store.seed(make_lead(status="Approved", bank_details=verified_bank_details()))
        client = api.as_user(back_office_user)

        assert client.post("/api/leads/LEAD-1/disbursements").status_code == 200
        resp = client.post("/api/leads/LEAD-1/disbursements")

        assert resp.status_code == 409
        assert len(api.gateway.transfers) == 1

    def test_unrecorded_payout_is_503_not_409(self, api, back_office_user):
        api.store.seed(make_lead(status="Approved", bank_details=verified_bank_details()))
        api.store.fail_after = 1

        resp = api.as_user(back_office_user).post("/api/leads/LEAD-1/disbursements")

        assert resp.status_code == 503
        assert "pay-1" in resp.json()["detail"]
        action = api.log_event.call_args.args[0]
        details = api.log_event.call_args.kwargs["details"]
        assert action == "disbursement_unrecorded"
        assert details["reference_id"] == "pay-1"

    def test_sales_cannot_disburse(self, api, sales_user):
        api.store.seed(make_lead(status="Approved", bank_details=verified_bank_details()))

        resp = api.as_user(sales_user).post("/api/leads/LEAD-1/disbursements")

        assert resp.status_code == 403
        assert api.gateway.transfers == []


class TestLeadCrudRoutes:

    def test_create_and_list(self, api, sales_user):
        client = api.as_user(sales_user)

        resp = client.post("/api/leads", json={"name": "Ravi", "service_type": "Loan",
                                               "sub_category": "Home Loan", "value": 100000})
        assert resp.status_code == 200
        lead_id = resp.json()["lead"]["id"]
        assert lead_id.startswith("LEAD-")

        listed = client.get("/api/leads").json()
        assert [l["id"] for l in listed["leads"]] == [lead_id]

    def test_back_office_cannot_create(self, api, back_office_user):
        resp = api.as_user(back_office_user).post(
            "/api/leads", json={"name": "Ravi", "service_type": "Loan", "sub_category": "Home Loan"})
        assert resp.status_code == 403

    def test_admin_create_for_unknown_user_404(self, api, admin_user, monkeypatch):
        users = SimpleNamespace(find_one=AsyncMock(return_value=None))
        monkeypatch.setattr(leads_routes, "db", SimpleNamespace(users=users))

        resp = api.as_user(admin_user).post("/api/leads", json={"name": "Ravi", "service_type": "Loan",
                                                              "sub_category": "Home Loan", "assigned_to": "USR-ghost"})

        assert resp.status_code == 404
        assert api.store.docs == {}

    def test_task_suggestions(self, api, sales_user):
        api.store.seed(make_lead(status="KYC Pending"))

        resp = api.as_user(sales_user).get("/api/leads/LEAD-1/tasks")

        assert resp.status_code == 200
        data = resp.json()
        assert data["lead_id"] == "LEAD-1"
        assert data["source"] == "template"
        assert data["tasks"]

    def test_assign(self, api, admin_user, monkeypatch):
        api.store.seed(make_lead())
        users = SimpleNamespace(find_one=AsyncMock(return_value={"id": "USR-9", "name": "Nina"}))
        monkeypatch.setattr(leads_routes, "db", SimpleNamespace(users=users))

        resp = api.as_user(admin_user).post("/api/leads/LEAD-1/assign", json={"user_id": "USR-9"})

        assert resp.status_code == 200
        assert resp.json()["lead"]["assigned_to"] == "USR-9"

    def test_bank_details_then_verify(self, api, sales_user, back_office_user):
        api.store.seed(make_lead(status="Approved"))
        body = {"account_holder_name": "Asha Rao", "account_number": "123456789012",
                "bank_name": "SBI", "ifsc_code": "sbin0001234", "account_type": "savings"}

        saved = api.as_user(sales_user).put("/api/leads/LEAD-1/bank-details", json=body)
        assert saved.status_code == 200
        assert saved.json()["lead"]["bank_details"]["verified_by"] is None

        verified = api.as_user(back_office_user).post("/api/leads/LEAD-1/bank-details/verify")
        assert verified.status_code == 200
        assert verified.json()["lead"]["disbursement_eligible"] is True

    def test_document_upload_and_download(self, api, sales_user):
        api.store.seed(make_lead())
        client = api.as_user(sales_user)

        resp = client.post("/api/leads/LEAD-1/documents",
                           files={"file": ("kyc.pdf", b"%PDF-1.4 test", "application/pdf")})
        assert resp.status_code == 200
        url = resp.json()["document"]["url"]

        download = client.get(url)
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 test"


def test_pipeline_stats(api, admin_user):
    api.store.seed(make_lead("L1", status="Approved"))

    resp = api.as_user(admin_user).get("/api/stats/pipeline")

    assert resp.status_code == 200
    assert resp.json()["by_service_type"]["Loan"]["by_status"] == {"Approved": 1}


class TestTeamPerformanceRoute:

    def sales_directory(self, monkeypatch):
        docs = [{"id": "USR-sales", "name": "Asha", "email": "asha@justtry.test", "role": "sales"}]
        users = SimpleNamespace(find=MagicMock(return_value=SimpleNamespace(to_list=AsyncMock(return_value=docs))))
        monkeypatch.setattr(stats_routes, "db", SimpleNamespace(users=users))

    def test_admin_sees_rows(self, api, admin_user, monkeypatch):
        self.sales_directory(monkeypatch)
        api.store.seed(make_lead("L1", status="Disbursed", value=200000))
        api.store.seed(make_lead("L2", status="KYC Pending"))

        resp = api.as_user(admin_user).get("/api/stats/performance")

        assert resp.status_code == 200
        data = resp.json()
        assert data["users"] == [{"id": "USR-sales", "name": "Asha", "avatar": None, "total_leads": 2,
                                  "closed_deals": 1, "total_value": 200000, "conversion_rate": 50}]
        assert data["total_closed"] == 1

    def test_sales_forbidden(self, api, sales_user, monkeypatch):
        self.sales_directory(monkeypatch)

        resp = api.as_user(sales_user).get("/api/stats/performance")

        assert resp.status_code == 403
