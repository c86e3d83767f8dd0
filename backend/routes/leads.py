"""
JustTry CRM - Routes Leads

Thin HTTP layer over:
- WorkflowCoordinator (status, credit check, custom emails)
- DisbursementGate (eligibility, payouts)
- LeadRecords (CRUD, documents, bank details)
- TaskSuggester (next steps per lead)

Workflow errors become HTTPException with the status they carry.
"""

from functools import lru_cache
from fastapi import APIRouter, HTTPException, Depends, UploadFile, File
from fastapi.responses import FileResponse
from pydantic import BaseModel
from typing import Optional

from config import db
from models import (
    BankDetailsInput,
    Lead,
    LeadAssign,
    LeadCreate,
    LeadUpdate,
    ServiceType,
    StatusChangeRequest,
    User,
    UserRole,
    current_credit_check,
    latest_disbursement,
)
from services.credit_bureau import CreditCheckRequest, eligibility_rating
from services.disbursement_gate import DisbursementGate, eligibility_blockers, is_eligible
from services.errors import DisbursementNotRecorded, WorkflowError
from services.event_logger import log_event
from services.lead_records import LeadRecords
from services.lead_store import load_visible_lead
from services.notification_dispatch import EmailContent
from services.permissions import require_permission
from services.task_suggestions import TaskSuggester
from services.workflow_coordinator import WorkflowCoordinator

router = APIRouter(prefix="/leads", tags=["Leads"])


class ComposeEmailRequest(BaseModel):
    message: str


# ==================== PROVIDERS ====================

@lru_cache
def get_workflow() -> WorkflowCoordinator:
    return WorkflowCoordinator()


@lru_cache
def get_gate() -> DisbursementGate:
    return DisbursementGate()


@lru_cache
def get_records() -> LeadRecords:
    return LeadRecords()


@lru_cache
def get_task_suggester() -> TaskSuggester:
    return TaskSuggester()


def as_http(e: WorkflowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def lead_view(lead: Lead) -> dict:
    """Lead + what the UI derives from it."""
    data = lead.model_dump(mode="json")
    check = current_credit_check(lead)
    data["current_credit_check"] = None
    if check is not None:
        data["current_credit_check"] = {
            **check.cibil_data.model_dump(mode="json"),
            "rating": eligibility_rating(check.cibil_data.score),
            "checked_at": check.timestamp,
            "checked_by": check.user,
        }
    data["disbursement_eligible"] = is_eligible(lead)
    last = latest_disbursement(lead)
    data["latest_disbursement"] = last.model_dump(mode="json") if last else None
    return data


# ==================== CRUD ====================

@router.get("")
async def list_leads(
    service_type: Optional[ServiceType] = None,
    status: Optional[str] = None,
    limit: int = 500,
    user: User = Depends(require_permission("leads.view")),
    records: LeadRecords = Depends(get_records)
):
    try:
        leads = await records.list_visible_leads(user, service_type, status, min(limit, 1000))
    except WorkflowError as e:
        raise as_http(e)
    return {"leads": [lead_view(l) for l in leads], "count": len(leads)}


@router.post("")
async def create_lead(
    data: LeadCreate,
    user: User = Depends(require_permission("leads.create")),
    records: LeadRecords = Depends(get_records)
):
    if data.assigned_to and user.role == UserRole.ADMIN:
        target = await db.users.find_one({"id": data.assigned_to}, {"_id": 0, "password": 0})
        if not target:
            raise HTTPException(status_code=404, detail="User not found")
    try:
        lead = await records.create_lead(data, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead), "warnings": []}


@router.get("/{lead_id}")
async def get_lead(
    lead_id: str,
    user: User = Depends(require_permission("leads.view")),
    records: LeadRecords = Depends(get_records)
):
    try:
        lead = await load_visible_lead(records.store, lead_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead)}


@router.get("/{lead_id}/tasks")
async def suggest_tasks(
    lead_id: str,
    user: User = Depends(require_permission("leads.view")),
    records: LeadRecords = Depends(get_records),
    suggester: TaskSuggester = Depends(get_task_suggester)
):
    """Next steps for the agent, AI-phrased when available."""
    try:
        lead = await load_visible_lead(records.store, lead_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return (await suggester.suggest(lead)).model_dump()


@router.patch("/{lead_id}")
async def update_lead(
    lead_id: str,
    data: LeadUpdate,
    user: User = Depends(require_permission("leads.edit")),
    records: LeadRecords = Depends(get_records)
):
    try:
        lead = await records.update_lead_details(lead_id, data, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead), "warnings": []}


@router.delete("/{lead_id}")
async def delete_lead(
    lead_id: str,
    user: User = Depends(require_permission("leads.delete")),
    records: LeadRecords = Depends(get_records)
):
    try:
        await records.delete_lead(lead_id, user)
    except WorkflowError as e:
        raise as_http(e)
    await log_event("lead_delete", "lead", lead_id, user=user.email)
    return {"success": True}


@router.post("/{lead_id}/assign")
async def assign_lead(
    lead_id: str,
    data: LeadAssign,
    user: User = Depends(require_permission("leads.assign")),
    records: LeadRecords = Depends(get_records)
):
    target = await db.users.find_one({"id": data.user_id}, {"_id": 0, "password": 0})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        lead = await records.reassign_lead(lead_id, data.user_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead), "warnings": []}


# ==================== WORKFLOW ====================

@router.post("/{lead_id}/status")
async def change_status(
    lead_id: str,
    data: StatusChangeRequest,
    user: User = Depends(require_permission("leads.edit_status")),
    workflow: WorkflowCoordinator = Depends(get_workflow)
):
    try:
        outcome = await workflow.change_status(lead_id, data.status, user, data.remarks)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(outcome.lead), "warnings": outcome.warnings}


@router.post("/{lead_id}/credit-check")
async def credit_check(
    lead_id: str,
    data: CreditCheckRequest,
    user: User = Depends(require_permission("leads.credit_check")),
    workflow: WorkflowCoordinator = Depends(get_workflow)
):
    try:
        outcome = await workflow.record_credit_check(lead_id, data, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(outcome.lead), "warnings": outcome.warnings}


@router.post("/{lead_id}/emails/compose")
async def compose_email(
    lead_id: str,
    data: ComposeEmailRequest,
    user: User = Depends(require_permission("leads.send_email")),
    workflow: WorkflowCoordinator = Depends(get_workflow)
):
    try:
        content = await workflow.compose_custom_email(lead_id, data.message, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"email": content.model_dump()}


@router.post("/{lead_id}/emails")
async def send_email(
    lead_id: str,
    data: EmailContent,
    user: User = Depends(require_permission("leads.send_email")),
    workflow: WorkflowCoordinator = Depends(get_workflow)
):
    try:
        outcome = await workflow.send_custom_email(lead_id, data, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(outcome.lead), "warnings": outcome.warnings}


# ==================== DOCUMENTS ====================

@router.post("/{lead_id}/documents")
async def upload_document(
    lead_id: str,
    file: UploadFile = File(...),
    user: User = Depends(require_permission("leads.add_documents")),
    records: LeadRecords = Depends(get_records)
):
    content = await file.read()
    try:
        lead, document = await records.add_document(lead_id, file.filename, content, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead), "document": document.model_dump(), "warnings": []}


@router.get("/{lead_id}/documents/{doc_id}")
async def download_document(
    lead_id: str,
    doc_id: str,
    user: User = Depends(require_permission("leads.view")),
    records: LeadRecords = Depends(get_records)
):
    try:
        file_path, document, mime_type = await records.document_file(lead_id, doc_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return FileResponse(file_path, media_type=mime_type, filename=document.name)


@router.delete("/{lead_id}/documents/{doc_id}")
async def remove_document(
    lead_id: str,
    doc_id: str,
    user: User = Depends(require_permission("leads.add_documents")),
    records: LeadRecords = Depends(get_records)
):
    try:
        lead = await records.remove_document(lead_id, doc_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"lead": lead_view(lead), "warnings": []}


# ==================== BANK DETAILS ====================

@router.put("/{lead_id}/bank-details")
async def save_bank_details(
    lead_id: str,
    data: BankDetailsInput,
    user: User = Depends(require_permission("bank_details.edit")),
    records: LeadRecords = Depends(get_records)
):
    try:
        lead = await records.save_bank_details(lead_id, data, user)
    except WorkflowError as e:
        raise as_http(e)
    if lead.bank_details.is_verified:
        await log_event("bank_verify", "lead", lead_id, user=user.email)
    return {"lead": lead_view(lead), "warnings": []}


@router.post("/{lead_id}/bank-details/verify")
async def verify_bank_details(
    lead_id: str,
    user: User = Depends(require_permission("bank_details.verify")),
    records: LeadRecords = Depends(get_records)
):
    try:
        lead = await records.verify_bank_details(lead_id, user)
    except WorkflowError as e:
        raise as_http(e)
    await log_event("bank_verify", "lead", lead_id, user=user.email)
    return {"lead": lead_view(lead), "warnings": []}


# ==================== DISBURSEMENTS ====================

@router.get("/{lead_id}/disbursement/eligibility")
async def disbursement_eligibility(
    lead_id: str,
    user: User = Depends(require_permission("leads.view")),
    gate: DisbursementGate = Depends(get_gate)
):
    try:
        lead = await load_visible_lead(gate.store, lead_id, user)
    except WorkflowError as e:
        raise as_http(e)
    return {"eligible": is_eligible(lead), "reasons": eligibility_blockers(lead)}


@router.post("/{lead_id}/disbursements")
async def disburse(
    lead_id: str,
    user: User = Depends(require_permission("disbursements.initiate")),
    gate: DisbursementGate = Depends(get_gate)
):
    try:
        outcome = await gate.disburse(lead_id, user)
    except DisbursementNotRecorded as e:
        await log_event(
            "disbursement_unrecorded", "lead", lead_id,
            user=user.email,
            details={"disbursement_id": e.disbursement_id, "reference_id": e.reference_id}
        )
        raise as_http(e)
    except WorkflowError as e:
        await log_event("disbursement_refused", "lead", lead_id, user=user.email, details={"reason": e.message})
        raise as_http(e)

    await log_event(
        "disbursement_attempt", "lead", lead_id,
        user=user.email,
        details={
            "disbursement_id": outcome.disbursement.id,
            "status": outcome.disbursement.status.value,
            "amount": outcome.disbursement.amount,
        }
    )
    return {
        "lead": lead_view(outcome.lead),
        "disbursement": outcome.disbursement.model_dump(mode="json"),
        "warnings": outcome.warnings,
    }


@router.get("/{lead_id}/disbursements/{disbursement_id}/status")
async def disbursement_status(
    lead_id: str,
    disbursement_id: str,
    user: User = Depends(require_permission("leads.view")),
    gate: DisbursementGate = Depends(get_gate)
):
    try:
        status = await gate.payout_status(lead_id, disbursement_id, user)
    except WorkflowError as e:
        raise as_http(e)
    if status is None:
        raise HTTPException(status_code=502, detail="Payout status unavailable")
    return {"disbursement_id": disbursement_id, "payout": status}
