"""
JustTry CRM - Lead records

Everything on a lead that is not a pipeline move:
- create / edit / reassign / delete / list
- documents (files under DOCUMENTS_DIR/<lead_id>/)
- bank details (save + back-office verification)
- pipeline statistics, team performance
"""

import shutil
import uuid
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from config import DOCUMENTS_DIR, generate_lead_id, mask_account_number, now_iso
from models import (
    NEW_STATUS,
    SUB_CATEGORIES,
    BankDetails,
    BankDetailsInput,
    DisbursementStatus,
    HistoryKind,
    Lead,
    LeadCreate,
    LeadDocumentRef,
    LeadHistory,
    LeadUpdate,
    ServiceType,
    User,
    UserRole,
    is_closed,
)
from services.errors import LeadValidationError, PermissionDenied
from services.lead_store import LeadStore, load_visible_lead
from services.payment_gateway import validate_bank_details
from services.permissions import build_lead_visibility_filter, user_has_permission

logger = logging.getLogger("lead_records")

ALLOWED_DOCUMENT_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx"}
MAX_DOCUMENT_SIZE = 10 * 1024 * 1024  # 10 MB

DOCUMENT_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def check_sub_category(service_type: ServiceType, sub_category: str):
    if sub_category not in SUB_CATEGORIES[ServiceType(service_type)]:
        raise LeadValidationError(
            f"'{sub_category}' is not a {ServiceType(service_type).value} sub-category. "
            f"Valid: {', '.join(SUB_CATEGORIES[ServiceType(service_type)])}"
        )


def has_live_disbursement(lead: Lead) -> bool:
    return any(d.status != DisbursementStatus.FAILED for d in lead.disbursements)


class LeadRecords:

    def __init__(self, store: LeadStore = None, documents_dir: Path = None, clock=now_iso,
                 id_factory=generate_lead_id):
        self.store = store or LeadStore()
        self.documents_dir = Path(documents_dir or DOCUMENTS_DIR)
        self.clock = clock
        self.id_factory = id_factory

    def _note(self, lead: Lead, user: User, remarks: str) -> LeadHistory:
        return LeadHistory(
            status=lead.status,
            timestamp=self.clock(),
            user=user.id,
            kind=HistoryKind.NOTE,
            remarks=remarks,
        )

    # ──────────────────────────────────────────────────────────────────────
    # LEADS
    # ──────────────────────────────────────────────────────────────────────

    async def create_lead(self, data: LeadCreate, acting_user: User) -> Lead:
        check_sub_category(data.service_type, data.sub_category)

        if acting_user.role == UserRole.ADMIN:
            assigned_to = data.assigned_to
        else:
            assigned_to = acting_user.id

        created_at = self.clock()
        lead = Lead(
            id=self.id_factory(),
            name=data.name,
            email=data.email,
            phone=data.phone,
            service_type=data.service_type,
            sub_category=data.sub_category,
            value=data.value,
            assigned_to=assigned_to,
            created_at=created_at,
            history=[LeadHistory(
                status=NEW_STATUS,
                timestamp=created_at,
                user=acting_user.id,
                kind=HistoryKind.STATUS_CHANGE,
                remarks="Lead created",
            )],
        )
        lead = (await self.store.save_leads([lead]))[0]
        logger.info(f"[LEADS] lead={lead.id} created by {acting_user.email} | {lead.service_type.value}")
        return lead

    async def update_lead_details(self, lead_id: str, data: LeadUpdate, acting_user: User) -> Lead:
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        changes = data.model_dump(exclude_none=True)
        if not changes:
            return lead
        if "sub_category" in changes:
            check_sub_category(lead.service_type, changes["sub_category"])
        if "name" in changes and not changes["name"].strip():
            raise LeadValidationError("Lead name is required")
        if "email" in changes:
            changes["email"] = changes["email"].strip().lower()

        updated = lead.model_copy(update=changes, deep=True)
        updated = (await self.store.save_leads([updated]))[0]
        logger.info(f"[LEADS] lead={lead.id} updated by {acting_user.email} | fields={sorted(changes)}")
        return updated

    async def reassign_lead(self, lead_id: str, user_id: str, acting_user: User) -> Lead:
        if acting_user.role != UserRole.ADMIN:
            raise PermissionDenied("Only admins can reassign leads")
        lead = await load_visible_lead(self.store, lead_id, acting_user)

        previous = lead.assigned_to or "unassigned"
        updated = lead.with_entry(self._note(lead, acting_user, f"Reassigned from {previous} to {user_id}"))
        updated.assigned_to = user_id
        updated = (await self.store.save_leads([updated]))[0]
        logger.info(f"[LEADS] lead={lead.id} reassigned {previous} -> {user_id}")
        return updated

    async def delete_lead(self, lead_id: str, acting_user: User) -> bool:
        if acting_user.role != UserRole.ADMIN:
            raise PermissionDenied("Only admins can delete leads")
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        if has_live_disbursement(lead):
            raise LeadValidationError(f"Lead {lead.id} has a pending or completed disbursement and cannot be deleted")

        deleted = await self.store.delete_lead(lead.id)
        lead_dir = self.documents_dir / lead.id
        if deleted and lead_dir.exists():
            shutil.rmtree(lead_dir)
        logger.info(f"[LEADS] lead={lead.id} deleted by {acting_user.email}")
        return deleted

    async def list_visible_leads(self, user: User, service_type: Optional[ServiceType] = None,
                                 status: Optional[str] = None, limit: int = 500) -> List[Lead]:
        query = build_lead_visibility_filter(user)
        if service_type:
            if "service_type" in query and ServiceType(service_type).value not in query["service_type"]["$in"]:
                return []
            query["service_type"] = ServiceType(service_type).value
        if status:
            query["status"] = status
        return await self.store.list_leads(query, limit)

    # ──────────────────────────────────────────────────────────────────────
    # DOCUMENTS
    # ──────────────────────────────────────────────────────────────────────

    async def add_document(self, lead_id: str, filename: str, content: bytes,
                           acting_user: User) -> Tuple[Lead, LeadDocumentRef]:
        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_DOCUMENT_EXTENSIONS:
            raise LeadValidationError(
                f"File type not allowed. Valid: {', '.join(sorted(ALLOWED_DOCUMENT_EXTENSIONS))}"
            )
        if len(content) > MAX_DOCUMENT_SIZE:
            raise LeadValidationError(f"File too large. Maximum: {MAX_DOCUMENT_SIZE // 1024 // 1024} MB")

        lead = await load_visible_lead(self.store, lead_id, acting_user)

        doc_id = str(uuid.uuid4())
        lead_dir = self.documents_dir / lead.id
        lead_dir.mkdir(parents=True, exist_ok=True)
        file_path = lead_dir / f"{doc_id}{ext}"
        with open(file_path, "wb") as f:
            f.write(content)

        document = LeadDocumentRef(
            id=doc_id,
            name=filename,
            url=f"/api/leads/{lead.id}/documents/{doc_id}",
            uploaded_by=acting_user.id,
            uploaded_at=self.clock(),
        )
        updated = lead.model_copy(deep=True)
        updated.documents.append(document)
        try:
            updated = (await self.store.save_leads([updated]))[0]
        except Exception:
            file_path.unlink(missing_ok=True)
            raise
        logger.info(f"[DOCUMENTS] lead={lead.id} document {doc_id} uploaded ({len(content)} bytes)")
        return updated, document

    async def remove_document(self, lead_id: str, doc_id: str, acting_user: User) -> Lead:
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        document = next((d for d in lead.documents if d.id == doc_id), None)
        if document is None:
            raise LeadValidationError(f"Document {doc_id} not found on lead {lead_id}")

        updated = lead.model_copy(deep=True)
        updated.documents = [d for d in updated.documents if d.id != doc_id]
        updated = (await self.store.save_leads([updated]))[0]

        file_path = self.documents_dir / lead.id / f"{doc_id}{Path(document.name).suffix.lower()}"
        file_path.unlink(missing_ok=True)
        logger.info(f"[DOCUMENTS] lead={lead.id} document {doc_id} removed")
        return updated

    async def document_file(self, lead_id: str, doc_id: str, acting_user: User) -> Tuple[Path, LeadDocumentRef, str]:
        """(path, document, mime type) of a stored document"""
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        document = next((d for d in lead.documents if d.id == doc_id), None)
        if document is None:
            raise LeadValidationError(f"Document {doc_id} not found on lead {lead_id}")
        ext = Path(document.name).suffix.lower()
        file_path = self.documents_dir / lead.id / f"{doc_id}{ext}"
        if not file_path.exists():
            raise LeadValidationError(f"File for document {doc_id} is missing")
        return file_path, document, DOCUMENT_MIME_TYPES.get(ext, "application/octet-stream")

    # ──────────────────────────────────────────────────────────────────────
    # BANK DETAILS
    # ──────────────────────────────────────────────────────────────────────

    async def save_bank_details(self, lead_id: str, data: BankDetailsInput, acting_user: User) -> Lead:
        """
        Any save by a non back-office user clears verification.
        A back-office save verifies in the same write.
        """
        errors = validate_bank_details(data)
        if errors:
            raise LeadValidationError("; ".join(errors))

        lead = await load_visible_lead(self.store, lead_id, acting_user)
        by_back_office = acting_user.role == UserRole.BACK_OFFICE
        now = self.clock()

        bank = BankDetails(
            **data.model_dump(),
            verified_by=acting_user.id if by_back_office else None,
            verified_at=now if by_back_office else None,
        )
        remarks = (
            "Bank details verified by back-office" if by_back_office
            else f"Bank details updated by {acting_user.role.value}"
        )
        updated = lead.with_entry(self._note(lead, acting_user, remarks))
        updated.bank_details = bank
        updated = (await self.store.save_leads([updated]))[0]
        logger.info(
            f"[BANK] lead={lead.id} bank details saved by {acting_user.email} | "
            f"account={mask_account_number(bank.account_number)} verified={bank.is_verified}"
        )
        return updated

    async def verify_bank_details(self, lead_id: str, acting_user: User) -> Lead:
        if acting_user.role != UserRole.BACK_OFFICE:
            raise PermissionDenied("Only back-office can verify bank details")
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        if lead.bank_details is None:
            raise LeadValidationError(f"Lead {lead.id} has no bank details")
        if lead.bank_details.is_verified:
            raise LeadValidationError(f"Bank details of lead {lead.id} are already verified")

        updated = lead.with_entry(self._note(lead, acting_user, "Bank details verified by back-office"))
        updated.bank_details = updated.bank_details.model_copy(update={
            "verified_by": acting_user.id,
            "verified_at": self.clock(),
        })
        updated = (await self.store.save_leads([updated]))[0]
        logger.info(f"[BANK] lead={lead.id} bank details verified by {acting_user.email}")
        return updated

    # ──────────────────────────────────────────────────────────────────────
    # STATS
    # ──────────────────────────────────────────────────────────────────────

    async def pipeline_stats(self, user: User) -> dict:
        leads = await self.list_visible_leads(user, limit=10000)

        by_service = {}
        total_value = 0.0
        disbursed_count = 0
        disbursed_amount = 0.0
        for lead in leads:
            statuses = by_service.setdefault(lead.service_type.value, {"total": 0, "by_status": {}})
            statuses["total"] += 1
            statuses["by_status"][lead.status] = statuses["by_status"].get(lead.status, 0) + 1
            total_value += lead.value
            for d in lead.disbursements:
                if d.status == DisbursementStatus.COMPLETED:
                    disbursed_count += 1
                    disbursed_amount += d.amount

        return {
            "total_leads": len(leads),
            "by_service_type": by_service,
            "total_value": total_value,
            "disbursements": {"completed": disbursed_count, "amount": disbursed_amount},
        }

    async def team_performance(self, acting_user: User, users: List[User]) -> dict:
        """
        Per sales user: leads assigned, deals closed, closed value, conversion rate.
        Admin view over every lead.
        """
        if not user_has_permission(acting_user, "stats.view_all"):
            raise PermissionDenied("Team performance is restricted to admins")

        leads = await self.store.list_leads({}, 10000)
        by_user = {}
        for lead in leads:
            by_user.setdefault(lead.assigned_to, []).append(lead)

        rows = []
        for member in users:
            if member.role != UserRole.SALES:
                continue
            assigned = by_user.get(member.id, [])
            closed = [lead for lead in assigned if is_closed(lead)]
            rows.append({
                "id": member.id,
                "name": member.name,
                "avatar": member.avatar,
                "total_leads": len(assigned),
                "closed_deals": len(closed),
                "total_value": sum(lead.value for lead in closed),
                "conversion_rate": round(len(closed) * 100 / len(assigned)) if assigned else 0,
            })
        rows.sort(key=lambda row: (-row["total_value"], row["name"]))

        distribution = {}
        for lead in leads:
            distribution[lead.service_type.value] = distribution.get(lead.service_type.value, 0) + 1

        return {
            "users": rows,
            "total_leads": len(leads),
            "total_closed": sum(1 for lead in leads if is_closed(lead)),
            "total_value": sum(row["total_value"] for row in rows),
            "avg_conversion_rate": (
                round(sum(row["conversion_rate"] for row in rows) / len(rows), 1) if rows else 0
            ),
            "service_distribution": distribution,
        }
