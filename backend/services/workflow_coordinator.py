"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  JustTry CRM - Workflow Coordinator                                          ║
║                                                                              ║
║  ONLY THIS MODULE appends status / credit-check / notification entries       ║
║                                                                              ║
║  ORDERING (one call):                                                        ║
║  status entry persisted -> dispatch -> dispatch-outcome entry persisted      ║
║                                                                              ║
║  FAILURES:                                                                   ║
║  - persistence of the status entry: hard error, nothing dispatched           ║
║  - call / email: warning only, status change is NOT rolled back              ║
║  - credit bureau: hard error, nothing recorded                               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import List, Optional
from pydantic import BaseModel, Field

from config import COLLABORATOR_TIMEOUT_SECONDS, STRICT_PIPELINE_TRANSITIONS, now_iso
from models import (
    DISBURSED_STATUS,
    ELIGIBILITY_CHECK_STATUS,
    SYSTEM_USER,
    VALID_STATUS_TRANSITIONS,
    HistoryKind,
    Lead,
    LeadHistory,
    User,
    expected_approval_status,
    is_known_status,
)
from services.credit_bureau import CreditBureauClient, CreditCheckRequest, credit_check_remarks, validate_pan
from services.errors import (
    CollaboratorFailure,
    LeadValidationError,
    PermissionDenied,
    PersistenceFailure,
    TransitionNotAllowed,
    bounded_call,
)
from services.lead_store import LeadStore, load_visible_lead
from services.notification_dispatch import DispatchResult, EmailContent, NotificationDispatch
from services.permissions import STATUS_CHANGE_ROLES

logger = logging.getLogger("workflow_coordinator")


class WorkflowOutcome(BaseModel):
    lead: Lead
    warnings: List[str] = Field(default_factory=list)


def check_transition(lead: Lead, new_status: str, strict: bool):
    """
    Permissive mode: anything non-empty goes, unknown statuses are logged.
    Strict mode: the per-service transition table decides.
    """
    if not is_known_status(lead.service_type, new_status):
        if strict:
            raise TransitionNotAllowed(
                f"'{new_status}' is not a {lead.service_type.value} pipeline status"
            )
        logger.warning(
            f"[WORKFLOW] lead={lead.id} unknown {lead.service_type.value} status '{new_status}' accepted"
        )
        return

    if not strict:
        return

    if new_status == DISBURSED_STATUS:
        raise TransitionNotAllowed("Disbursed can only be reached through a disbursement")

    allowed = VALID_STATUS_TRANSITIONS[lead.service_type].get(lead.status, [])
    if new_status not in allowed:
        raise TransitionNotAllowed(
            f"Transition {lead.status} -> {new_status} is not allowed for {lead.service_type.value} leads"
        )


class WorkflowCoordinator:

    def __init__(self, store: LeadStore = None, notifier: NotificationDispatch = None,
                 credit_bureau: CreditBureauClient = None, clock=now_iso,
                 strict_transitions: bool = None, timeout: float = None):
        self.store = store or LeadStore()
        self.notifier = notifier or NotificationDispatch()
        self.credit_bureau = credit_bureau or CreditBureauClient()
        self.clock = clock
        self.strict_transitions = STRICT_PIPELINE_TRANSITIONS if strict_transitions is None else strict_transitions
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS

    # ──────────────────────────────────────────────────────────────────────
    # STATUS CHANGES
    # ──────────────────────────────────────────────────────────────────────

    async def change_status(self, lead_id: str, new_status: str, acting_user: User,
                            remarks: Optional[str] = None) -> WorkflowOutcome:
        new_status = (new_status or "").strip()
        if not new_status:
            raise LeadValidationError("Status is required")
        if acting_user.role not in STATUS_CHANGE_ROLES:
            raise PermissionDenied(f"Role {acting_user.role} may not change lead status")

        lead = await load_visible_lead(self.store, lead_id, acting_user)
        return await self.apply_status_change(lead, new_status, acting_user, remarks)

    async def apply_status_change(self, lead: Lead, new_status: str, acting_user: User,
                                  remarks: Optional[str] = None) -> WorkflowOutcome:
        check_transition(lead, new_status, self.strict_transitions)

        previous = lead.status
        entry = LeadHistory(
            status=new_status,
            timestamp=self.clock(),
            user=acting_user.id,
            kind=HistoryKind.STATUS_CHANGE,
            remarks=remarks,
        )
        lead = (await self.store.save_leads([lead.with_entry(entry)]))[0]
        logger.info(f"[WORKFLOW] lead={lead.id} {previous} -> {new_status} by {acting_user.email}")

        warnings: List[str] = []
        if new_status == expected_approval_status(lead.service_type):
            lead = await self._fire_approval_notifications(lead, new_status, warnings)

        return WorkflowOutcome(lead=lead, warnings=warnings)

    async def _fire_approval_notifications(self, lead: Lead, status: str, warnings: List[str]) -> Lead:
        service_type = lead.service_type.value

        if lead.phone:
            result = await self._dispatch(
                "ai_call",
                self.notifier.place_call(lead.phone, lead.name, service_type, status, lead.id)
            )
            if result.success:
                lead = await self._record_dispatch(
                    lead, status, f"AI call initiated. Call ID: {result.reference_id}",
                    result.reference_id, warnings
                )
            else:
                warnings.append(f"Status updated but AI call could not be placed: {result.error}")

        if lead.email:
            result = await self._dispatch(
                "ai_email",
                self.notifier.send_email(lead.email, lead.name, service_type, status, lead.id)
            )
            if result.success:
                lead = await self._record_dispatch(
                    lead, status, f"AI email sent. Email ID: {result.reference_id}",
                    result.reference_id, warnings
                )
            else:
                warnings.append(f"Status updated but AI email could not be sent: {result.error}")

        return lead

    async def _dispatch(self, name: str, awaitable) -> DispatchResult:
        """The status is already saved: any dispatch error becomes a failed result."""
        try:
            return await bounded_call(name, awaitable, self.timeout)
        except CollaboratorFailure as e:
            return DispatchResult(success=False, error=e.message)
        except Exception as e:
            logger.error(f"[WORKFLOW] {name} raised {type(e).__name__}: {e}")
            return DispatchResult(success=False, error=f"{name} failed: {str(e) or type(e).__name__}")

    async def _record_dispatch(self, lead: Lead, status: str, remarks: str,
                               reference_id: Optional[str], warnings: List[str]) -> Lead:
        entry = LeadHistory(
            status=status,
            timestamp=self.clock(),
            user=SYSTEM_USER,
            kind=HistoryKind.NOTIFICATION,
            remarks=remarks,
            reference_id=reference_id,
        )
        try:
            return (await self.store.save_leads([lead.with_entry(entry)]))[0]
        except PersistenceFailure as e:
            logger.error(f"[WORKFLOW] lead={lead.id} dispatch sent but not recorded: {remarks} ({e.message})")
            warnings.append(f"{remarks}, but it could not be recorded in the lead history")
            return lead

    # ──────────────────────────────────────────────────────────────────────
    # CREDIT CHECK
    # ──────────────────────────────────────────────────────────────────────

    async def record_credit_check(self, lead_id: str, identity: CreditCheckRequest,
                                  acting_user: User) -> WorkflowOutcome:
        validate_pan(identity.pan)
        lead = await load_visible_lead(self.store, lead_id, acting_user)

        cibil = await bounded_call(
            "credit_bureau",
            self.credit_bureau.check(identity, name=lead.name, email=lead.email, phone=lead.phone),
            self.timeout,
        )

        entry = LeadHistory(
            status=ELIGIBILITY_CHECK_STATUS,
            timestamp=self.clock(),
            user=acting_user.id,
            kind=HistoryKind.CREDIT_CHECK,
            remarks=credit_check_remarks(cibil),
            cibil_data=cibil,
        )
        lead = (await self.store.save_leads([lead.with_entry(entry)]))[0]
        logger.info(f"[WORKFLOW] lead={lead.id} credit check recorded | score={cibil.score} status={lead.status}")
        return WorkflowOutcome(lead=lead)

    # ──────────────────────────────────────────────────────────────────────
    # CUSTOM EMAILS
    # ──────────────────────────────────────────────────────────────────────

    async def compose_custom_email(self, lead_id: str, message: str, acting_user: User) -> EmailContent:
        message = (message or "").strip()
        if not message:
            raise LeadValidationError("Message is required")
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        return await bounded_call(
            "email_composer",
            self.notifier.composer.compose_custom_email(message, lead),
            self.timeout,
        )

    async def send_custom_email(self, lead_id: str, content: EmailContent, acting_user: User) -> WorkflowOutcome:
        if not content.subject.strip():
            raise LeadValidationError("Email subject is required")
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        if not lead.email:
            raise LeadValidationError(f"Lead {lead.id} has no email address")

        result = await self._dispatch(
            "custom_email",
            self.notifier.send_email(
                lead.email, lead.name, lead.service_type.value, lead.status, lead.id, content=content
            )
        )
        if not result.success:
            raise CollaboratorFailure("email", result.error or "delivery failed")

        entry = LeadHistory(
            status=lead.status,
            timestamp=self.clock(),
            user=acting_user.id,
            kind=HistoryKind.NOTIFICATION,
            remarks=f"Custom email sent: {content.subject}",
            reference_id=result.reference_id,
        )
        lead = (await self.store.save_leads([lead.with_entry(entry)]))[0]
        logger.info(f"[WORKFLOW] lead={lead.id} custom email sent by {acting_user.email}")
        return WorkflowOutcome(lead=lead)
