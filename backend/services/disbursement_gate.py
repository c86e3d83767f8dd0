"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  JustTry CRM - Disbursement Gate                                             ║
║                                                                              ║
║  ONLY THIS MODULE creates disbursements and moves a lead to "Disbursed"      ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - at most ONE disbursement with status "completed" per lead                 ║
║  - exactly ONE disbursement appended per disburse() that reaches the gateway ║
║  - not eligible = refused BEFORE any payment call, nothing recorded          ║
║  - the "initiated" record is claimed (version-guarded) BEFORE the transfer   ║
║  - a gateway outcome is never dropped: conflicts are merged, not refused     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import List, Optional
from pydantic import BaseModel, Field

from config import COLLABORATOR_TIMEOUT_SECONDS, generate_disbursement_id, now_iso
from models import (
    APPROVED_STATUS,
    DISBURSED_STATUS,
    Disbursement,
    DisbursementStatus,
    HistoryKind,
    Lead,
    LeadHistory,
    ServiceType,
    User,
)
from services.errors import (
    CollaboratorFailure,
    ConcurrencyConflict,
    DisbursementNotRecorded,
    EligibilityViolation,
    LeadValidationError,
    PersistenceFailure,
    bounded_call,
)
from services.lead_store import LeadStore, load_visible_lead
from services.payment_gateway import PaymentGateway, TransferResult, format_inr, get_payment_gateway

logger = logging.getLogger("disbursement_gate")

FINALIZE_ATTEMPTS = 3


class DisbursementOutcome(BaseModel):
    lead: Lead
    disbursement: Disbursement
    warnings: List[str] = Field(default_factory=list)


def eligibility_blockers(lead: Lead) -> List[str]:
    """Every reason the lead cannot be disbursed. Empty list = eligible."""
    reasons = []
    if lead.service_type != ServiceType.LOAN:
        reasons.append("only Loan leads can be disbursed")
    if lead.status != APPROVED_STATUS:
        reasons.append(f"status is '{lead.status}', must be '{APPROVED_STATUS}'")
    bank = lead.bank_details
    if bank is None:
        reasons.append("bank details missing")
    elif not bank.verified_by or not bank.verified_at:
        reasons.append("bank details not verified")
    if any(d.status != DisbursementStatus.FAILED for d in lead.disbursements):
        reasons.append("a non-failed disbursement already exists")
    return reasons


def is_eligible(lead: Lead) -> bool:
    return (
        lead.service_type == ServiceType.LOAN
        and lead.status == APPROVED_STATUS
        and lead.bank_details is not None
        and bool(lead.bank_details.verified_by)
        and bool(lead.bank_details.verified_at)
        and (
            not lead.disbursements
            or all(d.status == DisbursementStatus.FAILED for d in lead.disbursements)
        )
    )


class DisbursementGate:

    def __init__(self, store: LeadStore = None, gateway: PaymentGateway = None, clock=now_iso,
                 id_factory=generate_disbursement_id, timeout: float = None):
        self.store = store or LeadStore()
        self.gateway = gateway or get_payment_gateway()
        self.clock = clock
        self.id_factory = id_factory
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS

    async def disburse(self, lead_id: str, acting_user: User) -> DisbursementOutcome:
        lead = await load_visible_lead(self.store, lead_id, acting_user)

        if lead.bank_details is None:
            raise LeadValidationError(f"Lead {lead.id} has no bank details")
        if not is_eligible(lead):
            reasons = eligibility_blockers(lead)
            logger.warning(f"[DISBURSEMENT] lead={lead.id} refused: {'; '.join(reasons)}")
            raise EligibilityViolation(lead.id, reasons)

        disbursement = Disbursement(
            id=self.id_factory(),
            amount=lead.value,
            status=DisbursementStatus.INITIATED,
            initiated_by=acting_user.id,
            initiated_at=self.clock(),
        )

        # claim: a concurrent request loses here, before any money moves
        claim = lead.model_copy(deep=True)
        claim.disbursements.append(disbursement)
        claimed = (await self.store.save_leads([claim]))[0]
        logger.info(
            f"[DISBURSEMENT] lead={lead.id} {disbursement.id} initiated | "
            f"amount={format_inr(lead.value)} gateway={self.gateway.name}"
        )

        result = await self._transfer(claimed)
        completed_at = self.clock()

        if result.success:
            disbursement = disbursement.model_copy(update={
                "status": DisbursementStatus.COMPLETED,
                "reference_id": result.reference_id,
                "gateway_response": result.raw,
                "completed_at": completed_at,
            })
            entry = LeadHistory(
                status=DISBURSED_STATUS,
                timestamp=completed_at,
                user=acting_user.id,
                kind=HistoryKind.DISBURSEMENT,
                remarks=(
                    f"Loan amount {format_inr(lead.value)} disbursed successfully. "
                    f"Reference: {result.reference_id}"
                ),
                reference_id=result.reference_id,
            )
        else:
            reason = result.error or "Disbursement failed"
            disbursement = disbursement.model_copy(update={
                "status": DisbursementStatus.FAILED,
                "failure_reason": reason,
                "gateway_response": result.raw,
                "completed_at": completed_at,
            })
            # unchanged status: a failed payout does not move the pipeline
            entry = LeadHistory(
                status=claimed.status,
                timestamp=completed_at,
                user=acting_user.id,
                kind=HistoryKind.DISBURSEMENT,
                remarks=f"Disbursement failed: {reason}",
            )

        saved = await self._finalize(claimed, disbursement, entry)

        logger.info(
            f"[DISBURSEMENT] lead={saved.id} {disbursement.id} {disbursement.status.value} | status={saved.status}"
        )
        warnings = [] if result.success else [f"Disbursement failed: {disbursement.failure_reason}"]
        return DisbursementOutcome(lead=saved, disbursement=disbursement, warnings=warnings)

    async def _finalize(self, claimed: Lead, disbursement: Disbursement, entry: LeadHistory) -> Lead:
        """
        Replace the initiated record with the gateway outcome.
        A concurrent edit of the lead is merged by reloading and writing again.
        """
        lead = claimed
        try:
            for attempt in range(1, FINALIZE_ATTEMPTS + 1):
                updated = lead.model_copy(deep=True)
                updated.disbursements = [d for d in updated.disbursements if d.id != disbursement.id]
                updated.disbursements.append(disbursement)
                if disbursement.status == DisbursementStatus.FAILED:
                    entry = entry.model_copy(update={"status": lead.status})
                updated.history.append(entry)
                try:
                    return (await self.store.save_leads([updated]))[0]
                except ConcurrencyConflict:
                    logger.warning(
                        f"[DISBURSEMENT] lead={claimed.id} {disbursement.id} modified concurrently, "
                        f"reloading ({attempt}/{FINALIZE_ATTEMPTS})"
                    )
                    lead = await self.store.get_lead(claimed.id)
                    if lead is None:
                        break
        except PersistenceFailure as e:
            logger.error(f"[DISBURSEMENT] lead={claimed.id} {disbursement.id} storage error: {e.message}")

        logger.error(
            f"[DISBURSEMENT] lead={claimed.id} {disbursement.id} {disbursement.status.value} NOT RECORDED | "
            f"reference={disbursement.reference_id or '-'} amount={format_inr(disbursement.amount)}"
        )
        raise DisbursementNotRecorded(claimed.id, disbursement.id, disbursement.reference_id)

    async def _transfer(self, lead: Lead) -> TransferResult:
        """One gateway call. Exceptions and timeouts become a failed result."""
        try:
            return await bounded_call(
                "payment_gateway",
                self.gateway.transfer(lead.value, lead.bank_details, lead.id, lead.email),
                self.timeout,
            )
        except CollaboratorFailure as e:
            return TransferResult(success=False, error=e.message)
        except Exception as e:
            logger.error(f"[DISBURSEMENT] lead={lead.id} gateway raised: {e}")
            return TransferResult(success=False, error=str(e) or type(e).__name__)

    async def payout_status(self, lead_id: str, disbursement_id: str, acting_user: User) -> Optional[dict]:
        """Read-only lookup at the gateway. Never modifies the disbursement."""
        lead = await load_visible_lead(self.store, lead_id, acting_user)
        disbursement = next((d for d in lead.disbursements if d.id == disbursement_id), None)
        if disbursement is None:
            raise LeadValidationError(f"Disbursement {disbursement_id} not found on lead {lead_id}")
        if not disbursement.reference_id:
            return {"status": disbursement.status.value, "reference_id": None}
        return await bounded_call(
            "payment_gateway",
            self.gateway.payout_status(disbursement.reference_id),
            self.timeout,
        )
