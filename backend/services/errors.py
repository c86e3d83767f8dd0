"""
JustTry CRM - Workflow error taxonomy

Every error carries the HTTP status the routes should answer with.
"""

import asyncio
import logging
from typing import Awaitable, List, Optional, TypeVar

logger = logging.getLogger("workflow_errors")

T = TypeVar("T")


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LeadValidationError(WorkflowError):
    """Malformed or missing input. Nothing was changed."""
    status_code = 422


class TransitionNotAllowed(LeadValidationError):
    pass


class LeadNotFound(WorkflowError):
    status_code = 404

    def __init__(self, lead_id: str):
        super().__init__(f"Lead {lead_id} not found")
        self.lead_id = lead_id


class PermissionDenied(WorkflowError):
    status_code = 403


class EligibilityViolation(WorkflowError):
    """Disbursement refused before any payment call."""
    status_code = 409

    def __init__(self, lead_id: str, reasons: Optional[List[str]] = None):
        self.reasons = reasons or []
        detail = "; ".join(self.reasons) if self.reasons else "not eligible"
        super().__init__(f"Lead {lead_id} is not eligible for disbursement: {detail}")


class CollaboratorFailure(WorkflowError):
    """External call (call, email, credit bureau, payment) failed or timed out."""
    status_code = 502

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class PersistenceFailure(WorkflowError):
    """Storage read/write failed. Caller must not assume anything changed."""
    status_code = 503


class ConcurrencyConflict(PersistenceFailure):
    status_code = 409


class DisbursementNotRecorded(PersistenceFailure):
    """The gateway answered but the outcome could not be written to the lead."""
    status_code = 503

    def __init__(self, lead_id: str, disbursement_id: str, reference_id: Optional[str]):
        super().__init__(
            f"Disbursement {disbursement_id} on lead {lead_id} was processed by the gateway "
            f"(reference: {reference_id or 'none'}) but could not be recorded"
        )
        self.lead_id = lead_id
        self.disbursement_id = disbursement_id
        self.reference_id = reference_id


async def bounded_call(name: str, awaitable: Awaitable[T], timeout: float) -> T:
    """
    Await an external call with a hard time bound.
    A timeout is reported as a CollaboratorFailure.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[COLLABORATOR] {name} timed out after {timeout}s")
        raise CollaboratorFailure(name, f"timed out after {timeout}s")
