"""
JustTry CRM - Task suggestions

Next steps for an agent working a lead, from its service type and status.
The AI content provider phrases them; without it (or when its reply is
unusable) the pipeline templates below are used.
"""

import json
import logging
from typing import List

import httpx
from pydantic import BaseModel

from models import Lead, ServiceType
from services.disbursement_gate import eligibility_blockers
from services.notification_dispatch import EmailComposer

logger = logging.getLogger("task_suggestions")

MAX_TASKS = 6

TASK_SYSTEM_PROMPT = """You are an AI assistant helping sales users manage their leads efficiently by suggesting the tasks they need to complete next.

Consider the service type and lead status to tailor the suggestions. For example:
- Loan lead in "New": collect KYC, request documents
- Investment lead in "Risk Profiling": KYC verification, investment planning
- Insurance lead in "KYC Pending": medical check (if required), underwriting

Answer ONLY with a JSON object: {"tasks": ["...", "..."]} (at most 6 short tasks)."""

TASK_TEMPLATES = {
    ServiceType.LOAN: {
        "New": ["Call the customer to confirm the loan requirement", "Collect KYC documents (PAN, Aadhaar)"],
        "KYC Pending": ["Verify PAN and Aadhaar", "Request income proof and bank statements"],
        "Documents Needed": ["Follow up on missing documents", "Check document validity"],
        "Eligibility Check": ["Run the CIBIL credit check", "Review income against the requested amount"],
        "Approved": ["Collect the customer's bank details", "Get the bank details verified by back-office"],
        "Rejected": ["Inform the customer of the decision", "Suggest alternative products"],
        "Disbursed": ["Confirm receipt of funds with the customer", "Share the repayment schedule"],
        "Completed": ["Ask the customer for a referral"],
    },
    ServiceType.INVESTMENT: {
        "New": ["Call the customer to understand investment goals", "Schedule a risk profiling session"],
        "Risk Profiling": ["Complete the risk profiling questionnaire", "Start KYC verification"],
        "KYC Verification": ["Verify PAN and address proof", "Prepare the investment plan"],
        "Investment Planning": ["Propose an asset allocation", "Review the plan with the customer"],
        "Portfolio Creation": ["Open the demat / folio accounts", "Place the initial investments"],
        "Activated": ["Send the portfolio welcome pack", "Schedule the first portfolio review"],
        "Completed": ["Ask the customer for a referral"],
    },
    ServiceType.INSURANCE: {
        "New": ["Call the customer to understand cover needs", "Collect KYC documents"],
        "KYC Pending": ["Schedule the medical check (if required)", "Prepare the underwriting file"],
        "Medical Check": ["Follow up on medical reports", "Send reports to underwriting"],
        "Underwriting": ["Answer underwriter queries", "Share the premium quote with the customer"],
        "Approved / Rejected": ["Inform the customer of the decision", "Collect the first premium"],
        "Policy Issued": ["Send the policy document", "Explain the claim process"],
        "Completed": ["Set a renewal reminder"],
    },
}


class TaskSuggestions(BaseModel):
    lead_id: str
    tasks: List[str]
    source: str  # "ai" | "template"


def template_tasks(lead: Lead) -> List[str]:
    tasks = list(TASK_TEMPLATES[lead.service_type].get(
        lead.status, [f"Review the lead and decide the next step after '{lead.status}'"]
    ))
    if not lead.phone:
        tasks.insert(0, "Collect the customer's phone number")
    if not lead.email:
        tasks.insert(0, "Collect the customer's email address")
    if lead.service_type == ServiceType.LOAN and lead.status == "Approved":
        blockers = eligibility_blockers(lead)
        if not blockers:
            tasks = ["Initiate the disbursement"]
        elif blockers == ["bank details not verified"]:
            tasks = ["Get the bank details verified by back-office"]
    return tasks[:MAX_TASKS]


def parse_tasks(content: str) -> List[str]:
    """{"tasks": [...]} from the model reply, tolerating a ```json fence."""
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    tasks = json.loads(text)["tasks"]
    cleaned = [str(t).strip() for t in tasks if str(t).strip()]
    if not cleaned:
        raise ValueError("no tasks in reply")
    return cleaned[:MAX_TASKS]


class TaskSuggester:

    def __init__(self, composer: EmailComposer = None):
        self.composer = composer or EmailComposer()

    async def suggest(self, lead: Lead) -> TaskSuggestions:
        if not self.composer.api_key:
            return TaskSuggestions(lead_id=lead.id, tasks=template_tasks(lead), source="template")

        recent = "; ".join(e.remarks for e in lead.history[-3:] if e.remarks)
        try:
            content = await self.composer.complete(
                TASK_SYSTEM_PROMPT,
                f"Lead Name: {lead.name}\n"
                f"Service Type: {lead.service_type.value}\n"
                f"Lead Status: {lead.status}\n"
                f"Lead Data: sub-category {lead.sub_category}, value {lead.value}, "
                f"bank details {'on file' if lead.bank_details else 'missing'}, "
                f"recent notes: {recent or 'none'}",
                max_tokens=300,
            )
            tasks = parse_tasks(content)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.warning(f"[TASKS] lead={lead.id} AI suggestion failed, using template: {e}")
            return TaskSuggestions(lead_id=lead.id, tasks=template_tasks(lead), source="template")

        logger.info(f"[TASKS] lead={lead.id} {len(tasks)} AI tasks")
        return TaskSuggestions(lead_id=lead.id, tasks=tasks, source="ai")
