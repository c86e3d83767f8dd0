"""
JustTry CRM - Credit bureau client (CIBIL score lookup)

Pure lookup: never touches the Lead. The workflow wraps the result
into a history entry.
"""

import re
import logging
import httpx
from typing import Optional
from pydantic import BaseModel, field_validator

from config import COLLABORATOR_TIMEOUT_SECONDS, CREDIT_BUREAU_API_KEY, CREDIT_BUREAU_URL, now_iso
from models import CibilData
from services.errors import CollaboratorFailure, LeadValidationError

logger = logging.getLogger("credit_bureau")

PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")


class CreditCheckRequest(BaseModel):
    """Identity fields sent to the bureau"""
    pan: str = ""
    dob: Optional[str] = None
    address: Optional[str] = None

    @field_validator("pan")
    @classmethod
    def upper_pan(cls, v):
        return (v or "").strip().upper()


def validate_pan(pan: str) -> str:
    if not pan:
        raise LeadValidationError("PAN is required for a credit check")
    if not PAN_PATTERN.match(pan):
        raise LeadValidationError("Invalid PAN format. Expected format: ABCDE1234F")
    return pan


def classify_risk(score: int) -> str:
    if score >= 750:
        return "Low Risk"
    if score >= 650:
        return "Medium Risk"
    return "High Risk"


def eligibility_rating(score: int) -> str:
    if score >= 750:
        return "Excellent"
    if score >= 650:
        return "Good"
    if score >= 550:
        return "Fair"
    return "Poor"


def credit_check_remarks(cibil: CibilData) -> str:
    return (
        f"CIBIL Score: {cibil.score} ({cibil.risk_category}). "
        f"Total accounts: {cibil.total_accounts}, Overdue: {cibil.overdue_accounts}"
    )


class CreditBureauClient:

    def __init__(self, url: str = None, api_key: str = None, timeout: float = None, transport=None):
        self.url = CREDIT_BUREAU_URL if url is None else url
        self.api_key = CREDIT_BUREAU_API_KEY if api_key is None else api_key
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS
        self._transport = transport

    async def check(self, identity: CreditCheckRequest, name: str = "", email: str = "", phone: str = "") -> CibilData:
        """
        Look up a credit score.
        Raises CollaboratorFailure when the bureau is unreachable, unconfigured or answers garbage.
        """
        if not self.url:
            raise CollaboratorFailure("credit_bureau", "credit bureau not configured")

        payload = {
            "pan": identity.pan,
            "dob": identity.dob,
            "address": identity.address,
            "name": name,
            "email": email,
            "phone": phone,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
            score = int(data["score"])
            cibil = CibilData(
                score=score,
                risk_category=data.get("risk_category") or data.get("riskCategory") or classify_risk(score),
                total_accounts=int(data.get("total_accounts", data.get("totalAccounts", 0)) or 0),
                overdue_accounts=int(data.get("overdue_accounts", data.get("overdueAccounts", 0)) or 0),
                report_date=data.get("report_date") or data.get("reportDate") or now_iso(),
                data_source=data.get("data_source") or data.get("dataSource") or "credit_bureau",
            )
        except httpx.HTTPStatusError as e:
            logger.warning(f"[CREDIT_CHECK] bureau answered {e.response.status_code}")
            raise CollaboratorFailure("credit_bureau", f"bureau answered {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"[CREDIT_CHECK] bureau unreachable: {e}")
            raise CollaboratorFailure("credit_bureau", f"bureau unreachable: {e}")
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.warning(f"[CREDIT_CHECK] malformed bureau response: {e}")
            raise CollaboratorFailure("credit_bureau", "malformed bureau response")

        logger.info(f"[CREDIT_CHECK] score={cibil.score} risk={cibil.risk_category}")
        return cibil
