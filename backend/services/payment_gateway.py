"""
JustTry CRM - Payment gateway (loan payouts)

- RazorpayGateway: contact -> fund account -> payout (IMPS, INR, paise)
- MockPaymentGateway: deterministic success when Razorpay keys are missing

transfer() reports provider errors in the result. payout_status() is
read-only: it never touches a Disbursement.
"""

import re
import logging
import httpx
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from config import (
    COLLABORATOR_TIMEOUT_SECONDS,
    RAZORPAY_ACCOUNT_NUMBER,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    mask_account_number,
    timestamp_ms,
)
from models import AccountType, BankDetails

logger = logging.getLogger("payment_gateway")

RAZORPAY_API = "https://api.razorpay.com/v1"
IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{8,18}$")


class TransferResult(BaseModel):
    success: bool
    reference_id: str = ""
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


def format_inr(amount: float) -> str:
    return f"₹{amount:,.0f}"


def validate_bank_details(bank) -> List[str]:
    """Returns the list of problems, empty when the details are usable for a payout."""
    errors = []
    if not bank.account_holder_name or len(bank.account_holder_name.strip()) < 2:
        errors.append("Account holder name is required and must be at least 2 characters")
    if not bank.account_number or not ACCOUNT_NUMBER_PATTERN.match(bank.account_number):
        errors.append("Account number is required and must be 8 to 18 digits")
    if not bank.bank_name or len(bank.bank_name.strip()) < 2:
        errors.append("Bank name is required")
    if not bank.ifsc_code or not IFSC_PATTERN.match(bank.ifsc_code):
        errors.append("Valid IFSC code is required (format: XXXX0XXXXXX)")
    if bank.account_type not in (AccountType.SAVINGS, AccountType.CURRENT):
        errors.append("Account type must be either savings or current")
    return errors


class PaymentGateway:
    """Payout contract shared by the real and mock gateways"""

    name = "gateway"

    async def transfer(self, amount: float, bank_details: BankDetails, lead_id: str, email: str) -> TransferResult:
        raise NotImplementedError

    async def payout_status(self, reference_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class MockPaymentGateway(PaymentGateway):
    name = "mock"

    def __init__(self, clock=timestamp_ms):
        self.clock = clock

    async def transfer(self, amount: float, bank_details: BankDetails, lead_id: str, email: str) -> TransferResult:
        ms = self.clock()
        reference_id = f"mock-{ms}"
        logger.info(f"[PAYOUT] mock payout {format_inr(amount)} for {lead_id} | ref={reference_id}")
        return TransferResult(
            success=True,
            reference_id=reference_id,
            raw={
                "id": reference_id,
                "status": "processed",
                "amount": amount,
                "currency": "INR",
                "created_at": ms // 1000,
                "description": f"Loan disbursement for Lead {lead_id}",
                "metadata": {
                    "leadId": lead_id,
                    "bankName": bank_details.bank_name,
                    "accountNumber": mask_account_number(bank_details.account_number),
                    "ifscCode": bank_details.ifsc_code,
                    "disbursementType": "loan",
                },
            },
        )

    async def payout_status(self, reference_id: str) -> Optional[Dict[str, Any]]:
        return {
            "status": "processed" if reference_id.startswith("mock-") else "unknown",
            "amount": 0,
            "currency": "INR",
            "description": "Mock disbursement",
        }


def _razorpay_error(resp: httpx.Response) -> str:
    try:
        error = resp.json().get("error") or {}
    except ValueError:
        return f"Razorpay answered {resp.status_code}"
    if error.get("description"):
        return error["description"]
    if error.get("code"):
        return f"Razorpay Error {error['code']}: {error.get('reason', '')}"
    return f"Razorpay answered {resp.status_code}"


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, key_id: str = None, key_secret: str = None, account_number: str = None,
                 timeout: float = None, transport=None):
        self.key_id = key_id or RAZORPAY_KEY_ID
        self.key_secret = key_secret or RAZORPAY_KEY_SECRET
        self.account_number = account_number or RAZORPAY_ACCOUNT_NUMBER
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=RAZORPAY_API,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def transfer(self, amount: float, bank_details: BankDetails, lead_id: str, email: str) -> TransferResult:
        account = mask_account_number(bank_details.account_number)
        logger.info(f"[PAYOUT] razorpay payout {format_inr(amount)} for {lead_id} to {account}")
        try:
            async with self._client() as client:
                resp = await client.post("/contacts", json={
                    "name": bank_details.account_holder_name,
                    "email": email,
                    "type": "customer",
                    "reference_id": lead_id,
                })
                if resp.status_code >= 400:
                    return self._failed(lead_id, resp)
                contact_id = resp.json()["id"]

                resp = await client.post("/fund_accounts", json={
                    "contact_id": contact_id,
                    "account_type": "bank_account",
                    "bank_account": {
                        "name": bank_details.account_holder_name,
                        "ifsc": bank_details.ifsc_code,
                        "account_number": bank_details.account_number,
                    },
                })
                if resp.status_code >= 400:
                    return self._failed(lead_id, resp)
                fund_account_id = resp.json()["id"]

                resp = await client.post("/payouts", json={
                    "account_number": self.account_number,
                    "fund_account_id": fund_account_id,
                    "amount": int(round(amount * 100)),
                    "currency": "INR",
                    "mode": "IMPS",
                    "purpose": "payout",
                    "queue_if_low_balance": True,
                    "reference_id": lead_id,
                    "narration": f"Loan disbursement for Lead {lead_id}",
                })
                if resp.status_code >= 400:
                    return self._failed(lead_id, resp)
                payout = resp.json()
        except httpx.HTTPError as e:
            logger.warning(f"[PAYOUT] razorpay unreachable for {lead_id}: {e}")
            return TransferResult(success=False, error=f"Payment gateway unreachable: {e}")
        except (KeyError, ValueError) as e:
            logger.warning(f"[PAYOUT] malformed razorpay response for {lead_id}: {e}")
            return TransferResult(success=False, error="Malformed payment gateway response")

        logger.info(f"[PAYOUT] razorpay payout created for {lead_id} | ref={payout.get('id')}")
        return TransferResult(
            success=True,
            reference_id=payout.get("id", ""),
            raw={
                "id": payout.get("id"),
                "status": payout.get("status"),
                "amount": (payout.get("amount") or 0) / 100,
                "currency": payout.get("currency"),
                "created_at": payout.get("created_at"),
                "description": payout.get("narration"),
                "metadata": {
                    "leadId": lead_id,
                    "contactId": contact_id,
                    "fundAccountId": fund_account_id,
                    "bankName": bank_details.bank_name,
                    "accountNumber": account,
                    "ifscCode": bank_details.ifsc_code,
                },
            },
        )

    def _failed(self, lead_id: str, resp: httpx.Response) -> TransferResult:
        error = _razorpay_error(resp)
        logger.warning(f"[PAYOUT] razorpay rejected payout for {lead_id}: {error}")
        try:
            raw = resp.json()
        except ValueError:
            raw = {"status_code": resp.status_code}
        return TransferResult(success=False, error=error, raw=raw)

    async def payout_status(self, reference_id: str) -> Optional[Dict[str, Any]]:
        if reference_id.startswith("mock-"):
            return await MockPaymentGateway().payout_status(reference_id)
        try:
            async with self._client() as client:
                resp = await client.get(f"/payouts/{reference_id}")
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[PAYOUT] status lookup failed for {reference_id}: {e}")
            return None
        return {
            "status": data.get("status"),
            "amount": (data.get("amount") or 0) / 100,
            "currency": data.get("currency"),
            "created": data.get("created_at"),
            "description": data.get("narration"),
        }


def get_payment_gateway() -> PaymentGateway:
    """Razorpay when configured, mock otherwise."""
    if RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET:
        return RazorpayGateway()
    logger.warning("[PAYOUT] Razorpay keys not configured, using mock gateway")
    return MockPaymentGateway()
