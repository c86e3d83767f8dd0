"""
JustTry CRM - Notification dispatch

Outbound customer notifications fired by the workflow:
- AI voice call (Bland AI)
- AI-generated email (OpenRouter content + SendGrid delivery)

CONTRACT: place_call / send_email NEVER raise. Every outcome is a DispatchResult.
"""

import asyncio
import logging
import httpx
from typing import Optional
from pydantic import BaseModel

from config import (
    APP_URL,
    BLAND_AI_API_KEY,
    COLLABORATOR_TIMEOUT_SECONDS,
    OPENROUTER_API_KEY,
    OPENROUTER_MODEL,
)
from email_service import EmailService, EmailDeliveryError

logger = logging.getLogger("notification_dispatch")

BLAND_AI_URL = "https://api.bland.ai/v1/calls"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
BLAND_AI_VOICE = "e1289219-0ea2-4f22-a994-c542c2a48a0f"

SIGNATURE_TEXT = (
    "JustTry CRM Team\n"
    "Email: support@justtry.com\n"
    "Phone: +91-XXXX-XXXXXX\n"
    "Website: www.justtry.com"
)
SIGNATURE_HTML = (
    '<hr style="margin: 20px 0;">'
    '<p style="color: #666; font-size: 14px;">'
    '<strong>JustTry CRM Team</strong><br>'
    'Email: support@justtry.com<br>'
    'Phone: +91-XXXX-XXXXXX<br>'
    'Website: www.justtry.com'
    '</p>'
)


class DispatchResult(BaseModel):
    success: bool
    reference_id: Optional[str] = None
    error: Optional[str] = None


class EmailContent(BaseModel):
    subject: str
    html: str
    text: str


# ════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ════════════════════════════════════════════════════════════════════════════

APPROVAL_SUBJECTS = {
    ("Loan", "Approved"): "Congratulations! Your Loan Application Has Been Approved",
    ("Investment", "Activated"): "Your Investment Account is Now Active!",
    ("Insurance", "Policy Issued"): "Your Insurance Policy is Ready!",
}


def approval_email_subject(service_type: str, status: str) -> str:
    return APPROVAL_SUBJECTS.get(
        (service_type, status),
        f"Update on Your {service_type} Application"
    )


def normalize_phone_in(phone: str) -> str:
    """Indian numbers without country code get +91."""
    phone = phone.strip().replace(" ", "")
    return phone if phone.startswith("+") else f"+91{phone}"


def generate_call_script(service_type: str, status: str, name: str) -> str:
    greeting = f"Hello {name}! This is an automated call from JustTry CRM."

    if service_type == "Loan" and status == "Approved":
        return (
            f"{greeting} Great news! Your loan application has been approved. "
            "Congratulations on your new loan! I can help answer any questions you might have about "
            "next steps for loan disbursement, interest rates and terms, documentation requirements, "
            "or your payment schedule. How can I assist you today?"
        )
    if service_type == "Investment" and status == "Activated":
        return (
            f"{greeting} Excellent news! Your investment account has been successfully activated. "
            "I can help you with understanding your portfolio, investment strategy details, "
            "account management and performance tracking. "
            "What would you like to know about your investment account?"
        )
    if service_type == "Insurance" and status == "Policy Issued":
        return (
            f"{greeting} Wonderful news! Your insurance policy has been successfully issued and is now active. "
            "I can provide information about policy details and coverage, premium payments, "
            "the claim process and renewal. How can I help you with your new insurance policy?"
        )

    return (
        f"{greeting} We have an important update about your {service_type.lower()} application. "
        "Please call us back at your convenience to discuss the details."
    )


def text_to_html(text: str) -> str:
    body = text.replace("\n\n", "</p><p>").replace("\n", "<br>")
    return f"<p>{body}</p>"


def fallback_approval_email(service_type: str, status: str, name: str) -> EmailContent:
    text = (
        f"Dear {name},\n\n"
        f"Congratulations! Your {service_type} application has been {status.lower()}.\n\n"
        f"We're excited to help you with your {service_type.lower()} needs. "
        "Our team will be in touch shortly with next steps.\n\n"
        "Best regards,\n"
        f"{SIGNATURE_TEXT}"
    )
    return EmailContent(
        subject=approval_email_subject(service_type, status),
        html=text.replace("\n", "<br>"),
        text=text,
    )


CASUAL_REPHRASINGS = [
    ("hi there", "We wanted to inform you that"),
    ("sorry for the mistake", "We sincerely apologize for this error"),
    ("thank you", "Thank you for your understanding"),
    ("will change to normal state", "will be corrected to its proper status"),
    ("mistakenly approved", "was inadvertently marked as approved"),
]


def fallback_custom_email(message: str, name: str, service_type: str) -> EmailContent:
    """Template used when the AI provider is unavailable."""
    rephrased = message
    for casual, professional in CASUAL_REPHRASINGS:
        idx = rephrased.lower().find(casual)
        if idx >= 0:
            rephrased = rephrased[:idx] + professional + rephrased[idx + len(casual):]

    if rephrased == message or len(rephrased) < 20:
        lowered = message.lower()
        if "mistake" in lowered or "error" in lowered:
            rephrased = (
                f"We regret to inform you that there was an error with your {service_type} "
                "application status. We are currently correcting this issue and will update you once it's resolved."
            )
        else:
            rephrased = (
                f"We wanted to provide you with an important update regarding your "
                f"{service_type} application. {message}"
            )

    text = (
        f"Dear {name},\n\n"
        f"{rephrased}\n\n"
        "We appreciate your patience and understanding during this process.\n\n"
        "Please don't hesitate to contact us if you have any questions or need further clarification.\n\n"
        "Best regards,\n"
        "JustTry CRM Team"
    )
    return EmailContent(
        subject=f"Update Regarding Your {service_type} Application",
        html=text.replace("\n", "<br>"),
        text=text,
    )


# ════════════════════════════════════════════════════════════════════════════
# AI EMAIL CONTENT (OpenRouter)
# ════════════════════════════════════════════════════════════════════════════

APPROVAL_SYSTEM_PROMPT = """You are a professional CRM assistant for JustTry CRM. Generate a personalized, professional email congratulating a customer on their {service_type} approval. Keep it concise, friendly, and informative. Include next steps and contact information.

Requirements:
- Professional yet warm tone
- Include customer's name
- Mention specific service type and status
- Provide clear next steps
- ALWAYS sign off as "JustTry CRM Team" with contact info: support@justtry.com, +91-XXXX-XXXXXX, www.justtry.com
- DO NOT use placeholders like [Your Name] or [Company Name]
- Keep under 200 words"""

CUSTOM_SYSTEM_PROMPT = """You are a professional CRM assistant for JustTry CRM. Generate a personalized, professional email FROM JustTry CRM TO the customer based on the CRM agent's request.

The agent's input is what they want to communicate TO the customer. Do NOT copy it: rephrase it into proper, professional email language.

Requirements:
- Professional yet warm tone, start with "Dear <customer name>"
- Include relevant lead information (service type, current status, value)
- Provide clear next steps
- ALWAYS sign off as "JustTry CRM Team" with contact info: support@justtry.com, +91-XXXX-XXXXXX, www.justtry.com
- Start with a line "Subject: <subject>"
- Keep it between 150 and 300 words

Lead details:
- Name: {name}
- Email: {email}
- Phone: {phone}
- Service Type: {service_type}
- Sub-Category: {sub_category}
- Current Status: {status}
- Value: {value}"""


class EmailComposer:
    """Generates email bodies with an LLM, falls back to templates."""

    def __init__(self, api_key: str = None, model: str = None, timeout: float = None, transport=None):
        self.api_key = OPENROUTER_API_KEY if api_key is None else api_key
        self.model = model or OPENROUTER_MODEL
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS
        self._transport = transport

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                OPENROUTER_URL,
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "temperature": 0.7,
                    "max_tokens": max_tokens,
                },
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "HTTP-Referer": APP_URL,
                    "X-Title": "JustTry CRM",
                }
            )
            resp.raise_for_status()
            data = resp.json()
        return data["choices"][0]["message"]["content"].strip()

    async def compose_approval_email(self, service_type: str, status: str, name: str) -> EmailContent:
        if not self.api_key:
            return fallback_approval_email(service_type, status, name)
        try:
            ai_content = await self.complete(
                APPROVAL_SYSTEM_PROMPT.format(service_type=service_type),
                f"Generate an email for:\n- Customer Name: {name}\n- Service Type: {service_type}\n"
                f"- Status: {status}\n\nThe email should congratulate them and provide relevant "
                f"information about their {service_type} approval.",
                max_tokens=500,
            )
        except (httpx.HTTPError, KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.warning(f"[EMAIL_AI] approval content generation failed, using template: {e}")
            return fallback_approval_email(service_type, status, name)

        return EmailContent(
            subject=approval_email_subject(service_type, status),
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                f'<h2 style="color: #2563eb;">Congratulations {name}!</h2>'
                f"{text_to_html(ai_content)}{SIGNATURE_HTML}</div>"
            ),
            text=f"{ai_content}\n\n---\n{SIGNATURE_TEXT}",
        )

    async def compose_custom_email(self, message: str, lead) -> EmailContent:
        service_type = lead.service_type.value
        if not self.api_key:
            return fallback_custom_email(message, lead.name, service_type)
        try:
            ai_content = await self.complete(
                CUSTOM_SYSTEM_PROMPT.format(
                    name=lead.name, email=lead.email, phone=lead.phone,
                    service_type=service_type, sub_category=lead.sub_category,
                    status=lead.status, value=lead.value,
                ),
                f'CRM Agent\'s message to customer: "{message}"\n\n'
                f"Please generate a complete professional email FROM JustTry CRM TO the customer "
                f"{lead.name} conveying this message. Include subject line and full email content.",
                max_tokens=800,
            )
        except (httpx.HTTPError, KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.warning(f"[EMAIL_AI] custom content generation failed, using template: {e}")
            return fallback_custom_email(message, lead.name, service_type)

        lines = ai_content.split("\n")
        subject = next(
            (l[len("subject:"):].strip() for l in lines if l.lower().startswith("subject:")),
            "Update from JustTry CRM"
        )
        body = "\n".join(l for l in lines if not l.lower().startswith("subject:")).strip()
        return EmailContent(
            subject=subject,
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                f"{text_to_html(body)}{SIGNATURE_HTML}</div>"
            ),
            text=f"{body}\n\n---\n{SIGNATURE_TEXT}",
        )


# ════════════════════════════════════════════════════════════════════════════
# AI VOICE CALLS (Bland AI)
# ════════════════════════════════════════════════════════════════════════════

class VoiceCallClient:

    def __init__(self, api_key: str = None, timeout: float = None, transport=None):
        self.api_key = BLAND_AI_API_KEY if api_key is None else api_key
        self.timeout = timeout or COLLABORATOR_TIMEOUT_SECONDS
        self._transport = transport

    async def start_call(self, phone: str, name: str, service_type: str, status: str, lead_id: str) -> str:
        """Returns the provider call id. Raises httpx errors."""
        payload = {
            "phone_number": normalize_phone_in(phone),
            "task": generate_call_script(service_type, status, name),
            "voice": BLAND_AI_VOICE,
            "wait_for_greeting": False,
            "record": True,
            "answered_by_enabled": True,
            "interruption_threshold": 500,
            "max_duration": 12,
            "model": "base",
            "language": "en",
            "voicemail_action": "hangup",
            "metadata": {
                "leadId": lead_id,
                "serviceType": service_type,
                "status": status,
                "customerName": name,
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                BLAND_AI_URL,
                json=payload,
                headers={"authorization": self.api_key, "Content-Type": "application/json"}
            )
            resp.raise_for_status()
            data = resp.json()
        return str(data.get("call_id") or data.get("id") or "")


# ════════════════════════════════════════════════════════════════════════════
# DISPATCH
# ════════════════════════════════════════════════════════════════════════════

class NotificationDispatch:

    def __init__(self, call_client: VoiceCallClient = None, composer: EmailComposer = None,
                 mailer: EmailService = None):
        self.call_client = call_client or VoiceCallClient()
        self.composer = composer or EmailComposer()
        self.mailer = mailer or EmailService()

    async def place_call(self, phone: str, name: str, service_type: str, status: str, lead_id: str) -> DispatchResult:
        if not self.call_client.api_key:
            logger.warning("[AI_CALL] Bland AI API key not configured, skipping AI call")
            return DispatchResult(success=False, error="AI calling not configured")
        try:
            call_id = await self.call_client.start_call(phone, name, service_type, status, lead_id)
        except httpx.HTTPStatusError as e:
            logger.warning(f"[AI_CALL] lead={lead_id} provider error {e.response.status_code}")
            return DispatchResult(success=False, error=f"Bland AI API error: {e.response.status_code}")
        except (httpx.HTTPError, TypeError, AttributeError, ValueError) as e:
            logger.warning(f"[AI_CALL] lead={lead_id} failed: {e}")
            return DispatchResult(success=False, error=f"AI call failed: {e}")

        logger.info(f"[AI_CALL] lead={lead_id} call initiated | call_id={call_id}")
        return DispatchResult(success=True, reference_id=call_id)

    async def send_email(self, email: str, name: str, service_type: str, status: str, lead_id: str,
                         content: Optional[EmailContent] = None) -> DispatchResult:
        if not self.mailer.configured:
            logger.warning("[AI_EMAIL] email delivery not configured, skipping email")
            return DispatchResult(success=False, error="Email delivery not configured")

        if content is None:
            content = await self.composer.compose_approval_email(service_type, status, name)

        try:
            email_id = await asyncio.to_thread(self.mailer.send, email, content.subject, content.html, content.text)
        except EmailDeliveryError as e:
            logger.warning(f"[AI_EMAIL] lead={lead_id} delivery failed: {e}")
            return DispatchResult(success=False, error=f"Failed to send email: {e}")

        logger.info(f"[AI_EMAIL] lead={lead_id} email sent | email_id={email_id}")
        return DispatchResult(success=True, reference_id=email_id)
