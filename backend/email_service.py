"""
SendGrid email service for JustTry CRM
- Approval emails (AI-generated content)
- Custom emails written by CRM agents
"""

import logging
from typing import Optional
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To

from config import SENDGRID_API_KEY, SENDER_EMAIL, SENDER_NAME

logger = logging.getLogger("email_service")


class EmailDeliveryError(Exception):
    pass


class EmailService:
    """Centralized outbound email transport"""

    def __init__(self, api_key: str = None, sender: str = None, sender_name: str = None, client=None):
        self.api_key = SENDGRID_API_KEY if api_key is None else api_key
        self.sender = sender or SENDER_EMAIL
        self.sender_name = sender_name or SENDER_NAME
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> Optional[str]:
        """
        Send one email. Returns the SendGrid message id.
        Raises EmailDeliveryError on any delivery problem.
        """
        if not self.configured:
            raise EmailDeliveryError("SENDGRID_API_KEY not configured")

        message = Mail(
            from_email=Email(self.sender, self.sender_name),
            to_emails=To(to_email),
            subject=subject,
            plain_text_content=text_content or None,
            html_content=html_content
        )

        sg = self._client or SendGridAPIClient(self.api_key)
        try:
            response = sg.send(message)
        except Exception as e:
            logger.error(f"Exception sending email to {to_email}: {str(e)}")
            raise EmailDeliveryError(str(e))

        if response.status_code not in [200, 202]:
            logger.error(f"Email rejected: {response.status_code}")
            raise EmailDeliveryError(f"SendGrid answered {response.status_code}")

        message_id = None
        headers = getattr(response, "headers", None) or {}
        if hasattr(headers, "get"):
            message_id = headers.get("X-Message-Id")

        logger.info(f"Email sent to {to_email}: {subject}")
        return message_id or f"sendgrid-{response.status_code}"
