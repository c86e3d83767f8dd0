"""
Notification dispatch: AI calls, AI email content, delivery.
Providers are replaced by httpx.MockTransport and a fake SendGrid client.
"""

import json

import httpx
import pytest

from email_service import EmailService
from services.notification_dispatch import (
    EmailComposer,
    EmailContent,
    NotificationDispatch,
    VoiceCallClient,
    approval_email_subject,
    fallback_custom_email,
    generate_call_script,
    normalize_phone_in,
)
from tests.conftest import make_lead


class FakeResponse:
    def __init__(self, status_code=202, headers=None):
        self.status_code = status_code
        self.headers = headers or {"X-Message-Id": "sg-123"}


class FakeSendGrid:
    def __init__(self, response=None, error=None):
        self.sent = []
        self.response = response or FakeResponse()
        self.error = error

    def send(self, message):
        self.sent.append(message)
        if self.error:
            raise self.error
        return self.response


def bland_transport(log, status=200):
    def handler(request):
        log.append(request)
        if status != 200:
            return httpx.Response(status, json={"message": "nope"})
        return httpx.Response(200, json={"status": "success", "call_id": "call-abc"})
    return httpx.MockTransport(handler)


def openrouter_transport(content):
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})
    return httpx.MockTransport(handler)


def mailer(client=None):
    return EmailService(api_key="SG.test", sender="crm@justtry.com", sender_name="JustTry CRM",
                        client=client or FakeSendGrid())


class TestTemplates:

    def test_subjects(self):
        assert approval_email_subject("Loan", "Approved") == \
            "Congratulations! Your Loan Application Has Been Approved"
        assert approval_email_subject("Investment", "Activated") == "Your Investment Account is Now Active!"
        assert approval_email_subject("Insurance", "Policy Issued") == "Your Insurance Policy is Ready!"
        assert approval_email_subject("Loan", "Rejected") == "Update on Your Loan Application"

    def test_phone_gets_country_code(self):
        assert normalize_phone_in("98765 43210") == "+919876543210"
        assert normalize_phone_in("+14155550100") == "+14155550100"

    def test_call_script(self):
        assert "loan application has been approved" in generate_call_script("Loan", "Approved", "Asha")
        assert "Hello Asha" in generate_call_script("Insurance", "Underwriting", "Asha")

    def test_fallback_custom_email_rephrases(self):
        content = fallback_custom_email("hi there your file is ready", "Asha", "Loan")
        assert content.subject == "Update Regarding Your Loan Application"
        assert "We wanted to inform you that" in content.text
        assert content.text.startswith("Dear Asha")


class TestPlaceCall:

    @pytest.mark.asyncio
    async def test_call_placed(self):
        log = []
        dispatch = NotificationDispatch(
            call_client=VoiceCallClient(api_key="bland-key", transport=bland_transport(log)),
            composer=EmailComposer(api_key=""),
            mailer=mailer(),
        )

        result = await dispatch.place_call("9876543210", "Asha", "Loan", "Approved", "LEAD-1")

        assert result.success
        assert result.reference_id == "call-abc"
        body = json.loads(log[0].content)
        assert body["phone_number"] == "+919876543210"
        assert body["metadata"]["leadId"] == "LEAD-1"
        assert log[0].headers["authorization"] == "bland-key"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""), mailer=mailer())

        result = await dispatch.place_call("9876543210", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success
        assert result.error == "AI calling not configured"

    @pytest.mark.asyncio
    async def test_provider_error_never_raises(self):
        dispatch = NotificationDispatch(
            call_client=VoiceCallClient(api_key="k", transport=bland_transport([], status=500)),
            composer=EmailComposer(api_key=""),
            mailer=mailer(),
        )

        result = await dispatch.place_call("9876543210", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_malformed_call_reply_never_raises(self):
        dispatch = NotificationDispatch(
            call_client=VoiceCallClient(
                api_key="k",
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["queued"])),
            ),
            composer=EmailComposer(api_key=""),
            mailer=mailer(),
        )

        result = await dispatch.place_call("9876543210", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success
        assert result.error.startswith("AI call failed")


class TestSendEmail:

    @pytest.mark.asyncio
    async def test_template_email_when_ai_unconfigured(self):
        sendgrid = FakeSendGrid()
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""), mailer=mailer(sendgrid))

        result = await dispatch.send_email("asha@example.com", "Asha", "Loan", "Approved", "LEAD-1")

        assert result.success
        assert result.reference_id == "sg-123"
        assert len(sendgrid.sent) == 1
        assert sendgrid.sent[0].subject.get() == "Congratulations! Your Loan Application Has Been Approved"

    @pytest.mark.asyncio
    async def test_ai_content_used(self):
        composer = EmailComposer(api_key="or-key", transport=openrouter_transport("Dear Asha,\n\nWelcome aboard."))

        content = await composer.compose_approval_email("Loan", "Approved", "Asha")

        assert "Welcome aboard." in content.text
        assert "JustTry CRM Team" in content.text
        assert content.subject == "Congratulations! Your Loan Application Has Been Approved"

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_template(self):
        def handler(request):
            return httpx.Response(503)

        composer = EmailComposer(api_key="or-key", transport=httpx.MockTransport(handler))

        content = await composer.compose_approval_email("Investment", "Activated", "Asha")

        assert content.subject == "Your Investment Account is Now Active!"
        assert content.text.startswith("Dear Asha")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"choices": [{"message": {"content": None}}]},
        {"choices": None},
        {"choices": [{"message": None}]},
        ["not", "an", "object"],
    ])
    async def test_malformed_ai_reply_falls_back_to_template(self, payload):
        composer = EmailComposer(
            api_key="or-key",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
        )

        approval = await composer.compose_approval_email("Loan", "Approved", "Asha")
        custom = await composer.compose_custom_email("Your documents are verified", make_lead())

        assert approval.subject == "Congratulations! Your Loan Application Has Been Approved"
        assert approval.text.startswith("Dear Asha")
        assert custom.text

    @pytest.mark.asyncio
    async def test_custom_email_subject_parsed(self):
        composer = EmailComposer(
            api_key="or-key",
            transport=openrouter_transport("Subject: Your documents\n\nDear Asha,\n\nAll received."),
        )

        content = await composer.compose_custom_email("docs ok", make_lead())

        assert content.subject == "Your documents"
        assert "Subject:" not in content.text
        assert "All received." in content.text

    @pytest.mark.asyncio
    async def test_given_content_is_sent_as_is(self):
        sendgrid = FakeSendGrid()
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""), mailer=mailer(sendgrid))
        content = EmailContent(subject="Custom", html="<p>x</p>", text="x")

        result = await dispatch.send_email("asha@example.com", "Asha", "Loan", "KYC Pending", "LEAD-1",
                                           content=content)

        assert result.success
        assert sendgrid.sent[0].subject.get() == "Custom"

    @pytest.mark.asyncio
    async def test_delivery_failure_never_raises(self):
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""),
                                        mailer=mailer(FakeSendGrid(error=RuntimeError("401 Unauthorized"))))

        result = await dispatch.send_email("asha@example.com", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success
        assert "401" in result.error

    @pytest.mark.asyncio
    async def test_rejected_status_code(self):
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""),
                                        mailer=mailer(FakeSendGrid(response=FakeResponse(status_code=400))))

        result = await dispatch.send_email("asha@example.com", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success

    @pytest.mark.asyncio
    async def test_mail_not_configured(self):
        dispatch = NotificationDispatch(call_client=VoiceCallClient(api_key=""),
                                        composer=EmailComposer(api_key=""),
                                        mailer=EmailService(api_key=""))

        result = await dispatch.send_email("asha@example.com", "Asha", "Loan", "Approved", "LEAD-1")

        assert not result.success
        assert result.error == "Email delivery not configured"
