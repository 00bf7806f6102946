"""
Gmail send path: credentials, token caching, send/profile calls and the email routes
"""

import base64
import json
from email import message_from_bytes

import httpx
import pytest
from fastapi.testclient import TestClient

from smartwater.auth import get_current_admin, get_current_organization_user
from smartwater.main import app
from smartwater.routes.email import get_gmail_service
from smartwater.services.gmail_service import (
    EmailAttachment,
    EmailCredentials,
    EmailOptions,
    GmailService,
    GmailStatus,
    create_gmail_service,
)

from .fakes import run

CREDENTIALS = EmailCredentials(
    provider="gmail",
    user="office@smartwaterpools.test",
    client_id="client-id",
    client_secret="client-secret",
    refresh_token="refresh-token",
)


class FakeGmail:
    def __init__(self, send_status=200):
        self.send_status = send_status
        self.token_calls = 0
        self.sent = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "ya29.test", "expires_in": 3600})

        assert request.headers["Authorization"] == "Bearer ya29.test"
        if request.url.path == "/gmail/v1/users/me/messages/send":
            if self.send_status != 200:
                return httpx.Response(self.send_status, json={"error": {"message": "backend error"}})
            raw = json.loads(request.content)["raw"]
            self.sent.append(message_from_bytes(base64.urlsafe_b64decode(raw)))
            return httpx.Response(200, json={"id": f"msg-{len(self.sent)}"})
        if request.url.path == "/gmail/v1/users/me/profile":
            return httpx.Response(200, json={"emailAddress": CREDENTIALS.user})
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _options(**overrides):
    options = {"to": "customer@example.com", "subject": "Pool service report", "text": "All clear."}
    options.update(overrides)
    return EmailOptions(**options)


class TestFactory:
    def test_no_credentials(self):
        assert create_gmail_service(None) is None

    def test_non_gmail_provider(self):
        assert create_gmail_service(EmailCredentials(provider="smtp", user="office@example.com")) is None

    def test_gmail_provider(self):
        assert isinstance(create_gmail_service(CREDENTIALS), GmailService)


class TestSendEmail:
    def test_missing_oauth_credentials_is_unconfigured(self):
        gmail_api = FakeGmail()
        service = GmailService(
            EmailCredentials(provider="gmail", user="office@example.com"), transport=gmail_api.transport
        )

        result = run(service.send_email(_options()))

        assert result.status == GmailStatus.UNCONFIGURED
        assert result.ok is False
        assert gmail_api.token_calls == 0

    def test_send_posts_mime_message(self):
        gmail_api = FakeGmail()
        service = GmailService(CREDENTIALS, transport=gmail_api.transport)

        result = run(
            service.send_email(
                _options(
                    html="<p>All clear.</p>",
                    cc=["manager@example.com"],
                    attachments=[EmailAttachment("report.txt", "pH 7.4", "text/plain")],
                )
            )
        )

        assert result.ok
        assert result.message_id == "msg-1"
        message = gmail_api.sent[0]
        assert message["To"] == "customer@example.com"
        assert message["From"] == CREDENTIALS.user
        assert message["Subject"] == "Pool service report"
        assert message["Cc"] == "manager@example.com"
        filenames = [part.get_filename() for part in message.walk() if part.get_filename()]
        assert filenames == ["report.txt"]

    def test_access_token_is_cached(self):
        gmail_api = FakeGmail()
        service = GmailService(CREDENTIALS, transport=gmail_api.transport)

        async def send_twice():
            return [await service.send_email(_options()) for _ in range(2)]

        results = run(send_twice())

        assert all(result.ok for result in results)
        assert gmail_api.token_calls == 1

    def test_api_error_is_failure(self):
        service = GmailService(CREDENTIALS, transport=FakeGmail(send_status=500).transport)

        result = run(service.send_email(_options()))

        assert result.status == GmailStatus.FAILED
        assert result.message_id is None

    def test_test_connection_reports_mailbox(self):
        service = GmailService(CREDENTIALS, transport=FakeGmail().transport)

        result = run(service.test_connection())

        assert result.ok
        assert result.detail == CREDENTIALS.user


class TestEmailRoutes:
    @pytest.fixture
    def client(self, admin_user):
        app.dependency_overrides[get_current_admin] = lambda: admin_user
        app.dependency_overrides[get_current_organization_user] = lambda: admin_user
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_send_unconfigured(self, client):
        app.dependency_overrides[get_gmail_service] = lambda: None

        response = client.post(
            "/api/email/send", json={"to": "customer@example.com", "subject": "Hi", "text": "Hello"}
        )

        assert response.status_code == 503

    def test_send_failure(self, client):
        service = GmailService(CREDENTIALS, transport=FakeGmail(send_status=500).transport)
        app.dependency_overrides[get_gmail_service] = lambda: service

        response = client.post(
            "/api/email/send", json={"to": "customer@example.com", "subject": "Hi", "text": "Hello"}
        )

        assert response.status_code == 502

    def test_send_success(self, client):
        service = GmailService(CREDENTIALS, transport=FakeGmail().transport)
        app.dependency_overrides[get_gmail_service] = lambda: service

        response = client.post(
            "/api/email/send", json={"to": "customer@example.com", "subject": "Hi", "text": "Hello"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "messageId": "msg-1"}

    def test_status_unconfigured(self, client):
        app.dependency_overrides[get_gmail_service] = lambda: None

        response = client.get("/api/email/status")

        assert response.json() == {"configured": False, "provider": None, "user": None}

    def test_invalid_recipient(self, client):
        app.dependency_overrides[get_gmail_service] = lambda: None
        response = client.post("/api/email/send", json={"to": "nobody", "subject": "Hi", "text": "Hello"})
        assert response.status_code == 422
        assert "Invalid recipient email address" in response.json()["detail"][0]["msg"]
