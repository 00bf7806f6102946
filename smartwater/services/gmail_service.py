"""
Gmail Service
Sends mail through the Gmail API with OAuth2 refresh-token credentials.

An unconfigured service reports UNCONFIGURED instead of pretending to send.
"""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Callable, Optional, Union

import httpx

from ..config import (
    EMAIL_PROVIDER,
    EMAIL_USER,
    GMAIL_CLIENT_ID,
    GMAIL_CLIENT_SECRET,
    GMAIL_REFRESH_TOKEN,
)
from ..shared.datetime_utils import utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GMAIL_API = "https://gmail.googleapis.com/gmail/v1"

SUPPORTED_PROVIDERS = ("gmail", "smtp")
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)


class GmailStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    UNCONFIGURED = "unconfigured"


@dataclass
class GmailResult:
    status: GmailStatus
    message_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == GmailStatus.OK


@dataclass
class EmailCredentials:
    provider: str
    user: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def has_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


@dataclass
class EmailAttachment:
    filename: str
    content: Union[bytes, str]
    content_type: str = "application/octet-stream"


@dataclass
class EmailOptions:
    to: str
    subject: str
    text: str
    html: Optional[str] = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[EmailAttachment] = field(default_factory=list)


def get_default_email_credentials() -> Optional[EmailCredentials]:
    """Credentials from the environment; None means email is disabled"""
    if not EMAIL_PROVIDER:
        logger.info("ℹ️ No email provider configured. Email functionality will be disabled.")
        return None

    provider = EMAIL_PROVIDER.lower()
    if provider not in SUPPORTED_PROVIDERS:
        logger.warning(f"⚠️ Unsupported email provider: {EMAIL_PROVIDER}")
        return None

    credentials = EmailCredentials(provider=provider, user=EMAIL_USER)
    if provider == "gmail":
        credentials.client_id = GMAIL_CLIENT_ID
        credentials.client_secret = GMAIL_CLIENT_SECRET
        credentials.refresh_token = GMAIL_REFRESH_TOKEN
    return credentials


def build_mime_message(sender: str, options: EmailOptions) -> MIMEMultipart:
    msg = MIMEMultipart("mixed")
    msg["From"] = sender
    msg["To"] = options.to
    msg["Subject"] = options.subject
    if options.cc:
        msg["Cc"] = ", ".join(options.cc)
    if options.bcc:
        msg["Bcc"] = ", ".join(options.bcc)

    body = MIMEMultipart("alternative")
    body.attach(MIMEText(options.text, "plain"))
    if options.html:
        body.attach(MIMEText(options.html, "html"))
    msg.attach(body)

    for attachment in options.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        part = MIMEBase(maintype or "application", subtype or "octet-stream")
        content = attachment.content.encode() if isinstance(attachment.content, str) else attachment.content
        part.set_payload(content)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", f'attachment; filename="{attachment.filename}"')
        msg.attach(part)

    return msg


class GmailService:
    def __init__(
        self,
        credentials: EmailCredentials,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self._transport = transport
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        logger.info(f"Gmail service initialized for: {credentials.user}")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    def _unconfigured(self) -> GmailResult:
        logger.error("❌ Missing required Gmail API credentials (client id, client secret or refresh token)")
        return GmailResult(GmailStatus.UNCONFIGURED, detail="Gmail credentials are not configured")

    async def get_access_token(self) -> Optional[str]:
        """Cached access token, refreshed from the refresh token when near expiry"""
        if (
            self._access_token
            and self._token_expires_at
            and self._token_expires_at - self._clock() >= TOKEN_EXPIRY_BUFFER
        ):
            return self._access_token

        logger.info("🔄 Requesting Gmail access token...")
        async with self._client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.credentials.client_id,
                    "client_secret": self.credentials.client_secret,
                    "refresh_token": self.credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Gmail token refresh failed: HTTP {response.status_code}")
            return None

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            logger.error("❌ No access token in Gmail refresh response")
            return None

        self._access_token = access_token
        self._token_expires_at = self._clock() + timedelta(seconds=tokens.get("expires_in", 3600))
        return access_token

    async def send_email(self, options: EmailOptions) -> GmailResult:
        if not self.credentials.has_oauth:
            return self._unconfigured()

        try:
            access_token = await self.get_access_token()
            if not access_token:
                return GmailResult(GmailStatus.FAILED, detail="Could not obtain Gmail access token")

            message = build_mime_message(self.credentials.user, options)
            raw = base64.urlsafe_b64encode(message.as_bytes()).decode()

            async with self._client() as client:
                response = await client.post(
                    f"{GMAIL_API}/users/me/messages/send",
                    headers={"Authorization": f"Bearer {access_token}"},
                    json={"raw": raw},
                )

            if response.status_code not in (200, 201):
                logger.error(f"❌ Gmail send failed: HTTP {response.status_code} {response.text[:200]}")
                return GmailResult(GmailStatus.FAILED, detail=f"Gmail API returned {response.status_code}")

            message_id = response.json().get("id")
            logger.info(f"✅ Email sent via Gmail to {options.to}: {message_id}")
            return GmailResult(GmailStatus.OK, message_id=message_id)
        except Exception as e:
            logger.error(f"❌ Error sending email via Gmail: {str(e)}")
            return GmailResult(GmailStatus.FAILED, detail=str(e))

    async def test_connection(self) -> GmailResult:
        """Token refresh plus a profile lookup; detail is the mailbox address"""
        if not self.credentials.has_oauth:
            return self._unconfigured()

        try:
            access_token = await self.get_access_token()
            if not access_token:
                return GmailResult(GmailStatus.FAILED, detail="Could not obtain Gmail access token")

            async with self._client() as client:
                response = await client.get(
                    f"{GMAIL_API}/users/me/profile",
                    headers={"Authorization": f"Bearer {access_token}"},
                )

            if response.status_code != 200:
                logger.warning(f"⚠️ Gmail profile lookup failed: HTTP {response.status_code}")
                return GmailResult(GmailStatus.FAILED, detail=f"Gmail API returned {response.status_code}")

            email_address = response.json().get("emailAddress")
            logger.info(f"✅ Connected to Gmail API for: {email_address}")
            return GmailResult(GmailStatus.OK, detail=email_address)
        except Exception as e:
            logger.error(f"❌ Error testing Gmail connection: {str(e)}")
            return GmailResult(GmailStatus.FAILED, detail=str(e))


def create_gmail_service(
    credentials: Optional[EmailCredentials],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[GmailService]:
    if credentials is None:
        return None
    if credentials.provider != "gmail":
        logger.error(f"❌ Invalid provider for Gmail service: {credentials.provider}")
        return None
    return GmailService(credentials, transport=transport)
