"""
Email Routes - Gmail status, connection test and manual sends
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from ..auth import get_current_admin, get_current_organization_user
from ..models import User
from ..services.gmail_service import (
    EmailOptions,
    GmailService,
    GmailStatus,
    create_gmail_service,
    get_default_email_credentials,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["Email"])


class SendEmailRequest(BaseModel):
    to: str
    subject: str
    text: str
    html: Optional[str] = None
    cc: list[str] = []
    bcc: list[str] = []

    @field_validator("to")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("Invalid recipient email address")
        return v


def get_gmail_service() -> Optional[GmailService]:
    """Dependency injection for the environment-configured Gmail service"""
    return create_gmail_service(get_default_email_credentials())


@router.get("/status")
async def email_status(
    current_user: User = Depends(get_current_organization_user),
    gmail: Optional[GmailService] = Depends(get_gmail_service),
):
    """Whether outgoing email is configured"""
    if not gmail:
        return {"configured": False, "provider": None, "user": None}
    return {
        "configured": gmail.credentials.has_oauth,
        "provider": gmail.credentials.provider,
        "user": gmail.credentials.user,
    }


@router.get("/test-connection")
async def test_email_connection(
    current_user: User = Depends(get_current_admin),
    gmail: Optional[GmailService] = Depends(get_gmail_service),
):
    """Check the Gmail credentials against the Gmail API"""
    if not gmail:
        return {"success": False, "status": GmailStatus.UNCONFIGURED.value, "message": "Email is not configured"}

    result = await gmail.test_connection()
    return {
        "success": result.ok,
        "status": result.status.value,
        "message": f"Connected to Gmail as {result.detail}" if result.ok else result.detail,
    }


@router.post("/send")
async def send_email(
    data: SendEmailRequest,
    current_user: User = Depends(get_current_admin),
    gmail: Optional[GmailService] = Depends(get_gmail_service),
):
    """Send an email through Gmail (admins only)"""
    if not gmail:
        raise HTTPException(status_code=503, detail="Email is not configured")

    result = await gmail.send_email(
        EmailOptions(
            to=data.to,
            subject=data.subject,
            text=data.text,
            html=data.html,
            cc=data.cc,
            bcc=data.bcc,
        )
    )

    if result.status == GmailStatus.UNCONFIGURED:
        raise HTTPException(status_code=503, detail=result.detail)
    if not result.ok:
        logger.error(f"❌ Email to {data.to} requested by {current_user.email} failed: {result.detail}")
        raise HTTPException(status_code=502, detail=result.detail or "Failed to send email")

    return {"success": True, "messageId": result.message_id}
