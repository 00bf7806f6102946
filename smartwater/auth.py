import base64
import json
import logging
import time

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.x509 import load_pem_x509_certificate
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import FIREBASE_PROJECT_ID
from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer()

GOOGLE_CERTS_URL = "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"

# Cache for Google's public keys
_cached_keys = None


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


async def get_google_public_keys(force_refresh: bool = False):
    """Fetch Google's public keys for Firebase token verification"""
    global _cached_keys
    if _cached_keys and not force_refresh:
        return _cached_keys

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(GOOGLE_CERTS_URL)
            if response.status_code == 200:
                _cached_keys = response.json()
                logger.info(f"✅ Fetched {len(_cached_keys)} Google public keys")
                return _cached_keys
            logger.error(f"❌ Failed to fetch Google public keys: HTTP {response.status_code}")
    except Exception as e:
        logger.error(f"❌ Error fetching Google public keys: {str(e)}")
    return None


async def verify_firebase_token(token: str) -> dict:
    """Verify a Firebase ID token's RS256 signature and claims"""
    if not FIREBASE_PROJECT_ID:
        logger.error("❌ FIREBASE_PROJECT_ID not configured")
        raise HTTPException(status_code=500, detail="Firebase not configured")

    parts = token.split(".")
    if len(parts) != 3:
        raise HTTPException(status_code=401, detail="Invalid token format. Expected a valid JWT token.")
    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64decode(header_b64))
        payload = json.loads(_b64decode(payload_b64))
        signature = _b64decode(signature_b64)
    except Exception as e:
        raise HTTPException(status_code=401, detail="Invalid token encoding") from e

    kid = header.get("kid")
    if header.get("alg") != "RS256" or not kid:
        raise HTTPException(status_code=401, detail="Invalid token header")

    public_keys = await get_google_public_keys()
    if not public_keys or kid not in public_keys:
        logger.warning(f"⚠️ Key ID {kid} not found in public keys, refreshing cache")
        public_keys = await get_google_public_keys(force_refresh=True)
        if not public_keys or kid not in public_keys:
            raise HTTPException(status_code=401, detail="Unable to verify token signature")

    try:
        cert = load_pem_x509_certificate(public_keys[kid].encode())
        cert.public_key().verify(
            signature, f"{header_b64}.{payload_b64}".encode(), padding.PKCS1v15(), hashes.SHA256()
        )
    except Exception as e:
        logger.error(f"❌ Token signature verification failed: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token signature") from e

    if payload.get("aud") != FIREBASE_PROJECT_ID:
        raise HTTPException(status_code=401, detail="Invalid token audience")
    if payload.get("iss") != f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}":
        raise HTTPException(status_code=401, detail="Invalid token issuer")
    if payload.get("exp", 0) < time.time():
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        )

    return payload


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from Firebase token"""
    decoded_token = await verify_firebase_token(credentials.credentials)

    firebase_uid = decoded_token.get("sub") or decoded_token.get("user_id")
    if not firebase_uid:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    user = db.query(User).filter(User.firebase_uid == firebase_uid).first()
    if not user:
        logger.warning(f"⚠️ Authenticated Firebase user {firebase_uid} has no account")
        raise HTTPException(status_code=403, detail="Account not found")

    return user


async def get_current_organization_user(user: User = Depends(get_current_user)) -> User:
    """Current user, who must belong to an organization"""
    if not user.organization_id:
        raise HTTPException(status_code=400, detail="Organization ID required")
    return user


async def get_current_admin(user: User = Depends(get_current_organization_user)) -> User:
    """Current organization user with an admin role"""
    if not user.is_admin:
        logger.warning(f"⚠️ User {user.email} attempted admin-only access")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
