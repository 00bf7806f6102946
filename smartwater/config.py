import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./smartwater.db")

# Firebase Configuration
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL (CORS default)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    f"{FRONTEND_URL},http://localhost:3000",
).split(",")

# Fleetmatics GPS tracking
# Per-organization credentials live in the fleetmatics_configs table; these are defaults only
FLEETMATICS_DEFAULT_BASE_URL = os.getenv("FLEETMATICS_DEFAULT_BASE_URL", "https://api.fleetmatics.com/v1")
FLEETMATICS_DEFAULT_SYNC_MINUTES = int(os.getenv("FLEETMATICS_DEFAULT_SYNC_MINUTES", "15"))
FLEETMATICS_HTTP_TIMEOUT = float(os.getenv("FLEETMATICS_HTTP_TIMEOUT", "30"))
# Start sync loops for every active organization config when the API boots
FLEETMATICS_AUTOSTART = os.getenv("FLEETMATICS_AUTOSTART", "true").lower() == "true"

# Email (Gmail OAuth2 send path)
# EMAIL_PROVIDER unset means email is disabled
EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER")
EMAIL_USER = os.getenv("EMAIL_USER", "")
GMAIL_CLIENT_ID = os.getenv("GMAIL_CLIENT_ID")
GMAIL_CLIENT_SECRET = os.getenv("GMAIL_CLIENT_SECRET")
GMAIL_REFRESH_TOKEN = os.getenv("GMAIL_REFRESH_TOKEN")
