from __future__ import annotations

import os
from datetime import timedelta

# --------------------------------------------------------------------------------------
# Sessions
# --------------------------------------------------------------------------------------
DEFAULT_SESSION_TTL_HOURS = 168

try:
    SESSION_TTL_HOURS = float(os.getenv("SESSION_TTL_HOURS", str(DEFAULT_SESSION_TTL_HOURS)))
except ValueError:
    SESSION_TTL_HOURS = DEFAULT_SESSION_TTL_HOURS
if SESSION_TTL_HOURS <= 0:
    SESSION_TTL_HOURS = DEFAULT_SESSION_TTL_HOURS

SESSION_TTL = timedelta(hours=SESSION_TTL_HOURS)

# --------------------------------------------------------------------------------------
# Microsoft Entra (Azure AD / M365) app details for sign-in and Graph mail
# --------------------------------------------------------------------------------------
CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
TENANT_ID = os.getenv("MICROSOFT_TENANT_ID")
CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")
REDIRECT_URI = os.getenv("REDIRECT_URI")  # e.g., https://helpdesk.example.com/auth/callback
AUTHORITY = f"https://login.microsoftonline.com/{TENANT_ID}" if TENANT_ID else None
SCOPE = ["User.Read"]
MAIL_SENDER = (os.getenv("MICROSOFT_MAIL_SENDER") or "").strip() or None

TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "").strip().lower() in {"1", "true", "yes"}


def _load_admin_emails(raw: str | None = None) -> set[str]:
    """Return the addresses that are bootstrapped as admins on first sign-in."""

    if raw is None:
        raw = os.getenv("ADMIN_EMAILS", "")
    return {item.strip().lower() for item in raw.split(",") if item.strip()}


ADMIN_EMAILS = _load_admin_emails()


def graph_mail_configured() -> bool:
    return bool(CLIENT_ID and CLIENT_SECRET and AUTHORITY and MAIL_SENDER)
