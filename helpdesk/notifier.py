from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import requests
from markupsafe import escape
from msal import ConfidentialClientApplication

from helpdesk import config
from helpdesk.errors import DependencyError

logger = logging.getLogger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
TICKET_CREATED = "ticket_created"
TICKET_UPDATED = "ticket_updated"


@dataclass(frozen=True)
class NotifyResult:
    status: str
    reason: Optional[str] = None

    @classmethod
    def sent(cls) -> "NotifyResult":
        return cls("sent")

    @classmethod
    def skipped(cls, reason: str) -> "NotifyResult":
        return cls("skipped", reason)


class Notifier:
    """Outbound notification interface. ``notify`` must never raise."""

    def notify(self, address: Optional[str], kind: str, data: dict[str, Any]) -> NotifyResult:
        raise NotImplementedError


class NullNotifier(Notifier):
    def notify(self, address, kind, data):
        logger.debug("Email sending disabled; skipped %s to %s", kind, address)
        return NotifyResult.skipped("email sending disabled")


# --------------------------------------------------------------------------------------
# Message bodies
# --------------------------------------------------------------------------------------


def render_message(kind: str, data: dict[str, Any]) -> tuple[str, str]:
    ticket_id = escape(data.get("ticket_id") or "")
    subject = data.get("subject") or f"Ticket {data.get('ticket_id')}"
    if kind == TICKET_CREATED:
        body = f"""
        <p>Thank you for contacting support. We have received your ticket and will respond as soon as possible.</p>
        <p><strong>Ticket ID:</strong> {ticket_id}<br>
        <strong>Subject:</strong> {escape(subject)}</p>
        <p>You can check the status of your ticket at any time with your ticket ID and email address.</p>
        """
        return f"Ticket Created: {subject}", body
    if kind == TICKET_UPDATED:
        message = data.get("message")
        latest = ""
        if message:
            message_html = str(escape(message)).replace("\n", "<br>")
            latest = f"""
            <div style="border-left:4px solid #2563eb;padding-left:12px;margin:16px 0;">
              <p style="margin:0;"><strong>Latest Response:</strong></p>
              <p style="margin:8px 0 0 0;">{message_html}</p>
            </div>
            """
        body = f"""
        <p>There has been an update to your support ticket.</p>
        <p><strong>Ticket ID:</strong> {ticket_id}<br>
        <strong>Subject:</strong> {escape(subject)}<br>
        <strong>Status:</strong> {escape(data.get("status") or "")}</p>
        {latest}
        """
        return f"Ticket Update: {subject}", body
    raise ValueError(f"Unknown notification kind: {kind}")


# --------------------------------------------------------------------------------------
# Microsoft Graph delivery
# --------------------------------------------------------------------------------------


class GraphNotifier(Notifier):
    """Send mail through Graph ``sendMail`` with an app-only MSAL token."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        authority: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: int = 10,
    ):
        self.client_id = client_id or config.CLIENT_ID
        self.client_secret = client_secret or config.CLIENT_SECRET
        self.authority = authority or config.AUTHORITY
        self.sender = sender or config.MAIL_SENDER
        self.timeout = timeout
        self._msal_app: Optional[ConfidentialClientApplication] = None
        self._token_cache: dict[str, float | str] = {"token": "", "expires": 0.0}

    def notify(self, address, kind, data):
        if not address:
            return NotifyResult.skipped("no recipient")
        try:
            subject, html_body = render_message(kind, data)
            self._send(address, subject, html_body)
        except (DependencyError, ValueError) as exc:
            logger.warning("Notification %s to %s not sent: %s", kind, address, exc)
            return NotifyResult.skipped(str(exc))
        logger.info("Notification %s sent to %s", kind, address)
        return NotifyResult.sent()

    def _app(self) -> ConfidentialClientApplication:
        if not (self.client_id and self.client_secret and self.authority):
            raise DependencyError("M365 env vars missing (MICROSOFT_CLIENT_ID/SECRET, MICROSOFT_TENANT_ID).")
        if self._msal_app is None:
            self._msal_app = ConfidentialClientApplication(
                self.client_id,
                authority=self.authority,
                client_credential=self.client_secret,
            )
        return self._msal_app

    def _token(self) -> str:
        now = time.time()
        cached_token = self._token_cache.get("token") or ""
        expires = float(self._token_cache.get("expires") or 0.0)
        if cached_token and now < expires - 60:
            return str(cached_token)
        try:
            result = self._app().acquire_token_for_client(scopes=[GRAPH_DEFAULT_SCOPE])
        except DependencyError:
            raise
        except Exception as exc:
            raise DependencyError(f"Unable to acquire app token: {exc}") from exc
        token = result.get("access_token")
        if not token:
            error = result.get("error_description") or result.get("error") or "Unknown error"
            raise DependencyError(f"App token missing from MSAL response: {error}")
        expires_in = int(result.get("expires_in") or 0)
        self._token_cache["token"] = token
        self._token_cache["expires"] = now + max(0, expires_in)
        return token

    def _send(self, address: str, subject: str, html_body: str) -> None:
        if not self.sender:
            raise DependencyError("MICROSOFT_MAIL_SENDER is not configured.")
        payload = {
            "message": {
                "subject": subject,
                "body": {"contentType": "HTML", "content": html_body},
                "toRecipients": [{"emailAddress": {"address": address}}],
            }
        }
        headers = {
            "Authorization": f"Bearer {self._token()}",
            "Content-Type": "application/json",
        }
        endpoint = f"https://graph.microsoft.com/v1.0/users/{quote(self.sender)}/sendMail"
        try:
            resp = requests.post(endpoint, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DependencyError(f"Graph sendMail request failed: {exc}") from exc
        if resp.status_code not in (200, 202):
            raise DependencyError(f"Graph sendMail returned {resp.status_code}: {resp.text[:200]}")


def build_notifier() -> Notifier:
    if config.graph_mail_configured():
        return GraphNotifier()
    logger.warning("Graph mail is not configured. Email notifications will not be sent.")
    return NullNotifier()
