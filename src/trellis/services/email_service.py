"""
Email service for Resend API integration.
Handles template interpolation, rendering and delivery.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from trellis.config import get_settings
from trellis.exceptions import IntegrationError
from trellis.models import Contact

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates"

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

TEMPLATE_VARIABLES = [
    {"key": "first_name", "label": "First Name"},
    {"key": "last_name", "label": "Last Name"},
    {"key": "full_name", "label": "Full Name"},
    {"key": "email", "label": "Email"},
    {"key": "company_name", "label": "Company Name"},
    {"key": "job_title", "label": "Job Title"},
]

_jinja_env: Optional[Environment] = None


def get_jinja_env() -> Environment:
    """Lazily build the Jinja2 environment used for transactional emails."""
    global _jinja_env
    if _jinja_env is None:
        _jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
        )
    return _jinja_env


# =============================================================================
# Template helpers
# =============================================================================


def interpolate_template(content: str, variables: dict[str, str]) -> str:
    """Replace {{name}} placeholders; unknown names are left untouched."""
    if not content:
        return content

    def replace(match: re.Match) -> str:
        key = match.group(1)
        value = variables.get(key)
        return value if value is not None else match.group(0)

    return VARIABLE_PATTERN.sub(replace, content)


def extract_variables(content: str) -> list[str]:
    """Return placeholder names in order of first appearance."""
    seen: list[str] = []
    for name in VARIABLE_PATTERN.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def build_contact_variables(contact: Contact) -> dict[str, str]:
    return {
        "first_name": contact.first_name,
        "last_name": contact.last_name or "",
        "full_name": contact.full_name,
        "email": contact.email or "",
        "company_name": contact.company.name if contact.company else "",
        "job_title": contact.job_title or "",
    }


def get_from_address(org_name: Optional[str] = None) -> str:
    email = get_settings().resend_from_email
    if org_name:
        return f"{org_name} <{email}>"
    return email


def render_email(template_name: str, **context) -> str:
    """Render an HTML email from the templates directory."""
    settings = get_settings()
    context.setdefault("app_url", settings.app_url.rstrip("/"))
    context.setdefault("app_name", settings.app_name)
    return get_jinja_env().get_template(template_name).render(**context)


# =============================================================================
# Delivery
# =============================================================================


@dataclass
class SentEmail:
    """Result of a successful send."""

    id: Optional[str]
    to: str
    subject: str


class EmailService:
    """Service for sending email through the Resend API."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.settings = get_settings()
        self.api_key = api_key or self.settings.resend_api_key
        self.base_url = (base_url or self.settings.resend_api_base).rstrip("/")

    def is_configured(self) -> bool:
        """Check if the Resend API key is set."""
        return bool(self.api_key)

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        from_address: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> SentEmail:
        """
        Send a single email.

        Raises:
            IntegrationError: if the provider is not configured or rejects the message
        """
        if not self.is_configured():
            raise IntegrationError("RESEND_API_KEY not configured")

        payload = {
            "from": from_address or get_from_address(),
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                response = client.post(
                    f"{self.base_url}/emails", headers=self._get_headers(), json=payload
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise IntegrationError(
                f"Resend rejected email to {to}: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise IntegrationError(f"Resend request failed: {e}") from e

        logger.info(f"Email sent to {to}: {subject}")
        return SentEmail(id=data.get("id"), to=to, subject=subject)


def get_email_service() -> EmailService:
    """Dependency factory for the email sender."""
    return EmailService()
