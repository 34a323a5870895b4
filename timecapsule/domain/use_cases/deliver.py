from __future__ import annotations

import html
import re

from timecapsule.domain.dto import BuildEmailCommand, BuildEmailResult
from timecapsule.domain.errors import DomainValidationError
from timecapsule.domain.models import DeliveryItem

COMPONENT_ID_EMAIL = "domain.delivery.build_email"
COMPONENT_ID_VALIDATE = "domain.delivery.validate"

ACCESS_PATH = "access"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def build_access_url(*, base_url: str, access_token: str) -> str:
    """Recipient-facing link, `{base}/access/{token}` with no double slash."""
    base = base_url.rstrip("/")
    return f"{base}/{ACCESS_PATH}/{access_token}"


def validate_recipient(recipient_email: str | None) -> str:
    value = (recipient_email or "").strip()
    if not value:
        raise DomainValidationError("Recipient email is missing")
    if not EMAIL_PATTERN.match(value):
        raise DomainValidationError(f"Recipient email is malformed: {value}")
    return value


def validate_item(item: DeliveryItem) -> None:
    """Pre-send checks; failures skip the claim and fail the item directly."""
    validate_recipient(item.recipient_email)
    if not item.access_token:
        raise DomainValidationError("Access token is missing")


def build_email(cmd: BuildEmailCommand) -> BuildEmailResult:
    file_name = cmd.file_name.strip() or "file"
    subject = f'Your TimeCapsule file "{file_name}" is ready!'

    safe_url = html.escape(cmd.access_url, quote=True)
    safe_name = html.escape(file_name)
    html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
  <h2 style="color: #4F46E5;">Time Capsule</h2>
  <p>Hi there,</p>
  <p>You've received a scheduled file, <strong>{safe_name}</strong>, through <strong>Time Capsule</strong>.</p>
  <p>Click the link below to access your file:</p>
  <div style="text-align: center; margin: 25px 0;">
    <a href="{safe_url}" style="display: inline-block; padding: 12px 24px; background-color: #4F46E5; color: white; text-decoration: none; border-radius: 5px; font-weight: bold;">Access Your File</a>
  </div>
  <p>If you're having trouble accessing the file or the link has expired, please contact the sender.</p>
  <p>Thanks,<br>The Time Capsule Team</p>
  <div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #eee; font-size: 12px; color: #666;">
    <p>If the button doesn't work, copy and paste this link in your browser: {safe_url}</p>
  </div>
</div>
""".strip()
    return BuildEmailResult(subject=subject, html_body=html_body)
