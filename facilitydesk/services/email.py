# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Email service using SMTP."""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import aiosmtplib

from facilitydesk.config import get_settings
from facilitydesk.utils.helpers import escape_html

logger = logging.getLogger(__name__)

STATUS_LABELS = {"seen": "Seen", "approved": "Approved", "denied": "Denied"}

STATUS_MESSAGES = {
    "seen": "Your request has been reviewed.",
    "approved": "Your request has been approved! The equipment will be prepared for you.",
    "denied": "Unfortunately, your request has been denied.",
}


def _wrap_html(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body>
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>{title}</h2>
      {body}
      <p style="color: #666; font-size: 12px; margin-top: 40px;">
        This is an automated message. Please do not reply to this email.
      </p>
    </div>
</body>
</html>
"""


class EmailService:
    """Email service for requester notifications."""

    def __init__(self):
        self.settings = get_settings()

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send an email via SMTP.

        Args:
            to: Recipient email address
            subject: Email subject
            html: HTML content
            text: Plain text content (optional)
        """
        email_config = self.settings.email

        msg = MIMEMultipart("alternative")
        msg["From"] = f"{email_config.from_name} <{email_config.from_address}>"
        msg["To"] = to
        msg["Subject"] = subject

        if text:
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=email_config.smtp_host,
                port=email_config.smtp_port,
                username=email_config.smtp_username or None,
                password=email_config.smtp_password or None,
                start_tls=email_config.smtp_use_tls,
                use_tls=email_config.smtp_use_ssl,
            )
        except Exception:
            logger.exception("Failed to send email to %s", to)
            raise

        return {"success": True, "provider": "smtp"}

    def _request_url(self, path: str, request_id: int, access_token: Optional[str]) -> str:
        url = f"{self.settings.app.base_url}/checkout/{path}/{request_id}"
        if access_token:
            url += f"?token={access_token}"
        return url

    async def send_request_received(
        self,
        email: str,
        name: str,
        request_id: int,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Confirm that a checkout request was submitted."""
        request_url = self._request_url("request", request_id, access_token)
        body = f"""
      <p>Hello {escape_html(name)},</p>
      <p>Thank you for submitting your equipment checkout request. We will review it shortly.</p>
      <p>You will receive an email notification once your request has been reviewed.</p>
      <p>Follow your request and reply to staff here:</p>
      <p><a href="{request_url}">{request_url}</a></p>
      <p>Request ID: <strong>{request_id}</strong></p>
"""
        text = (
            f"Hello {name},\n\n"
            "Thank you for submitting your equipment checkout request. We will review it shortly.\n\n"
            f"Follow your request: {request_url}\n\n"
            f"Request ID: {request_id}\n"
        )
        return await self.send_email(
            to=email,
            subject="Equipment Checkout Request Received",
            html=_wrap_html("Equipment Checkout Request Received", body),
            text=text,
        )

    async def send_status_update(
        self,
        email: str,
        name: str,
        request_id: int,
        status: str,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Tell the requester their request was seen, approved or denied."""
        label = STATUS_LABELS.get(status, status.title())
        note = ""
        if message:
            note = f"<p><strong>Message:</strong></p><p>{escape_html(message)}</p>"

        body = f"""
      <p>Hello {escape_html(name)},</p>
      <p>{STATUS_MESSAGES.get(status, "")}</p>
      {note}
      <p>Request ID: <strong>{request_id}</strong></p>
"""
        text = f"Hello {name},\n\n{STATUS_MESSAGES.get(status, '')}\n\n"
        if message:
            text += f"Message: {message}\n\n"
        text += f"Request ID: {request_id}\n"

        return await self.send_email(
            to=email,
            subject=f"Equipment Checkout Request {label}",
            html=_wrap_html(f"Equipment Checkout Request {label}", body),
            text=text,
        )

    async def send_ready_for_pickup(
        self,
        email: str,
        name: str,
        request_id: int,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Invite the requester to schedule a pickup time."""
        schedule_url = self._request_url("schedule", request_id, access_token)
        body = f"""
      <p>Hello {escape_html(name)},</p>
      <p>Your equipment checkout request has been prepared and is ready for pickup.</p>
      <p>Please schedule a convenient pickup time:</p>
      <p><a href="{schedule_url}">{schedule_url}</a></p>
      <p>Request ID: <strong>{request_id}</strong></p>
"""
        text = (
            f"Hello {name},\n\n"
            "Your equipment checkout request is ready for pickup.\n"
            f"Schedule a pickup time: {schedule_url}\n\n"
            f"Request ID: {request_id}\n"
        )
        return await self.send_email(
            to=email,
            subject="Your Equipment is Ready for Pickup",
            html=_wrap_html("Your Equipment is Ready for Pickup", body),
            text=text,
        )

    async def send_request_message(
        self,
        email: str,
        name: str,
        request_id: int,
        sender_name: str,
        message: str,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Forward a staff message to the requester, with a link to reply."""
        reply_url = self._request_url("request", request_id, access_token)
        body = f"""
      <p>Hello {escape_html(name)},</p>
      <p>You have received a new message regarding your equipment checkout request:</p>
      <p><strong>From:</strong> {escape_html(sender_name)}</p>
      <p>{escape_html(message)}</p>
      <p>Reply to staff here: <a href="{reply_url}">{reply_url}</a></p>
      <p>Request ID: <strong>{request_id}</strong></p>
"""
        text = (
            f"Hello {name},\n\nFrom: {sender_name}\n\n{message}\n\n"
            f"Reply to staff here: {reply_url}\n\n"
            f"Request ID: {request_id}\n"
        )
        return await self.send_email(
            to=email,
            subject=f"[Request {request_id}] New Message on Your Equipment Checkout Request",
            html=_wrap_html("New Message on Your Equipment Checkout Request", body),
            text=text,
        )


# Global service instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the global email service instance."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
