from __future__ import annotations

import base64
import binascii
import html
import json
import logging
import re
import smtplib
import urllib.error
import urllib.request
from email.message import EmailMessage

from .config import Settings
from .errors import ConfigurationError, EmailDeliveryError
from .identity import normalize_email, safe_text

logger = logging.getLogger("cosmic_cv.mailer")

REPORT_SUBJECT = "Launch confirmed! Your career strategy is ready"
REPORT_LINK = "https://cv.somosmaas.org"


def report_filename(name: str) -> str:
    cleaned = re.sub(r"\s+", "_", safe_text(name)) or "Candidate"
    cleaned = re.sub(r"[^A-Za-z0-9_\-]", "", cleaned) or "Candidate"
    return f"Tactical_Report_{cleaned}.pdf"


def render_report_email(name: str, mission_title: str | None) -> tuple[str, str]:
    safe_name = html.escape(safe_text(name) or "there")
    mission = html.escape(safe_text(mission_title) or "Strategic")
    text_body = (
        f"Hi {safe_text(name) or 'there'},\n\n"
        f"Your CV analysis for the {safe_text(mission_title) or 'Strategic'} mission is attached.\n"
        f"Open it any time at {REPORT_LINK}.\n\n"
        "See you in orbit,\nThe Somos MAAS team"
    )
    html_body = (
        f"<h2>Hi {safe_name}!</h2>"
        f"<p>Your CV analysis for the <strong>{mission}</strong> mission is attached.</p>"
        f'<p><a href="{REPORT_LINK}">Open my tactical report</a></p>'
        "<p>See you in orbit,<br>The Somos MAAS team</p>"
    )
    return text_body, html_body


class ReportMailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    def provider_sequence(self) -> list[str]:
        preferred = self.settings.email_provider if self.settings.email_provider in {"smtp", "resend"} else "auto"
        if preferred == "smtp":
            return ["smtp", "resend"]
        if preferred == "resend":
            return ["resend", "smtp"]
        sequence: list[str] = []
        if self.settings.resend_enabled:
            sequence.append("resend")
        if self.settings.smtp_enabled:
            sequence.append("smtp")
        return sequence

    def send_report(self, to_email: str, name: str, pdf_base64: str, mission_title: str | None = None) -> str:
        recipient = normalize_email(to_email)
        if not recipient:
            raise EmailDeliveryError("Recipient email is required.")
        try:
            pdf_bytes = base64.b64decode(safe_text(pdf_base64), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EmailDeliveryError("Report attachment is not valid base64.") from exc

        sequence = self.provider_sequence()
        if not sequence:
            logger.warning("Email sending is not configured. Unable to send report to %s", recipient)
            raise ConfigurationError("Email settings are missing. Configure RESEND_API_KEY/RESEND_FROM or SMTP settings.")

        text_body, html_body = render_report_email(name, mission_title)
        filename = report_filename(name)
        errors: list[str] = []
        for provider in sequence:
            if provider == "resend":
                message_id, error = self._send_resend(recipient, text_body, html_body, filename, pdf_bytes)
            else:
                message_id, error = self._send_smtp(recipient, text_body, html_body, filename, pdf_bytes)
            if not error:
                logger.info("Report email sent to %s via %s.", recipient, provider)
                return message_id
            errors.append(f"{provider.upper()}: {error}")
        raise EmailDeliveryError(" | ".join(errors))

    def _send_resend(
        self, recipient: str, text_body: str, html_body: str, filename: str, pdf_bytes: bytes
    ) -> tuple[str, str | None]:
        if not self.settings.resend_enabled:
            return "", "Resend email settings are missing in backend environment."
        payload: dict[str, object] = {
            "from": f"{self.settings.email_from_name} <{self.settings.resend_from}>",
            "to": [recipient],
            "subject": REPORT_SUBJECT,
            "text": text_body,
            "html": html_body,
            "attachments": [{"filename": filename, "content": base64.b64encode(pdf_bytes).decode("ascii")}],
        }
        if self.settings.email_reply_to:
            payload["reply_to"] = self.settings.email_reply_to
        req = urllib.request.Request(
            "https://api.resend.com/emails",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.resend_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "CosmicCVBackend/1.0 (+https://cv.somosmaas.org)",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.settings.email_http_timeout_seconds) as resp:
                raw = resp.read().decode("utf-8", errors="ignore")
                if int(resp.getcode() or 0) >= 400:
                    return "", f"Resend API rejected the request (HTTP {resp.getcode()})."
            try:
                parsed = json.loads(raw or "{}")
            except ValueError:
                parsed = {}
            return safe_text(str(parsed.get("id") or "")), None
        except urllib.error.HTTPError as exc:
            logger.exception("Resend HTTP error while sending report to %s", recipient)
            try:
                details = exc.read().decode("utf-8", errors="ignore")
            except OSError:
                details = ""
            if details:
                return "", f"Resend API error ({exc.code}): {details[:220]}"
            return "", f"Resend API error ({exc.code})."
        except TimeoutError:
            logger.exception("Resend timeout while sending report to %s", recipient)
            return "", "Resend API timeout. Check provider connectivity."
        except urllib.error.URLError:
            logger.exception("Resend network error while sending report to %s", recipient)
            return "", "Resend network error. Verify connectivity from backend."

    def _send_smtp(
        self, recipient: str, text_body: str, html_body: str, filename: str, pdf_bytes: bytes
    ) -> tuple[str, str | None]:
        settings = self.settings
        if not settings.smtp_enabled:
            return "", "SMTP email settings are missing in backend environment."

        msg = EmailMessage()
        msg["Subject"] = REPORT_SUBJECT
        msg["From"] = f"{settings.email_from_name} <{settings.smtp_from}>"
        msg["To"] = recipient
        if settings.email_reply_to:
            msg["Reply-To"] = settings.email_reply_to
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        msg.add_attachment(pdf_bytes, maintype="application", subtype="pdf", filename=filename)

        try:
            use_ssl = settings.smtp_port == 465 or settings.smtp_use_ssl
            if use_ssl:
                with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=settings.email_http_timeout_seconds) as server:
                    server.login(settings.smtp_username, settings.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.email_http_timeout_seconds) as server:
                    if settings.smtp_use_tls:
                        server.starttls()
                    server.login(settings.smtp_username, settings.smtp_password)
                    server.send_message(msg)
            return safe_text(msg.get("Message-ID")), None
        except smtplib.SMTPAuthenticationError:
            logger.exception("SMTP auth failed for %s", settings.smtp_username)
            return "", "SMTP authentication failed. Check EMAIL_SMTP_USERNAME and EMAIL_SMTP_PASSWORD."
        except TimeoutError:
            logger.exception("SMTP timeout for host %s", settings.smtp_host)
            return "", "SMTP connection timed out. Check EMAIL_SMTP_HOST, EMAIL_SMTP_PORT, and EMAIL_SMTP_USE_TLS."
        except smtplib.SMTPException:
            logger.exception("SMTP error while sending report to %s", recipient)
            return "", "SMTP rejected the request. Verify SMTP host/port/TLS and sender mailbox."
        except OSError:
            logger.exception("SMTP network error while sending report to %s", recipient)
            return "", "SMTP network error. Verify host/port and provider connectivity."
