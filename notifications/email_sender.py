"""
SMTP delivery of alert events.

Credentials come from DBWATCH_SMTP_USER / DBWATCH_SMTP_PASS when set,
otherwise from the ``email`` config section.
"""
import html
import logging
import os
import smtplib
import ssl
from contextlib import contextmanager
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

from utils.formatters import format_tags, format_timestamp

logger = logging.getLogger("dbwatch.notifications.email_sender")

SEVERITY_COLORS = {
    "CRITICAL": "#FF1744",
    "HIGH": "#FF6D00",
    "MEDIUM": "#FFC107",
    "LOW": "#2196F3",
}
RESOLVED_COLOR = "#00C853"

_HTML_TEMPLATE = """\
<div style="font-family: system-ui, sans-serif; max-width: 560px; margin: 0 auto; padding: 20px;">
  <h2 style="margin-top: 0;">SQL Server alert</h2>
  <div style="border-left: 4px solid {color}; background: #F0F1F6; padding: 16px; border-radius: 8px;">
    <h3 style="margin-top: 0; color: {color};">{status} / {severity}: {rule}</h3>
    <p>{message}</p>
    {observed}
    <p style="color: #888;">{tags}</p>
  </div>
  <p style="color: #636E72; font-size: 12px;">dbwatch, {when}</p>
</div>
"""


class EmailSender:
    def __init__(self, config: dict):
        section = config.get("email") or {}
        self.smtp_host = section.get("smtp_host", "")
        self.smtp_port = int(section.get("smtp_port", 587))
        self.use_tls = bool(section.get("use_tls", True))
        self.from_address = section.get("from_address", "")
        self.from_name = section.get("from_name", "dbwatch")
        self.to_address = section.get("to_address", "")
        self.username = os.environ.get("DBWATCH_SMTP_USER") or section.get("smtp_username", "")
        self.password = os.environ.get("DBWATCH_SMTP_PASS") or section.get("smtp_password", "")

    def is_configured(self) -> bool:
        required = (self.smtp_host, self.from_address, self.to_address, self.username, self.password)
        return all(required)

    def build_alert_message(self, event) -> MIMEMultipart:
        severity = event.severity.value
        status = event.status.value
        resolved = status == "CLEAR"
        tags = format_tags(event.tags)

        observed = ""
        if event.value is not None:
            observed = (f'<p style="color: #888;">Observed {event.value:.2f}, '
                        f'threshold {event.threshold}</p>')
        body = _HTML_TEMPLATE.format(
            color=RESOLVED_COLOR if resolved else SEVERITY_COLORS.get(severity, "#FFC107"),
            status=status,
            severity=severity,
            rule=html.escape(event.rule_name),
            message=html.escape(event.message),
            observed=observed,
            tags=html.escape(tags),
            when=format_timestamp(event.triggered_at),
        )

        label = "[RESOLVED]" if resolved else f"[{severity}]"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{label} dbwatch: {event.rule_name} ({tags})"
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = self.to_address
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(f"{status} {severity}: {event.rule_name}\n{event.message}", "plain", "utf-8"))
        msg.attach(MIMEText(body, "html", "utf-8"))
        return msg

    @contextmanager
    def _session(self, timeout):
        """Logged-in SMTP connection, upgraded to TLS when configured."""
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as server:
            server.ehlo()
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            server.login(self.username, self.password)
            yield server

    def send_alert(self, event) -> bool:
        if not self.is_configured():
            logger.warning("Email not configured, alert not sent")
            return False
        msg = self.build_alert_message(event)
        try:
            with self._session(timeout=30) as server:
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP login rejected for {self.username}: {e}")
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error(f"SMTP server refused recipient {self.to_address}")
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Could not send alert email via {self.smtp_host}: {e}")
            return False
        logger.info(f"Alert email sent to {self.to_address}: {msg['Subject']}")
        return True

    def test_connection(self) -> dict:
        """Log in to the SMTP server without sending anything."""
        try:
            with self._session(timeout=10) as server:
                response = server.noop()
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except (smtplib.SMTPException, OSError) as e:
            return {"status": "error", "message": f"Connection failed: {e}"}
        return {"status": "ok", "message": f"SMTP login succeeded: {response}"}
