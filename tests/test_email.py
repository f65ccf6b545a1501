"""Tests for the SMTP email sender."""
import smtplib
from unittest.mock import patch, MagicMock

from models.alerts import AlertEvent, AlertState
from models.enums import AlertStatus, Severity
from notifications.email_sender import EmailSender

CONFIGURED = {"email": {
    "smtp_host": "smtp.test.com",
    "smtp_port": 587,
    "from_address": "dbwatch@test.com",
    "to_address": "dba@test.com",
    "smtp_username": "user",
    "smtp_password": "pass",
}}


def _event(status=AlertStatus.FIRING):
    state = AlertState(rule_id="log_used_high", tags={"database_name": "Sales"}, status=status)
    return AlertEvent(state=state, severity=Severity.HIGH, rule_name="Log <90%>", value=93.5,
                      threshold=90.0, message="log 93.5% used")


class TestEmailSender:
    def test_not_configured_missing_fields(self):
        sender = EmailSender({"email": {}})
        assert sender.is_configured() is False

    def test_configured_with_all_fields(self):
        assert EmailSender(CONFIGURED).is_configured() is True

    def test_env_vars_override_config(self):
        with patch.dict("os.environ", {
            "DBWATCH_SMTP_USER": "env_user",
            "DBWATCH_SMTP_PASS": "env_pass",
        }):
            sender = EmailSender(CONFIGURED)
            assert sender.username == "env_user"
            assert sender.password == "env_pass"

    def test_config_used_without_env_vars(self):
        with patch.dict("os.environ", {}, clear=True):
            sender = EmailSender(CONFIGURED)
            assert sender.username == "user"
            assert sender.password == "pass"

    def test_alert_message_subject_and_escaping(self):
        msg = EmailSender(CONFIGURED).build_alert_message(_event())
        assert msg["Subject"].startswith("[HIGH] dbwatch: Log <90%>")
        assert "database_name=Sales" in msg["Subject"]
        html_part = msg.get_payload()[1].get_payload(decode=True).decode()
        assert "Log &lt;90%&gt;" in html_part

    def test_resolved_subject(self):
        msg = EmailSender(CONFIGURED).build_alert_message(_event(AlertStatus.CLEAR))
        assert msg["Subject"].startswith("[RESOLVED]")

    def test_send_alert_unconfigured_returns_false(self):
        assert EmailSender({"email": {}}).send_alert(_event()) is False

    @patch("notifications.email_sender.smtplib.SMTP")
    def test_send_alert_uses_tls_and_login(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server
        with patch.dict("os.environ", {}, clear=True):
            assert EmailSender(CONFIGURED).send_alert(_event()) is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pass")
        server.send_message.assert_called_once()

    @patch("notifications.email_sender.smtplib.SMTP")
    def test_auth_failure_returns_false(self, mock_smtp):
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        mock_smtp.return_value.__enter__.return_value = server
        assert EmailSender(CONFIGURED).send_alert(_event()) is False

    @patch("notifications.email_sender.smtplib.SMTP", side_effect=OSError("unreachable"))
    def test_connection_failure_returns_false(self, mock_smtp):
        assert EmailSender(CONFIGURED).send_alert(_event()) is False
        assert EmailSender(CONFIGURED).test_connection()["status"] == "error"
