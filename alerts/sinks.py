"""Alert notification sinks."""
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import requests
from rich.console import Console
from rich.markup import escape

from models.enums import Severity
from notifications.email_sender import EmailSender
from utils.errors import ConfigError, SinkDeliveryError
from utils.formatters import format_tags

logger = logging.getLogger("dbwatch.alerts.sinks")

SEVERITY_STYLES = {
    "CRITICAL": "bold white on red",
    "HIGH": "bold red",
    "MEDIUM": "bold yellow",
    "LOW": "bold blue",
}


@runtime_checkable
class AlertSink(Protocol):
    name: str
    min_severity: Severity

    def notify(self, event) -> None: ...


def accepts(sink, event):
    """True when the event meets the sink's minimum severity."""
    minimum = getattr(sink, "min_severity", None)
    if minimum is None:
        return True
    return event.severity.rank >= Severity.parse(minimum).rank


class ConsoleSink:
    """Print alerts to terminal with rich formatting."""

    def __init__(self, min_severity=Severity.LOW, console=None):
        self.name = "console"
        self.min_severity = Severity.parse(min_severity)
        self.console = console or Console(stderr=True)

    def notify(self, event):
        sev = event.severity.value
        style = "bold green" if event.status.value == "CLEAR" else SEVERITY_STYLES.get(sev, "")
        label = escape(f"[{sev}] [{event.status.value}]")
        self.console.print(f"[{style}]{label}[/] {escape(event.message)}", highlight=False)


class FileSink:
    """Append alerts to a JSON lines log file."""

    def __init__(self, path="data/alerts.jsonl", min_severity=Severity.LOW):
        self.name = f"file:{path}"
        self.path = path
        self.min_severity = Severity.parse(min_severity)

    def notify(self, event):
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            raise SinkDeliveryError(f"Failed to write alert to {self.path}: {e}", sink=self.name) from e


class EmailSink:
    """Email alert sink, HIGH and above by default to avoid inbox flooding."""

    def __init__(self, config, min_severity=Severity.HIGH, sender=None):
        self.name = "email"
        self.sender = sender or EmailSender(config)
        self.min_severity = Severity.parse(min_severity)

    def notify(self, event):
        if not self.sender.is_configured():
            raise SinkDeliveryError("Email sink is not configured", sink=self.name)
        if not self.sender.send_alert(event):
            raise SinkDeliveryError(f"Email delivery failed for {event.rule_id}", sink=self.name)


class WebhookSink:
    """POST alerts as JSON to a chat or incident webhook."""

    def __init__(self, url, min_severity=Severity.MEDIUM, timeout=10, headers=None):
        self.name = f"webhook:{url}"
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self.min_severity = Severity.parse(min_severity)

    def payload(self, event):
        data = event.to_dict()
        data["text"] = (
            f"[{event.severity.value}] [{event.status.value}] {event.rule_name} "
            f"({format_tags(event.tags)}): {event.message}"
        )
        return data

    def notify(self, event):
        try:
            resp = requests.post(self.url, json=self.payload(event),
                                 headers=self.headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SinkDeliveryError(f"Webhook delivery failed: {e}", sink=self.name) from e


def build_sinks(config):
    """Create sinks from the ``sinks`` config list."""
    sinks = []
    for entry in config.get("sinks") or []:
        kind = str(entry.get("type", "")).lower()
        min_sev = entry.get("min_severity")
        kwargs = {"min_severity": min_sev} if min_sev else {}
        try:
            if kind == "console":
                sinks.append(ConsoleSink(**kwargs))
            elif kind == "file":
                sinks.append(FileSink(entry.get("path", "data/alerts.jsonl"), **kwargs))
            elif kind == "email":
                sinks.append(EmailSink(config, **kwargs))
            elif kind == "webhook":
                if not entry.get("url"):
                    raise ConfigError("webhook sink requires a url")
                sinks.append(WebhookSink(entry["url"], timeout=entry.get("timeout", 10),
                                         headers=entry.get("headers"), **kwargs))
            else:
                raise ConfigError(f"Unknown sink type: {kind!r}")
        except ValueError as e:
            raise ConfigError(f"Invalid sink {kind!r}: {e}") from e
    logger.debug(f"Configured sinks: {[s.name for s in sinks]}")
    return sinks
