"""Alert system module."""
from alerts.engine import ThresholdEvaluator
from alerts.rules_manager import RulesManager
from alerts.dispatcher import AlertDispatcher
from alerts.sinks import ConsoleSink, FileSink, EmailSink, WebhookSink, build_sinks
