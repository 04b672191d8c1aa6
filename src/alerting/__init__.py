"""Alerting engine: rule evaluation and multi-channel notification dispatch.

Components:
- Alert / Destination / AlertPayload / DeliveryRecord: Dataclasses mapping to tables and trigger values
- AlertingConfig / ChannelEnvSettings: Pydantic settings for engine knobs and provider credentials
- evaluate_rule / PredicateRegistry: Stateless rule evaluation
- render / TemplateRenderer: ``{{var}}`` template rendering
- build_body_plain / build_body_html / format_amount: Message body formatting
- resolve_destinations: Explicit override or stored recipients
- NotificationChannel / EmailChannel / SmsChannel / PushChannel / WebhookChannel: Providers
- ChannelRegistry / NotificationDispatcher: Provider lookup and routing
- AuditLogger: One delivery record per destination attempt
- AlertRepository / NotificationRepository: asyncpg persistence
- AlertEngine: Orchestrator (trigger_by_code / trigger_alert)
"""

from src.alerting.audit import AuditLogger
from src.alerting.channels import (
    EmailChannel,
    NotificationChannel,
    PushChannel,
    SmsChannel,
    WebhookChannel,
)
from src.alerting.config import AlertingConfig, ChannelEnvSettings
from src.alerting.destinations import resolve_destinations
from src.alerting.dispatcher import ChannelRegistry, NotificationDispatcher
from src.alerting.errors import (
    AlertingError,
    ConfigurationError,
    DeliveryError,
    NotFoundError,
    ValidationError,
)
from src.alerting.events import AlertEvent, dispatch_alert_event
from src.alerting.formatting import build_body_html, build_body_plain, format_amount
from src.alerting.repository import AlertRepository, NotificationRepository
from src.alerting.rules import PredicateRegistry, evaluate_rule
from src.alerting.schemas import (
    Alert,
    AlertPayload,
    Channel,
    CustomRule,
    DeliveryRecord,
    Destination,
    FormatContext,
    ThresholdRule,
)
from src.alerting.service import AlertEngine
from src.alerting.templates import TemplateRenderer, render

__all__ = [
    "Alert",
    "AlertEngine",
    "AlertEvent",
    "AlertPayload",
    "AlertRepository",
    "AlertingConfig",
    "AlertingError",
    "AuditLogger",
    "Channel",
    "ChannelEnvSettings",
    "ChannelRegistry",
    "ConfigurationError",
    "CustomRule",
    "DeliveryError",
    "DeliveryRecord",
    "Destination",
    "EmailChannel",
    "FormatContext",
    "NotFoundError",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationRepository",
    "PredicateRegistry",
    "PushChannel",
    "SmsChannel",
    "TemplateRenderer",
    "ThresholdRule",
    "ValidationError",
    "WebhookChannel",
    "build_body_html",
    "build_body_plain",
    "dispatch_alert_event",
    "evaluate_rule",
    "format_amount",
    "render",
    "resolve_destinations",
]
