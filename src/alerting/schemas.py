"""Schema definitions for the alerting engine.

Each dataclass maps to a database table (``alerts``, ``alert_destinations``,
``alert_templates``, ``channel_configs``, ``push_subscriptions``,
``notifications``) or to an ephemeral per-trigger value (``AlertPayload``,
``FormatContext``).
"""

import enum
import json
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Union


class Channel(str, enum.Enum):
    """Delivery channel kinds."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"

    @classmethod
    def parse(cls, value: "Channel | str") -> "Channel | None":
        """Return the Channel for ``value`` (case-insensitive), or None if unknown."""
        if isinstance(value, Channel):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


VALID_CHANNELS: frozenset[str] = frozenset(c.value for c in Channel)

# Open map of business values supplied at trigger time.
AlertContext = dict[str, Any]


@dataclass(frozen=True)
class ThresholdRule:
    """Fires when ``context[field] < value``."""

    field: str
    value: float | None = None
    operator: str = "<"


@dataclass(frozen=True)
class CustomRule:
    """Fires when the registered predicate ``predicate_id`` returns True."""

    predicate_id: str


RuleSpec = Union[ThresholdRule, CustomRule]


def parse_rule(data: dict[str, Any] | str | None) -> RuleSpec | None:
    """Parse the stored ``rule`` JSON column into a RuleSpec.

    Accepts both the French keys written by the admin surface
    (``champ``, ``operateur``, ``seuil``) and their English equivalents.
    Unknown rule types yield None.
    """
    if data is None:
        return None
    if isinstance(data, str):
        data = json.loads(data)
    if not isinstance(data, dict):
        return None

    rule_type = str(data.get("type", "")).lower()

    if rule_type in ("seuil", "threshold"):
        rule_field = data.get("champ", data.get("field"))
        if not rule_field:
            return None
        value = data.get("seuil", data.get("value"))
        return ThresholdRule(
            field=str(rule_field),
            value=float(value) if value is not None else None,
            operator=str(data.get("operateur", data.get("operator", "<"))),
        )

    if rule_type == "custom":
        predicate_id = data.get("predicate_id", data.get("predicate"))
        if not predicate_id:
            return None
        return CustomRule(predicate_id=str(predicate_id))

    return None


def rule_to_dict(rule: RuleSpec | None) -> dict[str, Any] | None:
    """Serialize a RuleSpec back to its JSON column form."""
    if isinstance(rule, ThresholdRule):
        return {
            "type": "threshold",
            "field": rule.field,
            "operator": rule.operator,
            "value": rule.value,
        }
    if isinstance(rule, CustomRule):
        return {"type": "custom", "predicate_id": rule.predicate_id}
    return None


@dataclass
class Destination:
    """One (channel, address) delivery target.

    ``channel`` is kept as the raw stored string so that resolution can
    drop unrecognised values instead of failing at load time.
    """

    channel: Channel | str
    address: str
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        channel = self.channel.value if isinstance(self.channel, Channel) else self.channel
        return {"channel": channel, "address": self.address, "active": self.active}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Destination":
        return cls(
            channel=data.get("channel", data.get("canal", "")),
            address=data.get("address", data.get("valeur", "")),
            active=data.get("active", True),
        )


@dataclass
class Alert:
    """A configured alert definition from the alerts table.

    Attributes:
        alert_id: Primary key.
        code: Unique business code (e.g. ``TRESORERIE_SEUIL``).
        label: Human-readable label, used as the default subject.
        active: Inactive alerts never fire.
        rule: Optional activation rule.
        thresholds: Optional ``{context_key: threshold}`` map.
        destinations: Stored recipients (loaded on demand).
    """

    code: str
    label: str
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    active: bool = True
    rule: RuleSpec | None = None
    thresholds: dict[str, float] | None = None
    destinations: list[Destination] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "alert_id": self.alert_id,
            "code": self.code,
            "label": self.label,
            "active": self.active,
            "rule": rule_to_dict(self.rule),
            "thresholds": self.thresholds,
            "destinations": [d.to_dict() for d in self.destinations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        thresholds = data.get("thresholds")
        if isinstance(thresholds, str):
            thresholds = json.loads(thresholds)
        rule = data.get("rule")
        if not isinstance(rule, (ThresholdRule, CustomRule)):
            rule = parse_rule(rule)
        return cls(
            alert_id=data.get("alert_id", str(uuid.uuid4())),
            code=data["code"],
            label=data["label"],
            active=data.get("active", True),
            rule=rule,
            thresholds=thresholds,
            destinations=[
                d if isinstance(d, Destination) else Destination.from_dict(d)
                for d in data.get("destinations", [])
            ],
        )


@dataclass
class FormatContext:
    """Typed subset of an AlertContext used to build message bodies."""

    alert_code: str
    label: str
    message: str | None = None
    contract_code: str | None = None
    contract_label: str | None = None
    amount: float | None = None
    threshold: float | None = None
    balance: float | None = None
    currency_code: str = "XOF"
    deadline: str | datetime | None = None


@dataclass
class AlertPayload:
    """Per-trigger delivery instructions, built by the orchestrator or a caller."""

    alert_code: str
    body: str = ""
    subject: str | None = None
    variables: dict[str, str] | None = None
    destinations: list[Destination] | None = None
    contract_id: str | None = None
    format_context: FormatContext | None = None

    def merged(self, overrides: dict[str, Any] | None) -> "AlertPayload":
        """Return a copy with the given field overrides applied.

        Unknown keys raise TypeError, like any dataclass constructor.
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown AlertPayload fields: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass
class Template:
    """A stored message template with ``{{var}}`` placeholders."""

    code: str
    body: str
    subject: str | None = None


@dataclass
class ChannelConfig:
    """Provider configuration row, preferred over environment settings."""

    channel: Channel
    enabled: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelConfig":
        credentials = data.get("credentials") or {}
        if isinstance(credentials, str):
            credentials = json.loads(credentials)
        return cls(
            channel=Channel(str(data["channel"]).lower()),
            enabled=data.get("enabled", True),
            credentials=credentials,
        )


@dataclass(frozen=True)
class PushSubscription:
    """A browser Web Push subscription registered by a user."""

    endpoint: str
    p256dh: str
    auth: str

    def to_webpush(self) -> dict[str, Any]:
        """Shape expected by ``pywebpush.webpush(subscription_info=...)``."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }


@dataclass
class DeliveryRecord:
    """Append-only audit row for a single delivery attempt.

    Attributes:
        alert_id: Alert that was triggered.
        channel: Channel used for the attempt.
        address: Destination address as resolved.
        subject: Rendered subject (or the raw payload subject on failure).
        body: Body produced by the last completed pipeline stage.
        delivered: Whether the provider accepted the send.
        delivered_at: Set only when delivered.
        error: Failure message when not delivered.
        contract_id: Business contract the alert relates to, if any.
    """

    alert_id: str
    channel: str
    address: str
    subject: str
    body: str
    delivered: bool
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    delivered_at: datetime | None = None
    error: str | None = None
    contract_id: str | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "record_id": self.record_id,
            "alert_id": self.alert_id,
            "channel": self.channel,
            "address": self.address,
            "subject": self.subject,
            "body": self.body,
            "delivered": self.delivered,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "error": self.error,
            "contract_id": self.contract_id,
            "created_at": self.created_at.isoformat(),
        }
