"""Notification channel implementations for alert delivery.

Provides an ABC for notification channels plus concrete providers for
email (SMTP), SMS (Twilio REST API), Web Push and webhooks. Every provider
exposes the same ``send(address, subject, body)`` coroutine and raises
instead of returning a status, so the orchestrator can record the error
message of each failed destination.

Each provider builds its transport lazily on first use, once, behind an
``asyncio.Lock``. Database ``channel_configs`` rows take priority over
the environment fallback in ``ChannelEnvSettings``.
"""

import asyncio
import json
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Generic, Protocol, TypeVar

import httpx
from pywebpush import WebPushException, webpush

from src.alerting.config import AlertingConfig, ChannelEnvSettings
from src.alerting.errors import ConfigurationError, DeliveryError, ValidationError
from src.alerting.schemas import Channel, ChannelConfig, PushSubscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChannelConfigSource(Protocol):
    """Loads provider configuration rows (see ``AlertRepository``)."""

    async def get_channel_config(self, channel: Channel) -> ChannelConfig | None: ...


class PushSubscriptionSource(Protocol):
    """Loads the push subscriptions registered by a user id or email."""

    async def get_push_subscriptions(self, user_ref: str) -> list[PushSubscription]: ...


def _credential(credentials: dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty credential among camelCase/snake_case keys."""
    for key in keys:
        value = credentials.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_bool(value: Any) -> bool:
    """Read a stored flag that may be a JSON boolean or a string like "false"."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class NotificationChannel(ABC):
    """Abstract base for notification delivery channels."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this channel (e.g. 'email', 'webhook')."""

    @abstractmethod
    async def send(self, address: str, subject: str | None, body: str) -> None:
        """Deliver a message to one address.

        Raises:
            ConfigurationError: Channel disabled or not configured.
            ValidationError: Malformed address or credentials.
            DeliveryError: Provider rejected the message.
        """


class LazyChannel(NotificationChannel, Generic[T]):
    """Base for providers whose transport is built once on first use."""

    kind: Channel

    def __init__(
        self,
        config: AlertingConfig | None = None,
        env: ChannelEnvSettings | None = None,
        config_source: ChannelConfigSource | None = None,
    ) -> None:
        self._config = config or AlertingConfig()
        self._env = env or ChannelEnvSettings()
        self._config_source = config_source
        self._transport: T | None = None
        self._init_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def initialized(self) -> bool:
        return self._transport is not None

    async def _load_channel_config(self) -> ChannelConfig | None:
        if self._config_source is None:
            return None
        return await self._config_source.get_channel_config(self.kind)

    @abstractmethod
    async def _build_transport(self, stored: ChannelConfig | None) -> T:
        """Build the transport from the stored config or the environment."""

    async def transport(self) -> T:
        """Return the transport, building it on first call.

        Concurrent first calls share a single build.
        """
        if self._transport is not None:
            return self._transport
        async with self._init_lock:
            if self._transport is None:
                stored = await self._load_channel_config()
                self._transport = await self._build_transport(stored)
                logger.info("Channel %s initialized", self.name)
        return self._transport

    def reset(self) -> None:
        """Drop the cached transport so the next send reloads configuration."""
        self._transport = None


# ── Email ───────────────────────────────────────────────


@dataclass(frozen=True)
class SmtpTransport:
    host: str
    port: int
    user: str
    password: str
    secure: bool
    sender: str


class EmailChannel(LazyChannel[SmtpTransport]):
    """Delivers HTML email over SMTP.

    ``smtplib`` is blocking, so each send runs in a worker thread.
    """

    kind = Channel.EMAIL

    async def _build_transport(self, stored: ChannelConfig | None) -> SmtpTransport:
        if stored is not None and stored.enabled:
            creds = stored.credentials
            host = _credential(creds, "host")
            user = _credential(creds, "user")
            if host and user:
                return SmtpTransport(
                    host=host,
                    port=int(_credential(creds, "port") or 587),
                    user=user,
                    password=_credential(creds, "password", "pass") or "",
                    secure=_as_bool(_credential(creds, "secure")),
                    sender=_credential(creds, "from", "sender") or self._env.email_from,
                )

        if self._env.email_configured:
            return SmtpTransport(
                host=self._env.email_host,
                port=self._env.email_port,
                user=self._env.email_user,
                password=self._env.email_password,
                secure=self._env.email_secure,
                sender=self._env.email_from,
            )

        raise ConfigurationError(
            "Email channel not configured (channel_configs row or EMAIL_HOST/EMAIL_USER)"
        )

    def _build_message(
        self, transport: SmtpTransport, to: str, subject: str | None, body: str,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject or self._config.default_subject
        msg["From"] = transport.sender
        msg["To"] = to
        msg.set_content(body, subtype="html")
        return msg

    def _send_sync(self, transport: SmtpTransport, msg: EmailMessage) -> None:
        timeout = self._config.smtp_timeout_seconds
        if transport.secure:
            server = smtplib.SMTP_SSL(
                transport.host, transport.port,
                timeout=timeout, context=ssl.create_default_context(),
            )
        else:
            server = smtplib.SMTP(transport.host, transport.port, timeout=timeout)
        with server:
            if not transport.secure:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=ssl.create_default_context())
                    server.ehlo()
            if transport.user and transport.password:
                server.login(transport.user, transport.password)
            server.send_message(msg)

    async def send(self, address: str, subject: str | None, body: str) -> None:
        transport = await self.transport()
        msg = self._build_message(transport, address, subject, body)
        try:
            await asyncio.to_thread(self._send_sync, transport, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {address} failed: {e}") from e


# ── SMS ─────────────────────────────────────────────────


@dataclass(frozen=True)
class TwilioTransport:
    account_sid: str
    auth_token: str
    from_number: str | None


class SmsChannel(LazyChannel[TwilioTransport]):
    """Delivers SMS through the Twilio Messages REST API."""

    kind = Channel.SMS

    async def _build_transport(self, stored: ChannelConfig | None) -> TwilioTransport:
        if stored is not None and not stored.enabled:
            raise ConfigurationError("SMS channel is disabled")

        if stored is not None:
            creds = stored.credentials
            sid = _credential(creds, "accountSid", "account_sid")
            token = _credential(creds, "authToken", "auth_token")
            if sid and token:
                return TwilioTransport(
                    account_sid=sid,
                    auth_token=token,
                    from_number=_credential(creds, "from", "from_number") or self._env.twilio_from,
                )
            if sid or token:
                raise ValidationError(
                    "Incomplete SMS credentials (Twilio accountSid and authToken required)"
                )

        if self._env.sms_configured:
            return TwilioTransport(
                account_sid=self._env.twilio_account_sid,
                auth_token=self._env.twilio_auth_token,
                from_number=self._env.twilio_from,
            )

        raise ConfigurationError(
            "SMS channel not configured (channel_configs row or TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN)"
        )

    def normalize_phone(self, phone: str) -> str:
        """Return ``phone`` in E.164 form, prefixing local numbers."""
        compact = "".join(phone.split())
        if compact.startswith("+"):
            return compact
        return f"{self._config.sms_country_prefix}{compact.removeprefix('0')}"

    async def send(self, address: str, subject: str | None, body: str) -> None:
        transport = await self.transport()
        if not transport.from_number:
            raise ConfigurationError("SMS sender number not configured (TWILIO_FROM or channel config)")

        url = f"{self._config.twilio_api_base}/Accounts/{transport.account_sid}/Messages.json"
        data = {
            "From": transport.from_number,
            "To": self.normalize_phone(address),
            "Body": body,
        }
        try:
            async with httpx.AsyncClient(timeout=self._config.sms_timeout_seconds) as client:
                resp = await client.post(
                    url,
                    data=data,
                    auth=(transport.account_sid, transport.auth_token),
                )
        except httpx.HTTPError as e:
            raise DeliveryError(f"SMS request failed: {e}") from e

        if not resp.is_success:
            detail = resp.text
            try:
                detail = resp.json().get("message", detail)
            except ValueError:
                pass
            raise DeliveryError(
                f"SMS API error {resp.status_code}: {detail}",
                status_code=resp.status_code,
                response_body=resp.text,
            )


# ── Push ────────────────────────────────────────────────


@dataclass(frozen=True)
class VapidTransport:
    public_key: str
    private_key: str
    claims: dict[str, str] = field(default_factory=dict)


def parse_subscription(raw: str) -> PushSubscription:
    """Parse a stringified ``PushSubscription`` JSON object.

    Raises:
        ValidationError: Not JSON, or missing endpoint/keys.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError("Invalid push destination: subscription JSON expected") from e

    keys = data.get("keys") if isinstance(data, dict) else None
    if (
        not isinstance(data, dict)
        or not data.get("endpoint")
        or not isinstance(keys, dict)
        or not keys.get("p256dh")
        or not keys.get("auth")
    ):
        raise ValidationError("Invalid push subscription: endpoint and keys required")

    return PushSubscription(endpoint=data["endpoint"], p256dh=keys["p256dh"], auth=keys["auth"])


def is_subscription_address(address: str) -> bool:
    """True when ``address`` looks like a raw subscription payload."""
    return address.lstrip().startswith("{")


class PushChannel(LazyChannel[VapidTransport]):
    """Delivers Web Push notifications signed with VAPID keys.

    ``send`` targets a single subscription JSON; ``send_to_user`` fans out
    to every subscription registered by a user, isolating failures.
    """

    kind = Channel.PUSH

    def __init__(
        self,
        config: AlertingConfig | None = None,
        env: ChannelEnvSettings | None = None,
        config_source: ChannelConfigSource | None = None,
        subscription_source: PushSubscriptionSource | None = None,
    ) -> None:
        super().__init__(config=config, env=env, config_source=config_source)
        self._subscriptions = subscription_source

    async def _build_transport(self, stored: ChannelConfig | None) -> VapidTransport:
        if stored is not None and not stored.enabled:
            raise ConfigurationError("Push channel is disabled")

        creds = stored.credentials if stored is not None else {}
        public_key = _credential(creds, "vapidPublicKey", "vapid_public_key") or self._env.vapid_public_key
        private_key = _credential(creds, "vapidPrivateKey", "vapid_private_key") or self._env.vapid_private_key
        if not public_key or not private_key:
            raise ConfigurationError("VAPID keys missing for push notifications")

        return VapidTransport(
            public_key=public_key,
            private_key=private_key,
            claims={"sub": self._config.push_contact},
        )

    def _payload(self, subject: str | None, body: str) -> str:
        return json.dumps({"title": subject or self._config.default_subject, "body": body})

    async def _push(
        self, transport: VapidTransport, subscription: PushSubscription, data: str,
    ) -> None:
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription.to_webpush(),
                data=data,
                vapid_private_key=transport.private_key,
                vapid_claims=dict(transport.claims),
                ttl=self._config.push_ttl_seconds,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            raise DeliveryError(f"Web Push rejected: {e}", status_code=status) from e

    async def send(self, address: str, subject: str | None, body: str) -> None:
        transport = await self.transport()
        subscription = parse_subscription(address)
        await self._push(transport, subscription, self._payload(subject, body))

    async def send_to_user(self, user_ref: str, subject: str | None, body: str) -> int:
        """Send to every subscription of a user (id or email).

        A failing subscription (expired, revoked) does not stop the others.
        A user without subscriptions is a no-op.

        Returns:
            Number of subscriptions that accepted the notification.

        Raises:
            DeliveryError: Every subscription failed.
        """
        if self._subscriptions is None:
            raise ConfigurationError("Push channel has no subscription source")

        subscriptions = await self._subscriptions.get_push_subscriptions(user_ref)
        if not subscriptions:
            logger.debug("No push subscriptions for %s", user_ref)
            return 0

        transport = await self.transport()
        data = self._payload(subject, body)

        delivered = 0
        errors: list[str] = []
        for subscription in subscriptions:
            try:
                await self._push(transport, subscription, data)
                delivered += 1
            except Exception as e:
                errors.append(str(e))
                logger.warning(
                    "Push to %s subscription %s failed: %s",
                    user_ref, subscription.endpoint, e,
                )

        if delivered == 0:
            raise DeliveryError(
                f"All {len(subscriptions)} push subscriptions failed for {user_ref}: {errors[0]}"
            )
        return delivered


# ── Webhook ─────────────────────────────────────────────


@dataclass(frozen=True)
class WebhookTransport:
    headers: dict[str, str]


class WebhookChannel(LazyChannel[WebhookTransport]):
    """Delivers alerts as JSON POST to an arbitrary HTTP endpoint.

    Creates a new ``httpx.AsyncClient`` per call (short-lived, no pooling).
    The address is the target URL.
    """

    kind = Channel.WEBHOOK

    async def _build_transport(self, stored: ChannelConfig | None) -> WebhookTransport:
        if stored is not None and not stored.enabled:
            raise ConfigurationError("Webhook channel is disabled")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.webhook_user_agent,
        }
        if stored is not None:
            extra = stored.credentials.get("headers") or {}
            headers.update({str(k): str(v) for k, v in extra.items()})
        return WebhookTransport(headers=headers)

    def _build_payload(self, subject: str | None, body: str) -> dict[str, str]:
        return {
            "subject": subject or "",
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def send(self, address: str, subject: str | None, body: str) -> None:
        transport = await self.transport()
        payload = self._build_payload(subject, body)
        try:
            async with httpx.AsyncClient(timeout=self._config.webhook_timeout_seconds) as client:
                resp = await client.post(address, json=payload, headers=transport.headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Webhook {address} timed out") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook {address} failed: {e}") from e

        if not resp.is_success:
            raise DeliveryError(
                f"Webhook failed: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                response_body=resp.text,
            )
