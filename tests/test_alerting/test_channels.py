"""Tests for notification channel providers and their lazy transports."""

import asyncio
import json
import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import respx
from pywebpush import WebPushException

from src.alerting.channels import (
    EmailChannel,
    PushChannel,
    SmsChannel,
    WebhookChannel,
    is_subscription_address,
    parse_subscription,
)
from src.alerting.config import AlertingConfig, ChannelEnvSettings
from src.alerting.errors import ConfigurationError, DeliveryError, ValidationError
from src.alerting.schemas import Channel, ChannelConfig, PushSubscription

TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/ACdb/Messages.json"

SUBSCRIPTION = {
    "endpoint": "https://push.example.com/sub/1",
    "keys": {"p256dh": "pkey", "auth": "akey"},
}


# ── Fixtures ────────────────────────────────────────────


def _config_source(stored: ChannelConfig | None) -> AsyncMock:
    source = AsyncMock()
    source.get_channel_config.return_value = stored
    return source


def _mock_response(status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code=status_code, request=httpx.Request("POST", "http://test"))


@pytest.fixture
def sms_row() -> ChannelConfig:
    return ChannelConfig(
        channel=Channel.SMS,
        credentials={"accountSid": "ACdb", "authToken": "tok", "from": "+22500000000"},
    )


@pytest.fixture
def vapid_env() -> ChannelEnvSettings:
    return ChannelEnvSettings(
        _env_file=None,
        vapid_public_key="pub",
        vapid_private_key="priv",
    )


@pytest.fixture
def smtp_env() -> ChannelEnvSettings:
    return ChannelEnvSettings(
        _env_file=None,
        email_host="smtp.example.com",
        email_port=587,
        email_user="alerts@example.com",
        email_password="secret",
        email_from="alerts@example.com",
    )


# ── Lazy initialization ─────────────────────────────────


class TestLazyInitialization:
    @pytest.mark.asyncio
    async def test_not_initialized_until_used(self, empty_env):
        channel = WebhookChannel(env=empty_env, config_source=_config_source(None))
        assert channel.initialized is False

        await channel.transport()

        assert channel.initialized is True

    @pytest.mark.asyncio
    async def test_concurrent_first_use_builds_once(self, empty_env):
        source = _config_source(None)
        channel = WebhookChannel(env=empty_env, config_source=source)

        transports = await asyncio.gather(*(channel.transport() for _ in range(10)))

        assert source.get_channel_config.await_count == 1
        assert all(t is transports[0] for t in transports)

    @pytest.mark.asyncio
    async def test_reset_reloads_configuration(self, empty_env):
        source = _config_source(None)
        channel = WebhookChannel(env=empty_env, config_source=source)

        await channel.transport()
        channel.reset()
        await channel.transport()

        assert source.get_channel_config.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_build_is_retried(self, empty_env, sms_row):
        source = _config_source(None)
        channel = SmsChannel(env=empty_env, config_source=source)

        with pytest.raises(ConfigurationError):
            await channel.transport()

        source.get_channel_config.return_value = sms_row
        transport = await channel.transport()
        assert transport.account_sid == "ACdb"

    def test_name_matches_kind(self):
        assert EmailChannel().name == "email"
        assert WebhookChannel().name == "webhook"


# ── Webhook ─────────────────────────────────────────────


class TestWebhookChannel:
    @pytest.mark.asyncio
    async def test_successful_send(self, empty_env):
        channel = WebhookChannel(env=empty_env)

        with patch("src.alerting.channels.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.post.return_value = _mock_response(200)
            mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)

            await channel.send("https://hooks.example.com/a", "Sujet", "Corps")

        call = mock_client.post.call_args
        assert call.args[0] == "https://hooks.example.com/a"
        payload = call.kwargs["json"]
        assert payload["subject"] == "Sujet"
        assert payload["body"] == "Corps"
        assert "timestamp" in payload
        headers = call.kwargs["headers"]
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == AlertingConfig().webhook_user_agent

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, empty_env):
        channel = WebhookChannel(env=empty_env)

        with patch("src.alerting.channels.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.post.return_value = _mock_response(500)
            mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(DeliveryError, match="Webhook failed: 500 Internal Server Error") as exc:
                await channel.send("https://hooks.example.com/a", "S", "B")

        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_timeout_raises_delivery_error(self, empty_env):
        channel = WebhookChannel(env=empty_env)

        with patch("src.alerting.channels.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.post.side_effect = httpx.ReadTimeout("slow")
            mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(DeliveryError, match="timed out"):
                await channel.send("https://hooks.example.com/a", "S", "B")

    @pytest.mark.asyncio
    async def test_extra_headers_from_channel_config(self, empty_env):
        stored = ChannelConfig(
            channel=Channel.WEBHOOK,
            credentials={"headers": {"X-Api-Key": "k1"}},
        )
        channel = WebhookChannel(env=empty_env, config_source=_config_source(stored))

        transport = await channel.transport()

        assert transport.headers["X-Api-Key"] == "k1"

    @pytest.mark.asyncio
    async def test_disabled_row_raises(self, empty_env):
        stored = ChannelConfig(channel=Channel.WEBHOOK, enabled=False)
        channel = WebhookChannel(env=empty_env, config_source=_config_source(stored))

        with pytest.raises(ConfigurationError):
            await channel.send("https://hooks.example.com/a", "S", "B")


# ── SMS ─────────────────────────────────────────────────


class TestSmsChannel:
    @pytest.mark.asyncio
    async def test_send_posts_to_twilio(self, empty_env, sms_row):
        channel = SmsChannel(env=empty_env, config_source=_config_source(sms_row))

        with respx.mock() as router:
            route = router.post(TWILIO_URL).mock(
                return_value=httpx.Response(201, json={"sid": "SM1"})
            )
            await channel.send("06 12 34 56 78", None, "Solde bas")

        assert route.called
        request = route.calls.last.request
        form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
        assert form["To"] == "%2B33612345678"
        assert form["From"] == "%2B22500000000"
        assert form["Body"] == "Solde+bas"
        assert request.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_api_error_uses_twilio_message(self, empty_env, sms_row):
        channel = SmsChannel(env=empty_env, config_source=_config_source(sms_row))

        with respx.mock() as router:
            router.post(TWILIO_URL).mock(
                return_value=httpx.Response(400, json={"message": "Invalid 'To' Phone Number"})
            )
            with pytest.raises(DeliveryError, match="Invalid 'To' Phone Number") as exc:
                await channel.send("+33000", None, "x")

        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_env_fallback(self):
        env = ChannelEnvSettings(
            _env_file=None,
            twilio_account_sid="ACenv",
            twilio_auth_token="envtok",
            twilio_from="+33100000000",
        )
        channel = SmsChannel(env=env, config_source=_config_source(None))

        transport = await channel.transport()

        assert transport.account_sid == "ACenv"
        assert transport.from_number == "+33100000000"

    @pytest.mark.asyncio
    async def test_database_row_preferred_over_env(self, sms_row):
        env = ChannelEnvSettings(
            _env_file=None, twilio_account_sid="ACenv", twilio_auth_token="envtok",
        )
        channel = SmsChannel(env=env, config_source=_config_source(sms_row))

        transport = await channel.transport()

        assert transport.account_sid == "ACdb"

    @pytest.mark.asyncio
    async def test_disabled_row_raises(self, sms_row):
        sms_row.enabled = False
        env = ChannelEnvSettings(
            _env_file=None, twilio_account_sid="ACenv", twilio_auth_token="envtok",
        )
        channel = SmsChannel(env=env, config_source=_config_source(sms_row))

        with pytest.raises(ConfigurationError, match="disabled"):
            await channel.transport()

    @pytest.mark.asyncio
    async def test_partial_credentials_raise_validation_error(self, empty_env):
        stored = ChannelConfig(channel=Channel.SMS, credentials={"accountSid": "AC1"})
        channel = SmsChannel(env=empty_env, config_source=_config_source(stored))

        with pytest.raises(ValidationError):
            await channel.transport()

    @pytest.mark.asyncio
    async def test_unconfigured_raises(self, empty_env):
        channel = SmsChannel(env=empty_env, config_source=_config_source(None))

        with pytest.raises(ConfigurationError):
            await channel.send("+33600000000", None, "x")

    @pytest.mark.asyncio
    async def test_missing_sender_raises(self):
        env = ChannelEnvSettings(
            _env_file=None, twilio_account_sid="AC", twilio_auth_token="t", twilio_from=None,
        )
        channel = SmsChannel(env=env)

        with pytest.raises(ConfigurationError, match="sender"):
            await channel.send("+33600000000", None, "x")

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("06 12 34 56 78", "+33612345678"),
            ("612345678", "+33612345678"),
            ("+225 07 00 00 00", "+22507000000"),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert SmsChannel().normalize_phone(raw) == expected


# ── Push ────────────────────────────────────────────────


class TestPushSubscriptionParsing:
    def test_parse_valid(self):
        sub = parse_subscription(json.dumps(SUBSCRIPTION))
        assert sub == PushSubscription(
            endpoint="https://push.example.com/sub/1", p256dh="pkey", auth="akey",
        )

    def test_not_json(self):
        with pytest.raises(ValidationError):
            parse_subscription("user@example.com")

    def test_missing_keys(self):
        with pytest.raises(ValidationError):
            parse_subscription(json.dumps({"endpoint": "https://x"}))

    def test_is_subscription_address(self):
        assert is_subscription_address(' {"endpoint": "x"}') is True
        assert is_subscription_address("user-42") is False


class TestPushChannel:
    @pytest.mark.asyncio
    async def test_send_single_subscription(self, vapid_env):
        channel = PushChannel(env=vapid_env)

        with patch("src.alerting.channels.webpush") as mock_webpush:
            await channel.send(json.dumps(SUBSCRIPTION), "Titre", "Corps")

        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"] == SUBSCRIPTION
        assert json.loads(kwargs["data"]) == {"title": "Titre", "body": "Corps"}
        assert kwargs["vapid_private_key"] == "priv"
        assert kwargs["vapid_claims"]["sub"] == AlertingConfig().push_contact

    @pytest.mark.asyncio
    async def test_missing_vapid_keys(self, empty_env):
        channel = PushChannel(env=empty_env)

        with pytest.raises(ConfigurationError, match="VAPID"):
            await channel.send(json.dumps(SUBSCRIPTION), "T", "B")

    @pytest.mark.asyncio
    async def test_rejected_push_raises_delivery_error(self, vapid_env):
        channel = PushChannel(env=vapid_env)

        with patch("src.alerting.channels.webpush") as mock_webpush:
            mock_webpush.side_effect = WebPushException("410 Gone")
            with pytest.raises(DeliveryError, match="Web Push rejected"):
                await channel.send(json.dumps(SUBSCRIPTION), "T", "B")

    @pytest.mark.asyncio
    async def test_send_to_user_isolates_failures(self, vapid_env):
        subs = AsyncMock()
        subs.get_push_subscriptions.return_value = [
            PushSubscription(endpoint="https://push/1", p256dh="a", auth="b"),
            PushSubscription(endpoint="https://push/2", p256dh="a", auth="b"),
            PushSubscription(endpoint="https://push/3", p256dh="a", auth="b"),
        ]
        channel = PushChannel(env=vapid_env, subscription_source=subs)

        with patch("src.alerting.channels.webpush") as mock_webpush:
            mock_webpush.side_effect = [None, WebPushException("expired"), None]
            delivered = await channel.send_to_user("user-42", "T", "B")

        assert delivered == 2
        assert mock_webpush.call_count == 3

    @pytest.mark.asyncio
    async def test_send_to_user_all_failing_raises(self, vapid_env):
        subs = AsyncMock()
        subs.get_push_subscriptions.return_value = [
            PushSubscription(endpoint="https://push/1", p256dh="a", auth="b"),
        ]
        channel = PushChannel(env=vapid_env, subscription_source=subs)

        with patch("src.alerting.channels.webpush") as mock_webpush:
            mock_webpush.side_effect = WebPushException("expired")
            with pytest.raises(DeliveryError, match="All 1 push subscriptions failed"):
                await channel.send_to_user("user-42", "T", "B")

    @pytest.mark.asyncio
    async def test_send_to_user_without_subscriptions(self, vapid_env):
        subs = AsyncMock()
        subs.get_push_subscriptions.return_value = []
        channel = PushChannel(env=vapid_env, subscription_source=subs)

        with patch("src.alerting.channels.webpush") as mock_webpush:
            assert await channel.send_to_user("nobody@example.com", "T", "B") == 0

        mock_webpush.assert_not_called()


# ── Email ───────────────────────────────────────────────


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_send_with_starttls(self, smtp_env):
        channel = EmailChannel(env=smtp_env)

        with patch("src.alerting.channels.smtplib.SMTP") as mock_smtp:
            server = mock_smtp.return_value
            server.has_extn.return_value = True
            await channel.send("finance@example.com", "Alerte", "<p>Corps</p>")

        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("alerts@example.com", "secret")
        msg = server.send_message.call_args.args[0]
        assert msg["To"] == "finance@example.com"
        assert msg["Subject"] == "Alerte"
        assert msg.get_content_subtype() == "html"

    @pytest.mark.asyncio
    async def test_default_subject(self, smtp_env):
        channel = EmailChannel(env=smtp_env)

        with patch("src.alerting.channels.smtplib.SMTP") as mock_smtp:
            await channel.send("finance@example.com", None, "<p>x</p>")

        msg = mock_smtp.return_value.send_message.call_args.args[0]
        assert msg["Subject"] == AlertingConfig().default_subject

    @pytest.mark.asyncio
    async def test_smtp_error_raises_delivery_error(self, smtp_env):
        channel = EmailChannel(env=smtp_env)

        with patch("src.alerting.channels.smtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.send_message.side_effect = smtplib.SMTPException("relay denied")
            with pytest.raises(DeliveryError, match="relay denied"):
                await channel.send("finance@example.com", "S", "B")

    @pytest.mark.asyncio
    async def test_database_row_preferred(self, smtp_env):
        stored = ChannelConfig(
            channel=Channel.EMAIL,
            credentials={"host": "mail.db.local", "user": "db@example.com", "port": 465, "secure": True},
        )
        channel = EmailChannel(env=smtp_env, config_source=_config_source(stored))

        transport = await channel.transport()

        assert transport.host == "mail.db.local"
        assert transport.port == 465
        assert transport.secure is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stored_flag, expected",
        [("false", False), ("False", False), ("0", False), ("true", True), ("1", True), (False, False)],
    )
    async def test_stored_secure_flag_parsed(self, smtp_env, stored_flag, expected):
        stored = ChannelConfig(
            channel=Channel.EMAIL,
            credentials={"host": "mail.db.local", "user": "db@example.com", "secure": stored_flag},
        )
        channel = EmailChannel(env=smtp_env, config_source=_config_source(stored))

        transport = await channel.transport()

        assert transport.secure is expected

    @pytest.mark.asyncio
    async def test_disabled_row_falls_back_to_env(self, smtp_env):
        stored = ChannelConfig(channel=Channel.EMAIL, enabled=False, credentials={"host": "x", "user": "y"})
        channel = EmailChannel(env=smtp_env, config_source=_config_source(stored))

        transport = await channel.transport()

        assert transport.host == "smtp.example.com"

    @pytest.mark.asyncio
    async def test_unconfigured_raises(self, empty_env):
        channel = EmailChannel(env=empty_env, config_source=_config_source(None))

        with pytest.raises(ConfigurationError):
            await channel.send("finance@example.com", "S", "B")

    def test_secure_uses_smtp_ssl(self, smtp_env):
        channel = EmailChannel(env=smtp_env)
        transport = MagicMock(host="h", port=465, user="u", password="p", secure=True)

        with patch("src.alerting.channels.smtplib.SMTP_SSL") as mock_ssl:
            channel._send_sync(transport, MagicMock())

        mock_ssl.assert_called_once()
        mock_ssl.return_value.starttls.assert_not_called()
        mock_ssl.return_value.login.assert_called_once_with("u", "p")
