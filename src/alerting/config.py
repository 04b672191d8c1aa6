"""Alerting engine configuration.

``AlertingConfig`` holds engine knobs, overridable via ``ALERTING_*``
environment variables. ``ChannelEnvSettings`` holds the provider
credentials used when no enabled ``channel_configs`` row supplies them;
it reads the conventional unprefixed names (``SMTP_HOST``, ``TWILIO_FROM``,
``VAPID_PUBLIC_KEY``...).
"""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AlertingConfig(BaseSettings):
    """Configuration for rule evaluation, formatting and dispatch."""

    model_config = SettingsConfigDict(
        env_prefix="ALERTING_",
        case_sensitive=False,
        extra="ignore",
    )

    base_currency: str = Field(
        default="XOF",
        description="Currency formatted without decimals and used when the context has none",
    )
    brand_name: str = Field(
        default="Emeraude Business",
        description="Name shown in email headers and default subjects",
    )
    default_subject: str = Field(
        default="Alerte Emeraude Business",
        description="Subject used by providers when none is rendered",
    )
    max_concurrency: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Destinations processed concurrently per trigger (1 = sequential)",
    )

    # Webhook
    webhook_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)
    webhook_user_agent: str = "Emeraude-Business-Alerts/1.0"

    # SMS
    sms_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)
    sms_country_prefix: str = Field(
        default="+33",
        description="Prefix applied to local numbers (leading 0 dropped)",
    )
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    # Push
    push_contact: str = Field(
        default="mailto:noreply@emeraude-business.local",
        description="VAPID 'sub' claim",
    )
    push_ttl_seconds: int = Field(default=86400, ge=0)

    # Email
    smtp_timeout_seconds: float = Field(default=30.0, gt=0.0, le=300.0)


class ChannelEnvSettings(BaseSettings):
    """Environment fallback for provider credentials."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    email_host: str | None = Field(
        default=None, validation_alias=AliasChoices("EMAIL_HOST", "SMTP_HOST"),
    )
    email_port: int = Field(
        default=587, validation_alias=AliasChoices("EMAIL_PORT", "SMTP_PORT"),
    )
    email_secure: bool = Field(
        default=False, validation_alias=AliasChoices("EMAIL_SECURE", "SMTP_SECURE"),
    )
    email_user: str | None = Field(
        default=None, validation_alias=AliasChoices("EMAIL_USER", "SMTP_USER"),
    )
    email_password: str = Field(
        default="",
        validation_alias=AliasChoices("EMAIL_PASSWORD", "SMTP_PASS", "SMTP_PASSWORD"),
    )
    email_from: str = Field(
        default="noreply@emeraude-business.local",
        validation_alias=AliasChoices("EMAIL_FROM", "SMTP_FROM"),
    )

    twilio_account_sid: str | None = Field(
        default=None, validation_alias=AliasChoices("TWILIO_ACCOUNT_SID"),
    )
    twilio_auth_token: str | None = Field(
        default=None, validation_alias=AliasChoices("TWILIO_AUTH_TOKEN"),
    )
    twilio_from: str | None = Field(
        default=None, validation_alias=AliasChoices("TWILIO_FROM"),
    )

    vapid_public_key: str | None = Field(
        default=None, validation_alias=AliasChoices("VAPID_PUBLIC_KEY"),
    )
    vapid_private_key: str | None = Field(
        default=None, validation_alias=AliasChoices("VAPID_PRIVATE_KEY"),
    )

    @property
    def email_configured(self) -> bool:
        return bool(self.email_host and self.email_user)

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    @property
    def push_configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)
