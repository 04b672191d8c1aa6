"""Channel registry and per-destination delivery routing.

``ChannelRegistry`` is built once at startup and holds one provider per
channel kind; providers cache their own transports. The dispatcher routes
a single destination to its provider and lets provider errors propagate
to the orchestrator's per-destination failure boundary.
"""

import logging
from collections.abc import Mapping

from src.alerting.channels import (
    ChannelConfigSource,
    EmailChannel,
    NotificationChannel,
    PushChannel,
    PushSubscriptionSource,
    SmsChannel,
    WebhookChannel,
    is_subscription_address,
)
from src.alerting.config import AlertingConfig, ChannelEnvSettings
from src.alerting.errors import ConfigurationError
from src.alerting.schemas import Channel, Destination

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Explicit ``Channel`` → provider mapping."""

    def __init__(
        self,
        channels: Mapping[Channel, NotificationChannel] | None = None,
    ) -> None:
        self._channels: dict[Channel, NotificationChannel] = dict(channels or {})

    @classmethod
    def default(
        cls,
        config: AlertingConfig | None = None,
        env: ChannelEnvSettings | None = None,
        config_source: ChannelConfigSource | None = None,
        subscription_source: PushSubscriptionSource | None = None,
    ) -> "ChannelRegistry":
        """Build the registry with the four standard providers."""
        config = config or AlertingConfig()
        env = env or ChannelEnvSettings()
        return cls({
            Channel.EMAIL: EmailChannel(config, env, config_source),
            Channel.SMS: SmsChannel(config, env, config_source),
            Channel.PUSH: PushChannel(config, env, config_source, subscription_source),
            Channel.WEBHOOK: WebhookChannel(config, env, config_source),
        })

    def register(self, kind: Channel, channel: NotificationChannel) -> None:
        self._channels[kind] = channel

    def get(self, kind: Channel) -> NotificationChannel:
        try:
            return self._channels[kind]
        except KeyError:
            raise ConfigurationError(f"No provider registered for channel {kind.value!r}") from None

    @property
    def kinds(self) -> list[Channel]:
        return list(self._channels)


class NotificationDispatcher:
    """Routes one destination to its channel provider.

    Push destinations that are not a raw subscription JSON are treated as
    a user id or email and fanned out to that user's subscriptions.
    """

    def __init__(self, registry: ChannelRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    async def deliver(self, destination: Destination, subject: str | None, body: str) -> None:
        """Send ``body`` to one destination.

        Raises:
            ConfigurationError: Unknown channel or no provider for it.
            Whatever the provider raises on failure.
        """
        kind = Channel.parse(destination.channel)
        if kind is None:
            raise ConfigurationError(f"Unknown channel {destination.channel!r}")

        provider = self._registry.get(kind)

        if (
            kind is Channel.PUSH
            and isinstance(provider, PushChannel)
            and not is_subscription_address(destination.address)
        ):
            count = await provider.send_to_user(destination.address, subject, body)
            logger.debug("Push delivered to %d subscriptions of %s", count, destination.address)
            return

        await provider.send(destination.address, subject, body)
