"""Destination resolution for a trigger.

An explicit destination list on the payload wins outright; otherwise the
alert's stored recipients are used, restricted to active rows with a
recognised channel.
"""

import logging

from src.alerting.schemas import Alert, AlertPayload, Channel, Destination

logger = logging.getLogger(__name__)


def resolve_destinations(payload: AlertPayload, alert: Alert) -> list[Destination]:
    """Return the ``(channel, address)`` targets for one trigger.

    Payload destinations are used verbatim (their channel is normalised
    to ``Channel`` when recognised, left as-is otherwise so the delivery
    fails visibly in the audit trail). Stored destinations with an unknown
    channel are dropped silently.
    """
    if payload.destinations is not None:
        return [
            Destination(
                channel=Channel.parse(d.channel) or d.channel,
                address=d.address,
                active=d.active,
            )
            for d in payload.destinations
        ]

    resolved: list[Destination] = []
    for dest in alert.destinations:
        if not dest.active:
            continue
        channel = Channel.parse(dest.channel)
        if channel is None:
            logger.debug(
                "Dropping destination with unknown channel %r for alert %s",
                dest.channel, alert.code,
            )
            continue
        resolved.append(Destination(channel=channel, address=dest.address))
    return resolved
