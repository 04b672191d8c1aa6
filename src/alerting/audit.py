"""Delivery audit logging.

Writes exactly one ``DeliveryRecord`` per attempted destination. Storage
errors are not caught here.
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

from src.alerting.schemas import Channel, DeliveryRecord, Destination

logger = logging.getLogger(__name__)


class DeliveryRecordSink(Protocol):
    """Append-only store for delivery records (see ``NotificationRepository``)."""

    async def create(self, record: DeliveryRecord) -> DeliveryRecord: ...


class AuditLogger:
    """Builds and persists delivery records."""

    def __init__(self, sink: DeliveryRecordSink) -> None:
        self._sink = sink

    async def record(
        self,
        alert_id: str,
        destination: Destination,
        subject: str,
        body: str,
        error: BaseException | str | None = None,
        contract_id: str | None = None,
    ) -> DeliveryRecord:
        """Persist the outcome of one destination attempt.

        Args:
            alert_id: Alert that was triggered.
            destination: Target of the attempt.
            subject: Rendered subject on success, best-effort value on failure.
            body: Body from the last completed pipeline stage.
            error: Failure cause; None means the send succeeded.
            contract_id: Related contract, if any.

        Returns:
            The stored record.
        """
        channel = (
            destination.channel.value
            if isinstance(destination.channel, Channel)
            else str(destination.channel)
        )
        delivered = error is None
        record = DeliveryRecord(
            alert_id=alert_id,
            channel=channel,
            address=destination.address,
            subject=subject or "",
            body=body or "",
            delivered=delivered,
            delivered_at=datetime.now(timezone.utc) if delivered else None,
            error=None if delivered else (str(error) or type(error).__name__),
            contract_id=contract_id,
        )
        return await self._sink.create(record)
