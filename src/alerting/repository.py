"""Repositories for alert configuration and the delivery audit trail.

Follows the asyncpg repository pattern: raw SQL through ``Database``,
JSONB columns decoded in module-level ``_row_to_*`` helpers.

``AlertRepository`` is read-only towards alerts, destinations, templates,
channel configs and push subscriptions (managed by the admin surface).
``NotificationRepository`` only ever inserts delivery records.
"""

import json
import logging
from datetime import datetime
from typing import Any

from src.alerting.schemas import (
    Alert,
    Channel,
    ChannelConfig,
    DeliveryRecord,
    Destination,
    PushSubscription,
    Template,
    parse_rule,
)
from src.storage.database import Database

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS alerts (
    alert_id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    label TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    rule JSONB,
    thresholds JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS alert_destinations (
    id BIGSERIAL PRIMARY KEY,
    alert_id TEXT NOT NULL REFERENCES alerts(alert_id) ON DELETE CASCADE,
    channel TEXT NOT NULL,
    address TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE INDEX IF NOT EXISTS idx_alert_destinations_alert
    ON alert_destinations (alert_id);

CREATE TABLE IF NOT EXISTS alert_templates (
    code TEXT PRIMARY KEY,
    subject TEXT,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_configs (
    channel TEXT PRIMARY KEY,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    credentials JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    user_email TEXT,
    endpoint TEXT NOT NULL UNIQUE,
    p256dh TEXT NOT NULL,
    auth TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_user
    ON push_subscriptions (user_id);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_email
    ON push_subscriptions (user_email);

-- Append-only delivery audit trail
CREATE TABLE IF NOT EXISTS notifications (
    record_id TEXT PRIMARY KEY,
    alert_id TEXT NOT NULL,
    channel TEXT NOT NULL,
    address TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    delivered BOOLEAN NOT NULL,
    delivered_at TIMESTAMPTZ,
    error TEXT,
    contract_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_notifications_alert_created
    ON notifications (alert_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_notifications_contract
    ON notifications (contract_id) WHERE contract_id IS NOT NULL;
"""


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class AlertRepository:
    """Read access to alert configuration tables."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_tables(self) -> None:
        """Create all alerting tables if they don't exist."""
        await self._db.execute(SCHEMA_SQL)
        logger.info("Alerting schema ensured")

    async def get_by_code(self, code: str, *, active_only: bool = True) -> Alert | None:
        """Get an alert by its business code (without destinations).

        Args:
            code: Unique alert code.
            active_only: Ignore inactive alerts.

        Returns:
            Alert or None if not found.
        """
        sql = "SELECT * FROM alerts WHERE code = $1"
        if active_only:
            sql += " AND active = TRUE"
        row = await self._db.fetchrow(sql, code)
        if row is None:
            return None
        return _row_to_alert(row)

    async def get_by_id(
        self,
        alert_id: str,
        *,
        with_destinations: bool = True,
    ) -> Alert | None:
        """Get an alert by ID, with its active stored destinations.

        Args:
            alert_id: Alert identifier.
            with_destinations: Also load ``alert_destinations`` rows.

        Returns:
            Alert or None if not found.
        """
        row = await self._db.fetchrow("SELECT * FROM alerts WHERE alert_id = $1", alert_id)
        if row is None:
            return None

        destinations: list[Destination] = []
        if with_destinations:
            rows = await self._db.fetch(
                """
                SELECT channel, address, active FROM alert_destinations
                WHERE alert_id = $1 AND active = TRUE
                ORDER BY id
                """,
                alert_id,
            )
            destinations = [
                Destination(channel=r["channel"], address=r["address"], active=r["active"])
                for r in rows
            ]
        return _row_to_alert(row, destinations)

    async def get_template(self, code: str) -> Template | None:
        row = await self._db.fetchrow(
            "SELECT code, subject, body FROM alert_templates WHERE code = $1", code,
        )
        if row is None:
            return None
        return Template(code=row["code"], subject=row["subject"], body=row["body"])

    async def get_channel_config(self, channel: Channel) -> ChannelConfig | None:
        """Get the stored provider configuration for a channel.

        Channel names are matched case-insensitively (rows may store ``EMAIL``).
        """
        row = await self._db.fetchrow(
            "SELECT channel, enabled, credentials FROM channel_configs WHERE lower(channel) = $1",
            channel.value,
        )
        if row is None:
            return None
        return ChannelConfig(
            channel=channel,
            enabled=row["enabled"],
            credentials=_decode_json(row["credentials"]) or {},
        )

    async def get_push_subscriptions(self, user_ref: str) -> list[PushSubscription]:
        """Get push subscriptions for a user id, or an email when ``user_ref`` contains '@'."""
        column = "user_email" if "@" in user_ref else "user_id"
        rows = await self._db.fetch(
            f"SELECT endpoint, p256dh, auth FROM push_subscriptions WHERE {column} = $1 ORDER BY id",
            user_ref,
        )
        return [
            PushSubscription(endpoint=r["endpoint"], p256dh=r["p256dh"], auth=r["auth"])
            for r in rows
        ]


class NotificationRepository:
    """Append-only storage for delivery records."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, record: DeliveryRecord) -> DeliveryRecord:
        """Insert one delivery record.

        Errors propagate: a lost audit row is an operator-visible failure.
        """
        sql = """
            INSERT INTO notifications (
                record_id, alert_id, channel, address, subject, body,
                delivered, delivered_at, error, contract_id, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            record.record_id,
            record.alert_id,
            record.channel,
            record.address,
            record.subject,
            record.body,
            record.delivered,
            record.delivered_at,
            record.error,
            record.contract_id,
            record.created_at,
        )
        return _row_to_record(row)

    async def get_recent(
        self,
        *,
        alert_id: str | None = None,
        channel: str | None = None,
        delivered: bool | None = None,
        contract_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        """Get recent delivery records with optional filtering.

        Returns:
            Records ordered by created_at descending.
        """
        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        for column, value in (
            ("alert_id", alert_id),
            ("channel", channel),
            ("delivered", delivered),
            ("contract_id", contract_id),
        ):
            if value is not None:
                conditions.append(f"{column} = ${param_idx}")
                params.append(value)
                param_idx += 1

        if since is not None:
            conditions.append(f"created_at >= ${param_idx}")
            params.append(since)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        sql = f"""
            SELECT * FROM notifications
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        rows = await self._db.fetch(sql, *params)
        return [_row_to_record(row) for row in rows]

    async def count_by_status(self, alert_id: str) -> dict[str, int]:
        """Count delivered and failed records for an alert."""
        rows = await self._db.fetch(
            """
            SELECT delivered, COUNT(*) AS n FROM notifications
            WHERE alert_id = $1 GROUP BY delivered
            """,
            alert_id,
        )
        counts = {"delivered": 0, "failed": 0}
        for r in rows:
            counts["delivered" if r["delivered"] else "failed"] = r["n"]
        return counts


def _row_to_alert(row: Any, destinations: list[Destination] | None = None) -> Alert:
    """Convert an asyncpg Record to an Alert."""
    thresholds = _decode_json(row.get("thresholds"))
    return Alert(
        alert_id=row["alert_id"],
        code=row["code"],
        label=row["label"],
        active=row.get("active", True),
        rule=parse_rule(_decode_json(row.get("rule"))),
        thresholds=thresholds or None,
        destinations=destinations or [],
    )


def _row_to_record(row: Any) -> DeliveryRecord:
    """Convert an asyncpg Record to a DeliveryRecord."""
    return DeliveryRecord(
        record_id=row["record_id"],
        alert_id=row["alert_id"],
        channel=row["channel"],
        address=row["address"],
        subject=row["subject"],
        body=row["body"],
        delivered=row["delivered"],
        delivered_at=row.get("delivered_at"),
        error=row.get("error"),
        contract_id=row.get("contract_id"),
        created_at=row["created_at"],
    )
