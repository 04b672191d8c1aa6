"""Alert engine orchestrating rule evaluation, rendering, dispatch and audit.

``trigger_by_code`` evaluates an alert's rules against a business context
and, when they fire, hands a payload to ``trigger_alert``. ``trigger_alert``
resolves destinations and runs each one through
``Pending → Rendered → Sent | Failed`` inside its own failure boundary,
writing exactly one delivery record per destination.

Errors outside the per-destination loop (unknown or inactive alert,
unregistered custom predicate) propagate to the caller. Errors inside it
are recorded and never propagate; audit write failures do.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Protocol

from src.alerting.audit import AuditLogger
from src.alerting.config import AlertingConfig, ChannelEnvSettings
from src.alerting.destinations import resolve_destinations
from src.alerting.dispatcher import ChannelRegistry, NotificationDispatcher
from src.alerting.errors import NotFoundError
from src.alerting.formatting import build_body_html, build_body_plain, escape_html
from src.alerting.repository import AlertRepository, NotificationRepository
from src.alerting.rules import PredicateRegistry, evaluate_rule
from src.alerting.schemas import (
    Alert,
    AlertContext,
    AlertPayload,
    Channel,
    Destination,
    FormatContext,
)
from src.alerting.templates import render
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class AlertSource(Protocol):
    async def get_by_code(self, code: str, *, active_only: bool = True) -> Alert | None: ...

    async def get_by_id(self, alert_id: str, *, with_destinations: bool = True) -> Alert | None: ...


def _stringify(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _to_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def context_to_variables(context: Mapping[str, Any]) -> dict[str, str]:
    """Stringify every non-null context value for template rendering."""
    return {k: _stringify(v) for k, v in context.items() if v is not None}


def build_format_context(
    alert: Alert,
    values: Mapping[str, Any],
    base_currency: str = "XOF",
) -> FormatContext:
    """Derive the typed FormatContext from an alert and context/variables."""
    return FormatContext(
        alert_code=alert.code,
        label=alert.label,
        message=values.get("message") or None,
        contract_code=values.get("contract_code") or None,
        contract_label=values.get("contract_label") or values.get("label") or None,
        currency_code=values.get("currency_code") or base_currency,
        amount=_to_number(values.get("amount")),
        threshold=_to_number(values.get("threshold")),
        balance=_to_number(values.get("balance")),
        deadline=values.get("deadline") or None,
    )


class AlertEngine:
    """Orchestrator for alert triggering and delivery.

    Combines the stateless rule evaluator, formatter and template renderer
    with the channel dispatcher and the audit logger.
    """

    def __init__(
        self,
        alert_repo: AlertSource,
        dispatcher: NotificationDispatcher,
        audit: AuditLogger,
        config: AlertingConfig | None = None,
        predicates: PredicateRegistry | None = None,
    ) -> None:
        self._alert_repo = alert_repo
        self._dispatcher = dispatcher
        self._audit = audit
        self._config = config or AlertingConfig()
        self._predicates = predicates or PredicateRegistry()
        self._metrics = get_metrics()

    @classmethod
    def from_database(
        cls,
        database: Any,
        config: AlertingConfig | None = None,
        env: ChannelEnvSettings | None = None,
        predicates: PredicateRegistry | None = None,
    ) -> "AlertEngine":
        """Wire repositories, channel registry and audit logger on one Database."""
        config = config or AlertingConfig()
        alert_repo = AlertRepository(database)
        registry = ChannelRegistry.default(
            config=config,
            env=env,
            config_source=alert_repo,
            subscription_source=alert_repo,
        )
        return cls(
            alert_repo=alert_repo,
            dispatcher=NotificationDispatcher(registry),
            audit=AuditLogger(NotificationRepository(database)),
            config=config,
            predicates=predicates,
        )

    @property
    def predicates(self) -> PredicateRegistry:
        return self._predicates

    async def evaluate_rules(self, code: str, context: AlertContext) -> bool:
        """Return True if the active alert ``code`` fires for ``context``.

        Missing or inactive alerts never fire.
        """
        alert = await self._alert_repo.get_by_code(code)
        if alert is None:
            return False
        return evaluate_rule(alert.rule, alert.thresholds, context, self._predicates)

    async def trigger_by_code(
        self,
        code: str,
        context: AlertContext,
        overrides: Mapping[str, Any] | None = None,
    ) -> None:
        """Evaluate the alert's rules and deliver it when they fire.

        Args:
            code: Alert code.
            context: Business values (amount, balance, contract, ...).
            overrides: AlertPayload field overrides (subject, body,
                destinations, ...).
        """
        alert = await self._alert_repo.get_by_code(code)
        if alert is None:
            logger.debug("Alert %s missing or inactive, skipping", code)
            self._metrics.record_trigger(code, "not_found")
            return

        if not evaluate_rule(alert.rule, alert.thresholds, context, self._predicates):
            logger.debug("Alert %s rules did not fire", code)
            self._metrics.record_trigger(code, "suppressed")
            return

        self._metrics.record_trigger(code, "fired")
        contract_id = context.get("contract_id")
        payload = AlertPayload(
            alert_code=code,
            subject=alert.label,
            body="",
            variables=context_to_variables(context),
            contract_id=str(contract_id) if contract_id is not None else None,
            format_context=build_format_context(alert, context, self._config.base_currency),
        ).merged(dict(overrides) if overrides else None)

        await self.trigger_alert(alert.alert_id, payload)

    async def trigger_alert(self, alert_id: str, payload: AlertPayload) -> None:
        """Deliver an alert to every resolved destination.

        Raises:
            NotFoundError: The alert does not exist or is inactive.
        """
        alert = await self._alert_repo.get_by_id(alert_id)
        if alert is None or not alert.active:
            raise NotFoundError(f"Alert {alert_id} not found or inactive")

        destinations = resolve_destinations(payload, alert)
        if not destinations:
            logger.info("Alert %s has no destinations", alert.code)
            return

        subject_template = payload.subject if payload.subject is not None else alert.label
        variables = {**(payload.variables or {}), "alertCode": alert.code}
        format_ctx = payload.format_context or build_format_context(
            alert, payload.variables or {}, self._config.base_currency,
        )
        custom_body = payload.body if payload.body and payload.body.strip() else None

        async def run(dest: Destination) -> bool:
            return await self._deliver_one(
                alert, dest, payload, subject_template, variables, format_ctx, custom_body,
            )

        if self._config.max_concurrency > 1 and len(destinations) > 1:
            semaphore = asyncio.Semaphore(self._config.max_concurrency)

            async def bounded(dest: Destination) -> bool:
                async with semaphore:
                    return await run(dest)

            outcomes = await asyncio.gather(
                *(bounded(d) for d in destinations), return_exceptions=True,
            )
            # Every destination has finished; surface the first audit failure.
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            results = outcomes
        else:
            results = [await run(d) for d in destinations]

        delivered = sum(1 for ok in results if ok)
        failed = len(results) - delivered
        if failed and not delivered:
            logger.error("Alert %s failed ALL %d destinations", alert.code, failed)
        elif failed:
            logger.warning(
                "Alert %s partial delivery: ok=%d failed=%d", alert.code, delivered, failed,
            )
        else:
            logger.info("Alert %s delivered to %d destinations", alert.code, delivered)

    async def _deliver_one(
        self,
        alert: Alert,
        dest: Destination,
        payload: AlertPayload,
        subject_template: str,
        variables: dict[str, str],
        format_ctx: FormatContext,
        custom_body: str | None,
    ) -> bool:
        """Render, send and audit a single destination.

        ``body`` always holds the output of the last completed stage so a
        failure records what had been produced so far.
        """
        channel = Channel.parse(dest.channel)
        channel_name = channel.value if channel else str(dest.channel)
        body = ""
        body_variables = variables
        started = time.monotonic()

        try:
            if custom_body is not None:
                body = custom_body
            elif channel is Channel.EMAIL:
                body = build_body_html(
                    format_ctx, self._config.base_currency, self._config.brand_name,
                )
                body_variables = {k: escape_html(v) for k, v in variables.items()}
            else:
                body = build_body_plain(format_ctx, self._config.base_currency)

            body = render(body, body_variables)
            subject = render(subject_template, variables)

            await self._dispatcher.deliver(dest, subject, body)
        except Exception as e:
            logger.warning(
                "Alert %s delivery to %s:%s failed: %s",
                alert.code, channel_name, dest.address, e,
            )
            self._metrics.record_delivery(
                channel_name, delivered=False,
                latency=time.monotonic() - started, error_type=type(e).__name__,
            )
            await self._audit.record(
                alert.alert_id, dest, payload.subject or "", body,
                error=e, contract_id=payload.contract_id,
            )
            return False

        self._metrics.record_delivery(
            channel_name, delivered=True, latency=time.monotonic() - started,
        )
        await self._audit.record(
            alert.alert_id, dest, subject, body, contract_id=payload.contract_id,
        )
        return True

    async def send_test(
        self,
        alert_ref: str,
        destinations: list[Destination] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> Alert:
        """Send a ``[TEST]`` notification for an alert looked up by id or code.

        Args:
            alert_ref: Alert id or code.
            destinations: Ad-hoc targets; stored destinations when None.
            variables: Template variables; ``message`` overrides the body.

        Returns:
            The alert that was tested.

        Raises:
            NotFoundError: Unknown reference, or the alert is inactive.
        """
        alert = await self._alert_repo.get_by_id(alert_ref, with_destinations=False)
        if alert is None:
            alert = await self._alert_repo.get_by_code(alert_ref, active_only=False)
        if alert is None:
            raise NotFoundError(f"Alert {alert_ref} not found")

        variables = dict(variables or {})
        payload = AlertPayload(
            alert_code=alert.code,
            subject=f"[TEST] {alert.label}",
            body=variables.get("message") or f"Ceci est un envoi test pour la règle {alert.label}.",
            variables=variables,
            destinations=destinations,
        )
        await self.trigger_alert(alert.alert_id, payload)
        return alert
