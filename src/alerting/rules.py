"""Stateless rule evaluation for alert activation.

``evaluate_rule`` decides whether an alert fires for a given context. No
I/O, no mutation: loading the alert is the caller's job (see
``AlertEngine.evaluate_rules``). Custom rules are resolved by id through a
``PredicateRegistry`` of in-process callables, never from configuration.
"""

import logging
import math
from collections.abc import Callable, Mapping
from typing import Any

from src.alerting.errors import ConfigurationError
from src.alerting.schemas import AlertContext, CustomRule, RuleSpec, ThresholdRule

logger = logging.getLogger(__name__)

Predicate = Callable[[Mapping[str, Any]], bool]

# Threshold keys consulted when a threshold rule carries no value of its own.
FALLBACK_THRESHOLD_KEYS = ("soldeMin", "balance_min")


class PredicateRegistry:
    """Named predicates available to ``CustomRule`` alerts.

    Usage:
        registry = PredicateRegistry()

        @registry.register("large_disbursement")
        def large_disbursement(ctx):
            return ctx.get("amount", 0) > 5_000_000
    """

    def __init__(self) -> None:
        self._predicates: dict[str, Predicate] = {}

    def register(self, predicate_id: str, func: Predicate | None = None):
        """Register ``func`` under ``predicate_id``; usable as a decorator."""
        if func is None:
            def decorator(f: Predicate) -> Predicate:
                self._predicates[predicate_id] = f
                return f
            return decorator
        self._predicates[predicate_id] = func
        return func

    def get(self, predicate_id: str) -> Predicate:
        try:
            return self._predicates[predicate_id]
        except KeyError:
            raise ConfigurationError(
                f"No predicate registered under {predicate_id!r}"
            ) from None

    def __contains__(self, predicate_id: object) -> bool:
        return predicate_id in self._predicates

    def __len__(self) -> int:
        return len(self._predicates)


def _as_number(value: Any) -> float | None:
    """Coerce a context value to float, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def check_threshold_rule(
    rule: ThresholdRule,
    thresholds: Mapping[str, float] | None,
    context: AlertContext,
) -> bool:
    """Fire when ``context[rule.field]`` is strictly below the rule value.

    Only the ``<`` operator is supported; other operators never fire.
    """
    if rule.operator != "<":
        logger.debug("Unsupported threshold operator %r", rule.operator)
        return False

    limit = rule.value
    if limit is None and thresholds:
        for key in FALLBACK_THRESHOLD_KEYS:
            if key in thresholds:
                limit = _as_number(thresholds[key])
                break

    value = _as_number(context.get(rule.field))
    if value is None or limit is None:
        return False
    return value < limit


def check_thresholds(
    thresholds: Mapping[str, float],
    context: AlertContext,
) -> str | None:
    """Return the first key whose context value reaches its threshold.

    The boundary is inclusive (``value >= threshold``) and iteration stops
    at the first match. Missing or non-numeric values are skipped.
    """
    for key, threshold in thresholds.items():
        value = _as_number(context.get(key))
        limit = _as_number(threshold)
        if value is None or limit is None:
            continue
        if value >= limit:
            return key
    return None


def evaluate_rule(
    rule: RuleSpec | None,
    thresholds: Mapping[str, float] | None,
    context: AlertContext,
    predicates: PredicateRegistry | None = None,
) -> bool:
    """Decide whether an alert fires.

    Order: threshold rule, thresholds map, custom rule. An alert with
    neither a rule nor thresholds always fires.

    Args:
        rule: Parsed activation rule, if any.
        thresholds: ``{context_key: threshold}`` map, if any.
        context: Runtime business values.
        predicates: Registry used to resolve ``CustomRule`` ids.

    Returns:
        True if the alert should fire.

    Raises:
        ConfigurationError: A custom rule names an unregistered predicate.
    """
    if rule is None and not thresholds:
        return True

    if isinstance(rule, ThresholdRule) and check_threshold_rule(rule, thresholds, context):
        return True

    if thresholds:
        matched = check_thresholds(thresholds, context)
        if matched is not None:
            logger.debug("Threshold %r reached", matched)
            return True

    if isinstance(rule, CustomRule):
        if predicates is None:
            raise ConfigurationError(
                f"Custom rule {rule.predicate_id!r} requires a predicate registry"
            )
        return bool(predicates.get(rule.predicate_id)(context))

    return False
