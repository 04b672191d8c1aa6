"""Business event bridge for the alerting engine.

Business operations (contract creation, deposits, disbursements, scheduled
treasury checks) fire events; each event maps to an alert code. Dispatch
never fails the business operation that raised the event.
"""

import enum
import logging
from typing import Any

from src.alerting.schemas import AlertContext

logger = logging.getLogger(__name__)


class AlertEvent(str, enum.Enum):
    """Business events that can trigger alerts."""

    CONTRACT_CREATED = "contract_created"
    DEPOSIT_RECEIVED = "deposit_received"
    DISBURSEMENT_VALIDATED = "disbursement_validated"
    LOW_TREASURY = "low_treasury"
    DEADLINE_APPROACHING = "deadline_approaching"


EVENT_ALERT_CODES: dict[AlertEvent, str] = {
    AlertEvent.CONTRACT_CREATED: "MARCHE_CREE",
    AlertEvent.DEPOSIT_RECEIVED: "ACOMPTE_RECU",
    AlertEvent.DISBURSEMENT_VALIDATED: "DECAISSEMENT_VALIDE",
    AlertEvent.LOW_TREASURY: "TRESORERIE_SEUIL",
    AlertEvent.DEADLINE_APPROACHING: "DEADLINE_APPROCHANT",
}


def alert_code_for(event: AlertEvent | str) -> str:
    """Return the alert code mapped to ``event``.

    Raises:
        ValueError: Unknown event name.
    """
    return EVENT_ALERT_CODES[AlertEvent(event)]


async def dispatch_alert_event(
    engine: Any,
    event: AlertEvent | str,
    context: AlertContext,
) -> bool:
    """Trigger the alert mapped to ``event`` without raising.

    Args:
        engine: An ``AlertEngine``.
        event: Business event.
        context: Business values passed to ``trigger_by_code``.

    Returns:
        True if the trigger ran to completion, False if it raised.
    """
    try:
        code = alert_code_for(event)
        await engine.trigger_by_code(code, context)
    except Exception:
        logger.exception("Alert event %s dispatch failed", event)
        return False
    return True
