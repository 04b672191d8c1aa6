"""Template rendering with ``{{variable}}`` placeholders.

Placeholders whose key is not supplied are left verbatim, so rendering
never fails on missing variables. No conditionals or loops.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any, Protocol

from src.alerting.errors import NotFoundError
from src.alerting.schemas import Template

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


class TemplateSource(Protocol):
    """Anything that can load a stored template by code."""

    async def get_template(self, code: str) -> Template | None: ...


def render(template: str, variables: Mapping[str, Any] | None = None) -> str:
    """Substitute ``{{ key }}`` placeholders from ``variables``.

    Args:
        template: Text containing placeholders.
        variables: Values keyed by placeholder name (case-sensitive).

    Returns:
        Rendered text. Unknown placeholders are preserved; None renders
        as an empty string.
    """
    if not template or not variables:
        return template or ""

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


class TemplateRenderer:
    """Renders stored templates loaded from a ``TemplateSource``."""

    def __init__(self, source: TemplateSource) -> None:
        self._source = source

    async def render_from_code(
        self,
        template_code: str,
        variables: Mapping[str, Any] | None = None,
    ) -> tuple[str | None, str]:
        """Load a template and render its subject and body.

        Returns:
            ``(subject, body)``; subject is None when the template has none.

        Raises:
            NotFoundError: No template with this code.
        """
        template = await self._source.get_template(template_code)
        if template is None:
            raise NotFoundError(f"Template {template_code} not found")

        subject = render(template.subject, variables) if template.subject else None
        return subject, render(template.body, variables)
