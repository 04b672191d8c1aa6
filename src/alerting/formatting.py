"""Message body formatting for alert notifications.

Builds two renderings of a ``FormatContext``: a plain-text body for SMS,
push and webhook, and a styled HTML email body. Amounts use French
grouping with the currency symbol; the base currency (XOF) is shown
without decimals.

All user-supplied text in the HTML body is escaped before interpolation.
"""

import html
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from src.alerting.schemas import FormatContext

BASE_CURRENCY = "XOF"

CURRENCY_SYMBOLS: dict[str, str] = {
    "XOF": "FCFA",
    "EUR": "€",
    "USD": "$",
    "GNF": "FG",
}

# fr-FR grouping uses a narrow no-break space.
GROUP_SEPARATOR = "\u202f"
DECIMAL_SEPARATOR = ","

FRENCH_MONTHS = (
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
)

BRAND_COLOR = "#0f766e"


def escape_html(value: object) -> str:
    """Escape ``&``, ``<``, ``>`` and quotes for safe HTML interpolation."""
    return html.escape(str(value), quote=True)


def format_amount(
    amount: float | int | Decimal,
    currency_code: str = BASE_CURRENCY,
    base_currency: str = BASE_CURRENCY,
) -> str:
    """Format an amount with French grouping and the currency symbol.

    ``format_amount(1234567, "XOF")`` gives ``1 234 567 FCFA`` and
    ``format_amount(1234.5, "EUR")`` gives ``1 234,50 €``, groups being
    separated by U+202F. Unknown currency codes are shown as-is.
    """
    decimals = 0 if currency_code == base_currency else 2
    quantum = Decimal(1).scaleb(-decimals)
    try:
        value = Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return f"{amount} {CURRENCY_SYMBOLS.get(currency_code, currency_code)}"

    formatted = f"{value:,.{decimals}f}"
    formatted = (
        formatted.replace(",", "\0")
        .replace(".", DECIMAL_SEPARATOR)
        .replace("\0", GROUP_SEPARATOR)
    )
    symbol = CURRENCY_SYMBOLS.get(currency_code, currency_code)
    return f"{formatted} {symbol}"


def _parse_datetime(value: str | date | datetime) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_date_fr(value: str | date | datetime) -> str:
    """Format a date as ``31 décembre 2026 à 14:30``.

    Unparseable strings are returned unchanged.
    """
    parsed = _parse_datetime(value)
    if parsed is None:
        return str(value)
    month = FRENCH_MONTHS[parsed.month - 1]
    return f"{parsed.day:02d} {month} {parsed.year} à {parsed.hour:02d}:{parsed.minute:02d}"


def _contract_text(ctx: FormatContext) -> str | None:
    if not ctx.contract_code:
        return None
    if ctx.contract_label:
        return f"{ctx.contract_label} ({ctx.contract_code})"
    return ctx.contract_code


def build_body_plain(ctx: FormatContext, base_currency: str = BASE_CURRENCY) -> str:
    """Build the plain-text body: one line per present field."""
    currency = ctx.currency_code or base_currency
    lines = [ctx.message or ctx.label]

    contract = _contract_text(ctx)
    if contract:
        lines.append(f"Marché : {contract}")
    if ctx.amount is not None:
        lines.append(f"Montant : {format_amount(ctx.amount, currency, base_currency)}")
    if ctx.balance is not None:
        lines.append(f"Solde actuel : {format_amount(ctx.balance, currency, base_currency)}")
    if ctx.threshold is not None:
        lines.append(f"Seuil : {format_amount(ctx.threshold, currency, base_currency)}")
    if ctx.deadline:
        lines.append(f"Échéance : {format_date_fr(ctx.deadline)}")

    return "\n".join(line for line in lines if line)


def _table_row(label: str, value_html: str, value_style: str = "") -> str:
    style = f"padding:8px 12px;{value_style}"
    return (
        "\n      <tr>"
        f'\n        <td style="padding:8px 12px;background:#f8fafc;font-weight:600;width:140px;">{label}</td>'
        f'\n        <td style="{style}">{value_html}</td>'
        "\n      </tr>"
    )


def build_body_html(
    ctx: FormatContext,
    base_currency: str = BASE_CURRENCY,
    brand_name: str = "Emeraude Business",
) -> str:
    """Build the HTML email body.

    Optional fields become rows of a two-column table; absent fields
    produce no row. Labels, messages and contract names are escaped.
    """
    currency = ctx.currency_code or base_currency
    rows: list[str] = []

    if ctx.contract_code:
        if ctx.contract_label:
            contract_html = (
                f"{escape_html(ctx.contract_label)} "
                f'<span style="color:#666;">({escape_html(ctx.contract_code)})</span>'
            )
        else:
            contract_html = escape_html(ctx.contract_code)
        rows.append(_table_row("Marché", contract_html))
    if ctx.amount is not None:
        rows.append(_table_row(
            "Montant",
            escape_html(format_amount(ctx.amount, currency, base_currency)),
            f"font-weight:600;color:{BRAND_COLOR};",
        ))
    if ctx.balance is not None:
        rows.append(_table_row(
            "Solde actuel", escape_html(format_amount(ctx.balance, currency, base_currency)),
        ))
    if ctx.threshold is not None:
        rows.append(_table_row(
            "Seuil", escape_html(format_amount(ctx.threshold, currency, base_currency)),
        ))
    if ctx.deadline:
        rows.append(_table_row("Échéance", escape_html(format_date_fr(ctx.deadline))))

    intro = ctx.message or ctx.label
    intro_block = (
        f'<p style="margin:0 0 16px 0;font-size:15px;line-height:1.5;color:#333;">{escape_html(intro)}</p>'
        if intro else ""
    )
    table_block = (
        '<table style="width:100%;border-collapse:collapse;margin:16px 0;font-size:14px;">'
        + "".join(rows)
        + "</table>"
        if rows else ""
    )
    brand = escape_html(brand_name)

    return f"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="margin:0;padding:0;font-family:'Segoe UI',Tahoma,Geneva,Verdana,sans-serif;background:#f1f5f9;">
  <div style="max-width:600px;margin:24px auto;background:#fff;border-radius:8px;overflow:hidden;box-shadow:0 1px 3px rgba(0,0,0,0.1);">
    <div style="background:{BRAND_COLOR};color:#fff;padding:20px 24px;">
      <h1 style="margin:0;font-size:18px;font-weight:600;">{brand}</h1>
      <p style="margin:8px 0 0 0;font-size:14px;opacity:0.9;">{escape_html(ctx.label)}</p>
    </div>
    <div style="padding:24px;">
      {intro_block}
      {table_block}
      <p style="margin:20px 0 0 0;font-size:12px;color:#64748b;">
        Cet email a été envoyé automatiquement par {brand}. Merci de ne pas y répondre.
      </p>
    </div>
  </div>
</body>
</html>"""
