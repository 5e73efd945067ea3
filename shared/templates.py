"""
Message templates and the formatter that renders them.

Turns a logical message (receipt or password reset notice) into content for
a channel family:
- email: subject + HTML body, rendered with Jinja2 (autoescaped)
- chat: plain text with fixed-width columns, since WhatsApp has no tables

Design decisions:
- Templates live in this module as strings, loaded into a Jinja2 DictLoader
- Money is printed in whole currency units with "." grouping (Rp 12.500)
- Receipt totals are printed exactly as persisted; only the subtotal is
  derived, as total - tax + discount, so the printout always reconciles
- The formatter has no side effects; the only failure is a malformed payload
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from jinja2 import Environment, DictLoader, StrictUndefined, select_autoescape

from shared.errors import ValidationError
from shared.models import (
    ChannelFamily,
    MessageType,
    PasswordResetPayload,
    ReceiptLine,
    ReceiptPayload,
)


# =============================================================================
# Email (HTML) Templates
# =============================================================================

RECEIPT_EMAIL_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Receipt {{ receipt.transaction_number }}</title>
</head>
<body style="margin:0; padding:20px; background-color:#f0f0f0;">
  <div style="font-family:'Courier New', monospace; max-width:360px; margin:0 auto; background:#fff; padding:16px; border:1px solid #000; font-size:12px; color:#000;">
    <div style="text-align:center; border-bottom:1px solid #000; padding-bottom:8px; margin-bottom:8px;">
      <div style="font-size:16px; font-weight:bold;">{{ receipt.store.name }}</div>
      {% if receipt.store.address %}<div>{{ receipt.store.address }}</div>{% endif %}
      {% if receipt.store.phone %}<div>Tel: {{ receipt.store.phone }}</div>{% endif %}
    </div>

    <table style="width:100%; font-size:11px; margin-bottom:8px;">
      <tr><td>Transaction No:</td><td style="text-align:right; font-weight:bold;">{{ receipt.transaction_number }}</td></tr>
      <tr><td>Date:</td><td style="text-align:right;">{{ date }}</td></tr>
      <tr><td>Cashier:</td><td style="text-align:right;">{{ receipt.cashier_name }}</td></tr>
      <tr><td>Customer:</td><td style="text-align:right; font-weight:bold;">{{ receipt.customer_name }}</td></tr>
    </table>

    <table style="width:100%; font-size:11px; border-collapse:collapse; border-top:1px solid #000; border-bottom:1px solid #000;">
      <thead>
        <tr style="border-bottom:1px solid #000;">
          <th style="text-align:left; font-weight:normal;">Item</th>
          <th style="text-align:center; font-weight:normal;">Qty</th>
          <th style="text-align:right; font-weight:normal;">Price</th>
          <th style="text-align:right; font-weight:normal;">Total</th>
        </tr>
      </thead>
      <tbody>
        {% for line in lines %}
        <tr>
          <td>{{ line.name }}</td>
          <td style="text-align:center;">{{ line.quantity }}</td>
          <td style="text-align:right;">{{ line.unit_price }}</td>
          <td style="text-align:right;">{{ line.total }}</td>
        </tr>
        {% endfor %}
      </tbody>
    </table>

    <table style="width:100%; font-size:11px; margin-top:6px;">
      <tr><td>Subtotal:</td><td style="text-align:right;">{{ subtotal }}</td></tr>
      {% if discount %}<tr style="color:#e74c3c;"><td>Discount{% if discount_percentage %} ({{ discount_percentage }}%){% endif %}:</td><td style="text-align:right;">-{{ discount }}</td></tr>{% endif %}
      <tr><td>Tax:</td><td style="text-align:right;">{{ tax }}</td></tr>
      <tr style="font-weight:bold; font-size:13px; border-top:1px dashed #333;"><td>TOTAL:</td><td style="text-align:right;">{{ total }}</td></tr>
      <tr><td>Payment:</td><td style="text-align:right; text-transform:uppercase;">{{ receipt.payment_method }}</td></tr>
    </table>

    <div style="text-align:center; margin-top:10px; padding-top:6px; border-top:1px dashed #333; font-size:10px;">
      <p style="margin:2px 0; font-weight:bold;">Thank you for shopping with us!</p>
      <p style="margin:2px 0;">Goods sold cannot be returned</p>
      <p style="margin:2px 0;">unless otherwise agreed</p>
      {% if receipt.customer_email %}<p style="margin:4px 0 0 0; color:#666;">Email: {{ receipt.customer_email }}</p>{% endif %}
      <p style="margin:1px 0; color:#666;">Powered by {{ app_name }}</p>
    </div>
  </div>
</body>
</html>
"""

PASSWORD_RESET_EMAIL_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Reset your {{ app_name }} password</title>
</head>
<body style="font-family:'Segoe UI', Tahoma, sans-serif; line-height:1.6; color:#333; background-color:#f5f5f5; margin:0; padding:0;">
  <div style="max-width:600px; margin:20px auto; background:#fff; border-radius:10px; overflow:hidden;">
    <div style="background:#dc2626; color:#fff; padding:30px 20px; text-align:center;">
      <h1 style="margin:0; font-size:24px;">Reset your {{ app_name }} password</h1>
    </div>
    <div style="padding:30px 20px;">
      <h2 style="margin-top:0;">Hi {{ display_name }}!</h2>
      <p>We received a request to reset the password of the {{ app_name }} account registered to <strong>{{ reset.subject_email }}</strong>.</p>
      <p style="background:#fff3cd; padding:15px; border-left:4px solid #f59e0b;">
        If you did not request a password reset, ignore this email. Your password will stay unchanged.
      </p>
      <p>To choose a new password, click the button below:</p>
      <p style="text-align:center;">
        <a href="{{ reset.reset_url }}" style="display:inline-block; background:#dc2626; color:#fff; padding:15px 30px; text-decoration:none; border-radius:8px; font-weight:600;">Reset Password</a>
      </p>
      <p>Or copy and paste this link into your browser:</p>
      <div style="background:#f8f9fa; padding:15px; word-break:break-all; font-family:monospace; border:1px solid #e9ecef;">{{ reset.reset_url }}</div>
      <p style="background:#fff3cd; padding:15px; border-left:4px solid #f59e0b;">
        <strong>Important:</strong> this link expires in <strong>{{ expiry }}</strong> and can be used only once.
      </p>
      <div style="background:#f0f9ff; padding:15px; border-left:4px solid #0ea5e9;">
        <h3 style="margin-top:0;">Password tips</h3>
        <ul>
        {% for tip in tips %}
          <li>{{ tip }}</li>
        {% endfor %}
        </ul>
      </div>
    </div>
    <div style="text-align:center; padding:20px; background:#f8f9fa; color:#666; font-size:14px;">
      <p><strong>{{ app_name }}</strong> - Point of Sale</p>
      <p>This email was sent automatically, please do not reply.</p>
    </div>
  </div>
</body>
</html>
"""


# =============================================================================
# Chat (plain text) Templates
# =============================================================================

PASSWORD_RESET_CHAT_TEXT = """*Reset your {app_name} password*

Hi {display_name},

We received a request to reset the password for {subject_email}.
Open this link to choose a new password:
{reset_url}

The link expires in {expiry} and can be used only once.
If you did not request this, ignore this message.

Password tips:
{tips}"""

PASSWORD_TIPS = [
    "Use at least 8 characters",
    "Mix upper and lower case letters, numbers and symbols",
    "Do not reuse a password from another account",
    "Never share your password with anyone",
]

# Fixed-width receipt columns for chat channels
NAME_WIDTH = 20
QTY_WIDTH = 4
PRICE_WIDTH = 12
TOTAL_WIDTH = 13
RECEIPT_WIDTH = NAME_WIDTH + QTY_WIDTH + PRICE_WIDTH + TOTAL_WIDTH + 3

_jinja_env = Environment(
    loader=DictLoader({
        "receipt.html": RECEIPT_EMAIL_HTML,
        "password_reset.html": PASSWORD_RESET_EMAIL_HTML,
    }),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
)


# =============================================================================
# Helpers
# =============================================================================

def format_currency(amount: float, symbol: str = "Rp") -> str:
    """
    Whole-unit currency with "." thousands grouping.

    >>> format_currency(1250000)
    'Rp 1.250.000'

    Raises:
        ValidationError: If the amount is not a finite, printable number
    """
    try:
        rounded = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, OverflowError):
        raise ValidationError(f"Amount cannot be printed: {amount}")
    grouped = f"{abs(rounded):,}".replace(",", ".")
    sign = "-" if rounded < 0 else ""
    return f"{sign}{symbol} {grouped}"


def format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y %H:%M")


def format_expiry(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


def format_receipt_lines(items: list[ReceiptLine], symbol: str = "Rp") -> list[str]:
    """
    Format receipt items as fixed-width rows for chat channels.

    Names longer than the column are truncated so the numbers stay aligned.
    """
    rows = []
    for item in items:
        name = item.name if len(item.name) <= NAME_WIDTH else item.name[:NAME_WIDTH - 1] + "~"
        rows.append(
            f"{name:<{NAME_WIDTH}} "
            f"{item.quantity:>{QTY_WIDTH}} "
            f"{format_currency(item.unit_price, symbol):>{PRICE_WIDTH}} "
            f"{format_currency(item.amount, symbol):>{TOTAL_WIDTH}}"
        )
    return rows


def _summary_row(label: str, value: str) -> str:
    width = max(RECEIPT_WIDTH - len(value), len(label) + 1)
    return f"{label:<{width}}{value}"


def build_reset_url(base_url: str, token: str, subject_email: str) -> str:
    """
    Append token and identity to the reset page URL.

    Both are percent-encoded, so `parse_reset_url` gets back exactly what
    went in.
    """
    scheme, netloc, path, query, fragment = urlsplit(base_url)
    params = urlencode({"token": token, "email": subject_email})
    query = f"{query}&{params}" if query else params
    return urlunsplit((scheme, netloc, path, query, fragment))


def parse_reset_url(url: str) -> tuple[Optional[str], Optional[str]]:
    """Extract (token, email) from a reset link, as the reset page does."""
    params = parse_qs(urlsplit(url).query)
    token = params.get("token", [None])[0]
    email = params.get("email", [None])[0]
    return token, email


@dataclass
class RenderedMessage:
    """Provider-ready content."""
    subject: str
    body: str
    content_type: str = "text/plain"


# =============================================================================
# Formatter
# =============================================================================

class MessageFormatter:
    """
    Renders a logical message for a channel family.

    Example:
        formatter = MessageFormatter(app_name="VibePOS")
        rendered = formatter.render(
            MessageType.RECEIPT, ChannelFamily.EMAIL, payload, display_name="Alice"
        )
    """

    def __init__(self, app_name: str = "VibePOS", currency_symbol: str = "Rp"):
        self.app_name = app_name
        self.currency_symbol = currency_symbol

    def money(self, amount: float) -> str:
        return format_currency(amount, self.currency_symbol)

    def render(
        self,
        message_type: MessageType,
        channel: ChannelFamily,
        payload: Union[ReceiptPayload, PasswordResetPayload],
        display_name: str = "",
    ) -> RenderedMessage:
        """
        Render a message.

        Raises:
            ValidationError: If the payload does not match the message type
                or a receipt has no items
        """
        if message_type == MessageType.RECEIPT:
            if not isinstance(payload, ReceiptPayload):
                raise ValidationError("Receipt message requires a receipt payload")
            if channel == ChannelFamily.EMAIL:
                return self.render_receipt_email(payload)
            return self.render_receipt_chat(payload)

        if message_type == MessageType.PASSWORD_RESET:
            if not isinstance(payload, PasswordResetPayload):
                raise ValidationError("Password reset message requires a reset payload")
            name = display_name or payload.subject_email.split("@")[0]
            if channel == ChannelFamily.EMAIL:
                return self.render_password_reset_email(payload, name)
            return self.render_password_reset_chat(payload, name)

        raise ValidationError(f"Unknown message type: {message_type}")

    # -------------------------------------------------------------------------
    # Receipts
    # -------------------------------------------------------------------------

    def receipt_subject(self, receipt: ReceiptPayload) -> str:
        return f"Receipt {receipt.transaction_number} - {receipt.store.name}"

    def _check_receipt(self, receipt: ReceiptPayload) -> None:
        if not receipt.items:
            raise ValidationError(
                f"Receipt {receipt.transaction_number} has no items"
            )

    def render_receipt_email(self, receipt: ReceiptPayload) -> RenderedMessage:
        self._check_receipt(receipt)
        lines = [
            {
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": self.money(item.unit_price),
                "total": self.money(item.amount),
            }
            for item in receipt.items
        ]
        body = _jinja_env.get_template("receipt.html").render(
            receipt=receipt,
            lines=lines,
            date=format_date(receipt.created_at),
            subtotal=self.money(receipt.subtotal),
            discount=self.money(receipt.discount_amount) if receipt.discount_amount > 0 else None,
            discount_percentage=_trim_number(receipt.discount_percentage),
            tax=self.money(receipt.tax_amount),
            total=self.money(receipt.total_amount),
            app_name=self.app_name,
        )
        return RenderedMessage(
            subject=self.receipt_subject(receipt),
            body=body,
            content_type="text/html",
        )

    def render_receipt_chat(self, receipt: ReceiptPayload) -> RenderedMessage:
        self._check_receipt(receipt)
        rule = "-" * RECEIPT_WIDTH
        header = (
            f"{'Item':<{NAME_WIDTH}} {'Qty':>{QTY_WIDTH}} "
            f"{'Price':>{PRICE_WIDTH}} {'Total':>{TOTAL_WIDTH}}"
        )

        lines = [
            receipt.store.name.center(RECEIPT_WIDTH).rstrip(),
        ]
        if receipt.store.address:
            lines.append(receipt.store.address.center(RECEIPT_WIDTH).rstrip())
        if receipt.store.phone:
            lines.append(f"Tel: {receipt.store.phone}".center(RECEIPT_WIDTH).rstrip())
        lines += [
            "",
            f"Transaction No: {receipt.transaction_number}",
            f"Date: {format_date(receipt.created_at)}",
            f"Cashier: {receipt.cashier_name}",
            f"Customer: {receipt.customer_name}",
            rule,
            header,
            *format_receipt_lines(receipt.items, self.currency_symbol),
            rule,
            _summary_row("Subtotal:", self.money(receipt.subtotal)),
        ]
        if receipt.discount_amount > 0:
            label = "Discount:"
            if receipt.discount_percentage:
                label = f"Discount ({_trim_number(receipt.discount_percentage)}%):"
            lines.append(_summary_row(label, "-" + self.money(receipt.discount_amount)))
        lines += [
            _summary_row("Tax:", self.money(receipt.tax_amount)),
            rule,
            _summary_row("TOTAL:", self.money(receipt.total_amount)),
            "",
            f"Payment: {receipt.payment_method.upper()}",
            rule,
            "Thank you for shopping with us!".center(RECEIPT_WIDTH).rstrip(),
            "Goods sold cannot be returned".center(RECEIPT_WIDTH).rstrip(),
            "unless otherwise agreed".center(RECEIPT_WIDTH).rstrip(),
            f"Powered by {self.app_name}".center(RECEIPT_WIDTH).rstrip(),
        ]
        # WhatsApp renders text inside ``` as monospace
        body = "```\n" + "\n".join(lines) + "\n```"
        return RenderedMessage(subject=self.receipt_subject(receipt), body=body)

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    def password_reset_subject(self) -> str:
        return f"Reset your {self.app_name} password"

    def render_password_reset_email(
        self, reset: PasswordResetPayload, display_name: str
    ) -> RenderedMessage:
        body = _jinja_env.get_template("password_reset.html").render(
            reset=reset,
            display_name=display_name,
            expiry=format_expiry(reset.expires_in_minutes),
            tips=PASSWORD_TIPS,
            app_name=self.app_name,
        )
        return RenderedMessage(
            subject=self.password_reset_subject(),
            body=body,
            content_type="text/html",
        )

    def render_password_reset_chat(
        self, reset: PasswordResetPayload, display_name: str
    ) -> RenderedMessage:
        body = PASSWORD_RESET_CHAT_TEXT.format(
            app_name=self.app_name,
            display_name=display_name,
            subject_email=reset.subject_email,
            reset_url=reset.reset_url,
            expiry=format_expiry(reset.expires_in_minutes),
            tips="\n".join(f"- {tip}" for tip in PASSWORD_TIPS),
        )
        return RenderedMessage(subject=self.password_reset_subject(), body=body)


def _trim_number(value: Optional[float]) -> Optional[str]:
    """10.0 -> '10', 12.5 -> '12.5'."""
    if value is None:
        return None
    return f"{value:g}"
