"""
Data model for the notification and credential dispatch layer.

These models describe what flows between the surrounding point-of-sale CRUD
code and this subsystem: completed sales, reset credentials, dispatch
requests and their results.

Design decisions:
- Using Pydantic for validation and serialization (the HTTP surface reuses them)
- Amounts are plain finite floats in whole currency units; the formatter rounds them
- Enums are str-based so they serialize as their wire values
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union
from pydantic import BaseModel, Field

from shared.errors import ErrorKind


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class ChannelFamily(str, Enum):
    """Rendering surface of a provider: rich HTML email or plain-text chat."""
    EMAIL = "email"
    CHAT = "chat"


class ProviderId(str, Enum):
    """
    Every external messaging provider we can deliver through.

    Two email transports and four WhatsApp gateways.
    """
    MAILKETING = "mailketing"
    RESEND = "resend"
    WAHA = "waha"
    DRIPSENDER = "dripsender"
    STARSENDER = "starsender"
    WABLAS = "wablas"

    @property
    def family(self) -> ChannelFamily:
        if self in (ProviderId.MAILKETING, ProviderId.RESEND):
            return ChannelFamily.EMAIL
        return ChannelFamily.CHAT


class MessageType(str, Enum):
    """Logical kind of message, independent of the delivering channel."""
    RECEIPT = "receipt"
    PASSWORD_RESET = "password_reset"


class DiscountKind(str, Enum):
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


# =============================================================================
# Sale / Receipt
# =============================================================================

class ReceiptLine(BaseModel):
    """A single item line printed on a receipt."""
    name: str = Field(..., description="Product display name")
    quantity: int = Field(..., ge=1, description="Quantity sold")
    unit_price: float = Field(..., ge=0, allow_inf_nan=False, description="Price per unit at time of sale")
    line_total: Optional[float] = Field(
        default=None,
        ge=0,
        allow_inf_nan=False,
        description="Persisted line total; defaults to quantity * unit_price",
    )

    @property
    def amount(self) -> float:
        """The line total as persisted, or derived when not supplied."""
        if self.line_total is not None:
            return self.line_total
        return self.quantity * self.unit_price


class Discount(BaseModel):
    """
    Discount chosen at checkout.

    The cashier enters either an absolute amount or a percentage of the
    subtotal; `amount_for` resolves both to an absolute amount.
    """
    kind: DiscountKind = Field(default=DiscountKind.AMOUNT)
    value: float = Field(default=0, ge=0, allow_inf_nan=False)

    def amount_for(self, subtotal: float) -> float:
        if self.kind == DiscountKind.PERCENTAGE:
            amount = subtotal * min(self.value, 100) / 100
        else:
            amount = self.value
        return min(amount, subtotal)


class SaleTotals(BaseModel):
    """Cart arithmetic performed by the checkout caller before persisting a sale."""
    subtotal: float
    discount_amount: float
    discount_percentage: Optional[float] = None
    tax_amount: float
    total: float

    @classmethod
    def compute(
        cls,
        items: list[ReceiptLine],
        discount: Optional[Discount] = None,
        tax_amount: float = 0,
    ) -> "SaleTotals":
        discount = discount or Discount()
        subtotal = sum(item.amount for item in items)
        discount_amount = discount.amount_for(subtotal)
        return cls(
            subtotal=subtotal,
            discount_amount=discount_amount,
            discount_percentage=discount.value if discount.kind == DiscountKind.PERCENTAGE else None,
            tax_amount=tax_amount,
            total=subtotal - discount_amount + tax_amount,
        )


class StoreIdentity(BaseModel):
    """Store header printed on receipts."""
    name: str = Field(default="VibePOS")
    address: Optional[str] = None
    phone: Optional[str] = None


class CustomerContact(BaseModel):
    """The customer chosen at checkout."""
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class ReceiptPayload(BaseModel):
    """
    Everything the formatter needs to render a receipt.

    `total_amount`, `tax_amount` and `discount_amount` are the persisted
    values of the transaction; the formatter never recomputes them.
    """
    transaction_number: str
    created_at: datetime = Field(default_factory=utcnow)
    cashier_name: str = Field(default="Admin")
    customer_name: str = Field(default="Customer")
    customer_email: Optional[str] = None
    payment_method: str
    discount_amount: float = Field(default=0, ge=0, allow_inf_nan=False)
    discount_percentage: Optional[float] = Field(default=None, ge=0, le=100, allow_inf_nan=False)
    tax_amount: float = Field(default=0, ge=0, allow_inf_nan=False)
    total_amount: float = Field(..., ge=0, allow_inf_nan=False)
    items: list[ReceiptLine] = Field(default_factory=list)
    store: StoreIdentity = Field(default_factory=StoreIdentity)

    @property
    def subtotal(self) -> float:
        """Printed subtotal, derived so that it always reconciles with the total."""
        return self.total_amount - self.tax_amount + self.discount_amount


class CompletedSale(BaseModel):
    """
    Completed-sale event emitted by the checkout flow.

    `customer` is None for an anonymous walk-in sale.
    """
    transaction_number: str
    created_at: datetime = Field(default_factory=utcnow)
    payment_method: str
    discount_amount: float = Field(default=0, ge=0, allow_inf_nan=False)
    discount_percentage: Optional[float] = Field(default=None, allow_inf_nan=False)
    tax_amount: float = Field(default=0, ge=0, allow_inf_nan=False)
    total_amount: float = Field(..., ge=0, allow_inf_nan=False)
    items: list[ReceiptLine] = Field(default_factory=list)
    store: StoreIdentity = Field(default_factory=StoreIdentity)
    cashier_name: str = Field(default="Admin")
    customer: Optional[CustomerContact] = None

    @property
    def is_walk_in(self) -> bool:
        return self.customer is None

    def to_receipt_payload(self) -> ReceiptPayload:
        customer = self.customer or CustomerContact(name="Walk-in Customer")
        return ReceiptPayload(
            transaction_number=self.transaction_number,
            created_at=self.created_at,
            cashier_name=self.cashier_name,
            customer_name=customer.name,
            customer_email=customer.email,
            payment_method=self.payment_method,
            discount_amount=self.discount_amount,
            discount_percentage=self.discount_percentage,
            tax_amount=self.tax_amount,
            total_amount=self.total_amount,
            items=self.items,
            store=self.store,
        )


# =============================================================================
# Password Reset
# =============================================================================

class PasswordResetPayload(BaseModel):
    """Content of a reset notice: the one-time link and its lifetime."""
    reset_url: str
    subject_email: str
    expires_in_minutes: int = Field(default=60, ge=1)


class ResetCredential(BaseModel):
    """
    A single-use, time-bound password reset credential.

    At most one live credential exists per `subject_email`: stores are keyed
    by it and replace on write.
    """
    subject_email: str = Field(..., description="Identity the token is bound to (case preserved)")
    token_value: str = Field(..., description="Opaque token embedded in the reset link")
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, subject_email: str, token_value: str, issued_at: datetime, ttl: timedelta) -> "ResetCredential":
        return cls(
            subject_email=subject_email,
            token_value=token_value,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return not now < self.expires_at


# =============================================================================
# Dispatch
# =============================================================================

class DispatchRequest(BaseModel):
    """
    A single logical send, consumed synchronously by the Dispatcher.

    When `channel_preference_order` is empty the configured default order
    for `channel` is used.
    """
    channel: ChannelFamily = Field(default=ChannelFamily.EMAIL)
    channel_preference_order: list[ProviderId] = Field(default_factory=list)
    recipient_address: str = Field(default="", description="Email address or phone number")
    recipient_display_name: str = Field(default="Customer")
    message_type: MessageType
    payload: Union[ReceiptPayload, PasswordResetPayload]


class ProviderAttempt(BaseModel):
    """Outcome of one provider inside a dispatch."""
    provider: ProviderId
    success: bool
    confirmed: bool = True
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None


class DispatchResult(BaseModel):
    """
    Result returned to the caller of `dispatch`.

    `confirmed` is False when the provider that succeeded cannot observe the
    remote response and reports optimistic success.
    """
    succeeded: bool
    provider_used: Optional[ProviderId] = None
    diagnostic: Optional[str] = None
    error: Optional[ErrorKind] = None
    confirmed: bool = False
    attempts: list[ProviderAttempt] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    def __str__(self) -> str:
        if self.succeeded:
            return f"✓ sent via {self.provider_used.value}"
        return f"✗ {self.error}: {self.diagnostic}"
