"""
Tests for the data model.

These tests verify cart arithmetic, receipt payload derivation and the
credential lifetime rules.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ErrorKind
from shared.models import (
    ChannelFamily,
    CompletedSale,
    Discount,
    DiscountKind,
    DispatchResult,
    ProviderId,
    ReceiptLine,
    ReceiptPayload,
    ResetCredential,
    SaleTotals,
)


class TestProviderId:
    """Tests for provider family mapping."""

    def test_email_providers(self):
        """Test that Mailketing and Resend are email transports."""
        assert ProviderId.MAILKETING.family == ChannelFamily.EMAIL
        assert ProviderId.RESEND.family == ChannelFamily.EMAIL

    @pytest.mark.parametrize("provider", ["waha", "dripsender", "starsender", "wablas"])
    def test_chat_providers(self, provider):
        """Test that every WhatsApp gateway is a chat transport."""
        assert ProviderId(provider).family == ChannelFamily.CHAT


class TestSaleTotals:
    """Tests for caller-side cart arithmetic."""

    def test_single_line_with_tax(self):
        """Test [A, qty 2, price 1000], discount 0, tax 100."""
        totals = SaleTotals.compute(
            [ReceiptLine(name="A", quantity=2, unit_price=1000)],
            tax_amount=100,
        )

        assert totals.subtotal == 2000
        assert totals.discount_amount == 0
        assert totals.total == 2100

    def test_percentage_discount(self):
        """Test a 10% discount is resolved against the subtotal."""
        totals = SaleTotals.compute(
            [ReceiptLine(name="A", quantity=1, unit_price=50000)],
            discount=Discount(kind=DiscountKind.PERCENTAGE, value=10),
        )

        assert totals.discount_amount == 5000
        assert totals.discount_percentage == 10
        assert totals.total == 45000

    def test_amount_discount_clamped_to_subtotal(self):
        """Test an absolute discount never exceeds the subtotal."""
        discount = Discount(kind=DiscountKind.AMOUNT, value=99999)
        assert discount.amount_for(1500) == 1500

    def test_line_total_overrides_derived_amount(self):
        """Test a persisted line total is used as-is."""
        line = ReceiptLine(name="B", quantity=3, unit_price=1000, line_total=2500)
        assert line.amount == 2500


class TestReceiptPayload:
    """Tests for the printed subtotal derivation."""

    def test_subtotal_reconciles_with_total(self, receipt_payload: ReceiptPayload):
        """Test subtotal = total - tax + discount."""
        assert receipt_payload.subtotal == 2000

    def test_subtotal_with_discount(self, receipt_payload: ReceiptPayload):
        """Test the discount is added back to the subtotal."""
        payload = receipt_payload.model_copy(update={"discount_amount": 500, "total_amount": 1600})
        assert payload.subtotal == 2000

    def test_quantity_must_be_positive(self):
        """Test that zero-quantity lines are rejected."""
        with pytest.raises(PydanticValidationError):
            ReceiptLine(name="A", quantity=0, unit_price=1000)

    @pytest.mark.parametrize("amount", ["inf", "-inf", "nan"])
    def test_non_finite_amounts_rejected(self, amount):
        with pytest.raises(PydanticValidationError):
            ReceiptPayload.model_validate({
                "transaction_number": "TRX-0001",
                "payment_method": "cash",
                "total_amount": amount,
            })

    def test_non_finite_line_price_rejected(self):
        with pytest.raises(PydanticValidationError):
            ReceiptLine(name="A", quantity=1, unit_price=float("inf"))


class TestCompletedSale:
    """Tests for turning a checkout event into a receipt payload."""

    def test_to_receipt_payload(self, completed_sale: CompletedSale):
        """Test that customer and totals carry over."""
        payload = completed_sale.to_receipt_payload()

        assert payload.transaction_number == "TRX-0002"
        assert payload.customer_name == "Alice"
        assert payload.customer_email == "alice@example.com"
        assert payload.total_amount == 2100
        assert payload.cashier_name == "Admin"

    def test_walk_in_sale(self, completed_sale: CompletedSale):
        """Test that a sale without a customer is a walk-in."""
        walk_in = completed_sale.model_copy(update={"customer": None})

        assert walk_in.is_walk_in is True
        assert walk_in.to_receipt_payload().customer_name == "Walk-in Customer"


class TestResetCredential:
    """Tests for credential lifetime."""

    def test_expiry_boundary(self):
        """Test a credential is live strictly before expires_at."""
        issued = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        credential = ResetCredential.new("alice@example.com", "tok", issued, timedelta(hours=1))

        assert credential.expires_at == issued + timedelta(hours=1)
        assert credential.is_expired(issued + timedelta(minutes=59)) is False
        assert credential.is_expired(issued + timedelta(hours=1)) is True


class TestDispatchResult:
    """Tests for the result summary string."""

    def test_success_str(self):
        result = DispatchResult(succeeded=True, provider_used=ProviderId.RESEND)
        assert str(result) == "✓ sent via resend"

    def test_failure_carries_error_kind(self):
        result = DispatchResult(
            succeeded=False,
            error=ErrorKind.PROVIDER_UNAVAILABLE,
            diagnostic="No email provider is configured",
        )
        assert result.error == ErrorKind.PROVIDER_UNAVAILABLE
        assert "No email provider" in str(result)
