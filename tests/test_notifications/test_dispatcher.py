"""
Tests for the dispatcher.

Recording adapters stand in for real providers, so these tests focus on
validation, provider ordering, fallback and the reported diagnostics.
"""

import pytest

from notifications.dispatcher import Dispatcher
from shared.errors import ErrorKind
from shared.models import (
    ChannelFamily,
    DispatchRequest,
    MessageType,
    PasswordResetPayload,
    ProviderId,
)


@pytest.fixture
def receipt_request(receipt_payload) -> DispatchRequest:
    return DispatchRequest(
        channel=ChannelFamily.EMAIL,
        recipient_address="alice@example.com",
        recipient_display_name="Alice",
        message_type=MessageType.RECEIPT,
        payload=receipt_payload,
    )


@pytest.fixture
def chat_receipt_request(receipt_payload) -> DispatchRequest:
    return DispatchRequest(
        channel=ChannelFamily.CHAT,
        recipient_address="081234567890",
        message_type=MessageType.RECEIPT,
        payload=receipt_payload,
    )


class TestDispatchSuccess:
    """Tests for the happy path."""

    def test_first_provider_used(self, dispatcher: Dispatcher, receipt_request, mailketing, resend):
        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is True
        assert result.provider_used == ProviderId.MAILKETING
        assert result.confirmed is True
        assert mailketing.get_sent_count() == 1
        assert resend.get_sent_count() == 0

    def test_renders_for_channel_family(self, dispatcher, receipt_request, chat_receipt_request, mailketing, waha):
        """Test email gets HTML and chat gets plain text."""
        dispatcher.dispatch(receipt_request)
        dispatcher.dispatch(chat_receipt_request)

        _, email_subject, email_body = mailketing.sent_messages[0]
        _, _, chat_body = waha.sent_messages[0]
        assert email_subject == "Receipt TRX-0001 - Toko Maju"
        assert email_body.startswith("<!DOCTYPE html>")
        assert chat_body.startswith("```")

    def test_explicit_preference_order(self, dispatcher, receipt_request, mailketing, resend):
        request = receipt_request.model_copy(update={"channel_preference_order": [ProviderId.RESEND]})

        result = dispatcher.dispatch(request)

        assert result.provider_used == ProviderId.RESEND
        assert mailketing.get_sent_count() == 0

    def test_optimistic_success_is_reported(self, adapter_factory, registry_factory, formatter, receipt_request):
        """Test an unconfirmable send is a success with a diagnostic."""
        optimistic = adapter_factory(ProviderId.MAILKETING, optimistic=True)
        dispatcher = Dispatcher(registry_factory(optimistic), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is True
        assert result.confirmed is False
        assert "cannot be confirmed" in result.diagnostic


class TestFallback:
    """Tests for walking the provider order."""

    def test_primary_fails_secondary_succeeds(self, adapter_factory, registry_factory, formatter, receipt_request):
        """Test primary TransportFailure, secondary success: provider_used is the secondary."""
        primary = adapter_factory(ProviderId.MAILKETING, fail=True)
        secondary = adapter_factory(ProviderId.RESEND)
        dispatcher = Dispatcher(registry_factory(primary, secondary), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is True
        assert result.provider_used == ProviderId.RESEND
        assert [a.provider for a in result.attempts] == [ProviderId.MAILKETING, ProviderId.RESEND]
        assert result.attempts[0].error == ErrorKind.TRANSPORT_FAILURE
        assert secondary.get_sent_count() == 1

    def test_unconfigured_provider_skipped(self, adapter_factory, registry_factory, formatter, receipt_request):
        """Test a provider without configuration is skipped, not fatal."""
        secondary = adapter_factory(ProviderId.RESEND)
        dispatcher = Dispatcher(registry_factory(secondary), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is True
        assert result.provider_used == ProviderId.RESEND
        assert result.attempts[0].error == ErrorKind.PROVIDER_UNAVAILABLE

    def test_no_configured_providers(self, registry_factory, formatter, receipt_request):
        """Test no configured providers: failure with ProviderUnavailable, no raise."""
        dispatcher = Dispatcher(registry_factory(), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is False
        assert result.error == ErrorKind.PROVIDER_UNAVAILABLE
        assert len(result.attempts) == 2

    def test_empty_order(self, registry_factory, formatter, chat_receipt_request):
        """Test a family with no provider in its order reports unavailability."""
        dispatcher = Dispatcher(registry_factory(chat_order=[]), formatter)

        result = dispatcher.dispatch(chat_receipt_request)

        assert result.succeeded is False
        assert result.error == ErrorKind.PROVIDER_UNAVAILABLE
        assert result.attempts == []

    def test_transport_failure_outranks_unavailable(self, adapter_factory, registry_factory, formatter, receipt_request):
        """Test the most actionable diagnostic is reported when all fail."""
        failing = adapter_factory(ProviderId.RESEND, fail=True)
        dispatcher = Dispatcher(registry_factory(failing), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is False
        assert result.error == ErrorKind.TRANSPORT_FAILURE
        assert result.diagnostic.startswith("resend:")
        assert "HTTP 503" in result.diagnostic

    def test_adapter_bug_does_not_escape(self, adapter_factory, registry_factory, formatter, receipt_request):
        """Test an adapter raising unexpectedly is contained as a failure."""
        broken = adapter_factory(ProviderId.MAILKETING)
        broken.send = lambda *args: 1 / 0
        fallback = adapter_factory(ProviderId.RESEND)
        dispatcher = Dispatcher(registry_factory(broken, fallback), formatter)

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is True
        assert result.provider_used == ProviderId.RESEND
        assert "Unexpected error" in result.attempts[0].detail


class TestValidation:
    """Tests for requests rejected before any send."""

    def test_missing_recipient(self, dispatcher, receipt_request, mailketing):
        result = dispatcher.dispatch(receipt_request.model_copy(update={"recipient_address": "  "}))

        assert result.succeeded is False
        assert result.error == ErrorKind.VALIDATION
        assert mailketing.get_sent_count() == 0

    def test_invalid_email(self, dispatcher, receipt_request):
        result = dispatcher.dispatch(receipt_request.model_copy(update={"recipient_address": "alice@"}))
        assert result.error == ErrorKind.VALIDATION

    def test_invalid_phone(self, dispatcher, chat_receipt_request):
        result = dispatcher.dispatch(chat_receipt_request.model_copy(update={"recipient_address": "0812"}))
        assert result.error == ErrorKind.VALIDATION

    def test_wrong_family_in_order(self, dispatcher, receipt_request):
        """Test a chat gateway cannot be asked to deliver email."""
        request = receipt_request.model_copy(update={"channel_preference_order": [ProviderId.WAHA]})

        result = dispatcher.dispatch(request)

        assert result.error == ErrorKind.VALIDATION
        assert "waha" in result.diagnostic

    def test_payload_type_mismatch(self, dispatcher, receipt_request):
        payload = PasswordResetPayload(reset_url="https://x/reset", subject_email="alice@example.com")
        result = dispatcher.dispatch(receipt_request.model_copy(update={"payload": payload}))

        assert result.error == ErrorKind.VALIDATION

    def test_empty_receipt(self, dispatcher, receipt_request, receipt_payload, mailketing):
        payload = receipt_payload.model_copy(update={"items": []})
        result = dispatcher.dispatch(receipt_request.model_copy(update={"payload": payload}))

        assert result.error == ErrorKind.VALIDATION
        assert mailketing.get_sent_count() == 0

    def test_unprintable_amount(self, dispatcher, receipt_request, receipt_payload, mailketing):
        """Test a non-finite total that slipped past validation fails as a result."""
        payload = receipt_payload.model_copy(update={"total_amount": float("inf")})

        result = dispatcher.dispatch(receipt_request.model_copy(update={"payload": payload}))

        assert result.succeeded is False
        assert result.error == ErrorKind.VALIDATION
        assert mailketing.get_sent_count() == 0

    def test_formatter_bug_does_not_escape(self, dispatcher, receipt_request, mailketing):
        def broken_render(*args, **kwargs):
            raise KeyError("template")

        dispatcher.formatter.render = broken_render

        result = dispatcher.dispatch(receipt_request)

        assert result.succeeded is False
        assert result.error == ErrorKind.VALIDATION
        assert "could not be rendered" in result.diagnostic
        assert mailketing.get_sent_count() == 0
