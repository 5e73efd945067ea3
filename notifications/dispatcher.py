"""
Dispatcher: one logical message, many possible providers.

Given a DispatchRequest the dispatcher:
1. Validates the recipient, the provider order and the payload
2. Renders the message once for the request's channel family
3. Walks the provider order, sending through each adapter until one succeeds
4. Reports the most actionable failure when every provider failed

Design decisions:
- `dispatch` never raises; every failure is a DispatchResult with an ErrorKind
- Unconfigured providers are skipped, transport failures fall through to the
  next provider, validation failures stop before any send
- Provider attempts inside one dispatch are strictly sequential
"""

import logging
from typing import Optional

from shared.channels import (
    ProviderRegistry,
    SendOutcome,
    is_valid_email,
    is_valid_whatsapp_number,
)
from shared.errors import (
    ACTIONABILITY,
    ErrorKind,
    ProviderUnavailable,
    ValidationError,
)
from shared.models import (
    ChannelFamily,
    DispatchRequest,
    DispatchResult,
    MessageType,
    PasswordResetPayload,
    ProviderAttempt,
    ProviderId,
    ReceiptPayload,
)
from shared.templates import MessageFormatter

logger = logging.getLogger("dispatcher")

PAYLOAD_TYPES = {
    MessageType.RECEIPT: ReceiptPayload,
    MessageType.PASSWORD_RESET: PasswordResetPayload,
}


class Dispatcher:
    """
    Sends a DispatchRequest through the first provider that accepts it.

    Example:
        dispatcher = Dispatcher(ProviderRegistry.from_settings(settings), MessageFormatter())
        result = dispatcher.dispatch(request)
        if not result.succeeded:
            show_warning(result.diagnostic)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        formatter: Optional[MessageFormatter] = None,
        country_code: str = "62",
    ):
        self.registry = registry
        self.formatter = formatter or MessageFormatter()
        self.country_code = country_code

    def dispatch(self, request: DispatchRequest) -> DispatchResult:
        try:
            order = self._validate(request)
            rendered = self.formatter.render(
                request.message_type,
                request.channel,
                request.payload,
                display_name=request.recipient_display_name,
            )
        except ValidationError as e:
            logger.warning(f"Rejected {request.message_type.value} dispatch: {e.message}")
            return DispatchResult(succeeded=False, error=e.kind, diagnostic=e.message)
        except Exception as e:
            logger.exception(f"Could not render {request.message_type.value} message")
            return DispatchResult(
                succeeded=False,
                error=ErrorKind.VALIDATION,
                diagnostic=f"Message could not be rendered: {e}",
            )

        if not order:
            message = f"No {request.channel.value} provider is configured"
            logger.error(message)
            return DispatchResult(
                succeeded=False,
                error=ErrorKind.PROVIDER_UNAVAILABLE,
                diagnostic=message,
            )

        attempts: list[ProviderAttempt] = []
        for provider_id in order:
            try:
                adapter = self.registry.resolve(provider_id)
            except ProviderUnavailable as e:
                logger.info(f"Skipping {provider_id.value}: {e.message}")
                attempts.append(ProviderAttempt(
                    provider=provider_id,
                    success=False,
                    confirmed=False,
                    error=e.kind,
                    detail=e.message,
                ))
                continue

            outcome = self._send(adapter, request, rendered.subject, rendered.body)
            attempts.append(ProviderAttempt(
                provider=provider_id,
                success=outcome.success,
                confirmed=outcome.confirmed,
                error=outcome.error,
                detail=outcome.detail,
            ))
            if outcome.success:
                return self._succeeded(provider_id, outcome, attempts)
            logger.warning(f"{provider_id.value} failed, trying next provider: {outcome.detail}")

        return self._exhausted(attempts)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(self, request: DispatchRequest) -> list[ProviderId]:
        """
        Check the request and return the provider order to walk.

        Raises:
            ValidationError: If the request cannot be sent as given
        """
        address = request.recipient_address.strip()
        if not address:
            raise ValidationError("Recipient address is required")

        if request.channel == ChannelFamily.EMAIL:
            if not is_valid_email(address):
                raise ValidationError(f"Invalid email address: {address}")
        elif not is_valid_whatsapp_number(address, self.country_code):
            raise ValidationError(f"Invalid WhatsApp number: {address}")

        expected = PAYLOAD_TYPES.get(request.message_type)
        if expected is None or not isinstance(request.payload, expected):
            raise ValidationError(
                f"Payload does not match message type {request.message_type.value}"
            )

        order = list(request.channel_preference_order) or self.registry.default_order(request.channel)
        wrong_family = [p.value for p in order if p.family != request.channel]
        if wrong_family:
            raise ValidationError(
                f"Providers {', '.join(wrong_family)} cannot deliver {request.channel.value} messages"
            )
        return order

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def _send(self, adapter, request: DispatchRequest, subject: str, body: str) -> SendOutcome:
        try:
            return adapter.send(request.recipient_address, subject, body)
        except Exception as e:
            # Adapters report failures as outcomes; anything else is a bug in one
            logger.exception(f"Adapter {adapter.provider_id.value} raised unexpectedly")
            return SendOutcome(
                success=False,
                provider=adapter.provider_id,
                destination=request.recipient_address,
                confirmed=False,
                error=ErrorKind.TRANSPORT_FAILURE,
                detail=f"Unexpected error: {e}",
            )

    def _succeeded(
        self,
        provider_id: ProviderId,
        outcome: SendOutcome,
        attempts: list[ProviderAttempt],
    ) -> DispatchResult:
        diagnostic = None
        if not outcome.confirmed:
            diagnostic = f"Sent via {provider_id.value}; delivery cannot be confirmed"
        logger.info(f"Dispatched via {provider_id.value} to {outcome.destination}")
        return DispatchResult(
            succeeded=True,
            provider_used=provider_id,
            confirmed=outcome.confirmed,
            diagnostic=diagnostic,
            attempts=attempts,
        )

    def _exhausted(self, attempts: list[ProviderAttempt]) -> DispatchResult:
        worst = min(attempts, key=lambda a: ACTIONABILITY[a.error or ErrorKind.TRANSPORT_FAILURE])
        diagnostic = f"{worst.provider.value}: {worst.detail}"
        logger.error(f"All providers failed ({len(attempts)} tried). {diagnostic}")
        return DispatchResult(
            succeeded=False,
            error=worst.error or ErrorKind.TRANSPORT_FAILURE,
            diagnostic=diagnostic,
            attempts=attempts,
        )
