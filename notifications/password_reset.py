"""
Forgot-password flow built on the token service and the dispatcher.

1. request_reset: validate the address, check the cooldown, issue a token,
   email the reset link
2. verify: check the token from the link
3. complete_reset: check the new password, redeem the token, then update the
   password in the identity store (the token is handed back if that fails)

The identity store itself belongs to the surrounding application; it is
passed in as a callable.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from notifications.dispatcher import Dispatcher
from notifications.tokens import TokenService, TokenVerification
from shared.channels import is_valid_email
from shared.errors import ErrorKind, RateLimited, ValidationError
from shared.models import (
    ChannelFamily,
    DispatchRequest,
    DispatchResult,
    MessageType,
    PasswordResetPayload,
)
from shared.templates import build_reset_url

logger = logging.getLogger("password_reset")

MIN_PASSWORD_LENGTH = 6

# (subject_email, new_password) -> None; raises on failure
PasswordUpdater = Callable[[str, str], None]


@dataclass
class ResetRequestOutcome:
    accepted: bool
    message: str
    error: Optional[ErrorKind] = None
    result: Optional[DispatchResult] = None
    retry_after_seconds: float = 0.0


class PasswordResetService:
    """
    Example:
        service = PasswordResetService(tokens, dispatcher, "https://pos.example.com/reset-password")
        outcome = service.request_reset("alice@example.com")
    """

    def __init__(self, tokens: TokenService, dispatcher: Dispatcher, reset_url_base: str):
        self.tokens = tokens
        self.dispatcher = dispatcher
        self.reset_url_base = reset_url_base

    def request_reset(self, email: str) -> ResetRequestOutcome:
        email = email.strip()
        if not is_valid_email(email):
            return ResetRequestOutcome(
                accepted=False,
                message="Please enter a valid email address",
                error=ErrorKind.VALIDATION,
            )

        # Checked before anything is formatted or sent
        if self.tokens.in_cooldown(email):
            return self._rate_limited(self.tokens.cooldown_remaining(email))

        issued = self.tokens.issue(email)
        if isinstance(issued, RateLimited):
            return self._rate_limited(issued.retry_after_seconds)

        request = DispatchRequest(
            channel=ChannelFamily.EMAIL,
            recipient_address=email,
            recipient_display_name=email.split("@")[0],
            message_type=MessageType.PASSWORD_RESET,
            payload=PasswordResetPayload(
                reset_url=build_reset_url(self.reset_url_base, issued.token_value, email),
                subject_email=email,
                expires_in_minutes=self.tokens.policy.ttl_minutes,
            ),
        )
        result = self.dispatcher.dispatch(request)
        if not result.succeeded:
            logger.error(f"Reset link for {email} could not be sent: {result.diagnostic}")
            return ResetRequestOutcome(
                accepted=False,
                message=f"Failed to send reset email: {result.diagnostic}",
                error=result.error,
                result=result,
            )

        return ResetRequestOutcome(
            accepted=True,
            message=f"A password reset link has been sent to {email}",
            result=result,
        )

    def _rate_limited(self, retry_after: float) -> ResetRequestOutcome:
        return ResetRequestOutcome(
            accepted=False,
            message=f"Please wait {retry_after:.0f} seconds before requesting another reset link",
            error=ErrorKind.RATE_LIMITED,
            retry_after_seconds=retry_after,
        )

    def verify(self, email: str, token: str) -> TokenVerification:
        return self.tokens.verify(email, token)

    def complete_reset(
        self,
        email: str,
        token: str,
        new_password: str,
        update_password: PasswordUpdater,
    ) -> None:
        """
        Set a new password for the identity bound to a valid token.

        Raises:
            ValidationError: If the new password is too short
            TokenInvalid: If the token is missing, wrong or expired
        """
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )

        redemption = self.tokens.redeem(email, token)
        error = redemption.verification.as_error()
        if error is not None:
            logger.warning(f"Reset for {email} rejected: {redemption.verification.reason.value}")
            raise error

        try:
            update_password(email, new_password)
        except Exception:
            logger.error(f"Password update for {email} failed, reset link stays valid")
            self.tokens.restore(redemption)
            raise
        logger.info(f"Password reset completed for {email}")
