"""
Password reset token issuance and verification.

A reset token is bound to one identity and lives for a limited time. Tokens
are minted here, stored through a CredentialStore, and checked when the user
comes back through the reset link.

Token format (segments joined with "."):
    <identity, urlsafe base64 without padding>.<issued at, epoch ms>.<random>

The first two segments are reversible, which is what the optional structural
fallback uses when the store has no record (e.g. a link opened on another
device of a browser-only deployment). The random segment makes every token
unguessable.

Design decisions:
- One configurable policy (TokenPolicy) for TTL, cooldown and the fallback
- Cooldown check-and-set is atomic per identity, and so is redeeming a token
- Per-identity locks come from a fixed stripe, so memory does not grow with
  the number of identities
- Consumed tokens are remembered so the structural fallback cannot replay them
- The clock is injectable so expiry and cooldown are testable without sleeping
- Nothing here raises for normal operation: callers get typed results
"""

import base64
import binascii
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Union

from pydantic import BaseModel

from shared.credential_store import CredentialStore
from shared.errors import RateLimited, TokenInvalid
from shared.models import ResetCredential, utcnow
from shared.settings import Settings

logger = logging.getLogger("token_service")

Clock = Callable[[], datetime]

TOKEN_SEPARATOR = "."
RANDOM_BYTES = 16
LOCK_STRIPES = 64


class TokenStatus(str, Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    EXPIRED = "expired"


class TokenVerification(BaseModel):
    """Outcome of checking a token for an identity."""
    valid: bool
    reason: TokenStatus
    via_fallback: bool = False

    def as_error(self) -> Optional[TokenInvalid]:
        """The matching TokenInvalid error, or None when the token is valid."""
        if self.valid:
            return None
        messages = {
            TokenStatus.NOT_FOUND: "Reset link is invalid or has already been used",
            TokenStatus.MISMATCH: "Reset link is invalid",
            TokenStatus.EXPIRED: "Reset link has expired, please request a new one",
        }
        return TokenInvalid(messages[self.reason], reason=self.reason.value)


@dataclass
class TokenPolicy:
    """Lifetime and rate rules shared by both verification paths."""
    ttl: timedelta = field(default_factory=lambda: timedelta(hours=1))
    cooldown: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    structural_fallback: bool = False
    fallback_ttl: timedelta = field(default_factory=lambda: timedelta(hours=24))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenPolicy":
        return cls(
            ttl=timedelta(minutes=settings.RESET_TOKEN_TTL_MINUTES),
            cooldown=timedelta(seconds=settings.RESET_TOKEN_COOLDOWN_SECONDS),
            structural_fallback=settings.RESET_TOKEN_STRUCTURAL_FALLBACK,
            fallback_ttl=timedelta(hours=settings.RESET_TOKEN_FALLBACK_TTL_HOURS),
        )

    @property
    def ttl_minutes(self) -> int:
        return max(1, int(self.ttl.total_seconds() // 60))


# =============================================================================
# Token encoding
# =============================================================================

def _b64encode(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8", "surrogatepass")).decode("ascii").rstrip("=")


def _b64decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def mint_token(subject_email: str, issued_at: datetime) -> str:
    millis = int(issued_at.timestamp() * 1000)
    return TOKEN_SEPARATOR.join([
        _b64encode(subject_email),
        str(millis),
        secrets.token_urlsafe(RANDOM_BYTES),
    ])


def decode_token(token_value: str) -> Optional[tuple[str, datetime]]:
    """
    Recover (identity, issued_at) from a token.

    Returns None for anything that is not a well-formed token.
    """
    parts = token_value.split(TOKEN_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        return None
    encoded_email, millis, _ = parts
    try:
        subject_email = _b64decode(encoded_email)
        issued_at = datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
    except (binascii.Error, UnicodeDecodeError, ValueError, OverflowError, OSError):
        return None
    if not subject_email:
        return None
    return subject_email, issued_at


def _mask(token_value: str) -> str:
    return token_value[:8] + "..."


def _tokens_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(
        expected.encode("utf-8", "surrogatepass"),
        presented.encode("utf-8", "surrogatepass"),
    )


@dataclass
class Redemption:
    """A verification plus, when valid, the credential it removed from the store."""
    token_value: str
    verification: TokenVerification
    credential: Optional[ResetCredential] = None


# =============================================================================
# Service
# =============================================================================

class TokenService:
    """
    Issues, verifies and consumes reset tokens.

    Example:
        tokens = TokenService(InMemoryCredentialStore())
        credential = tokens.issue("alice@example.com")
        tokens.verify("alice@example.com", credential.token_value).valid  # True
    """

    def __init__(
        self,
        store: CredentialStore,
        policy: Optional[TokenPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.policy = policy or TokenPolicy()
        self.clock = clock

        # Last issuance per identity, only while inside the cooldown window
        self._last_issued: dict[str, datetime] = {}
        self._last_issued_lock = threading.Lock()
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

        # Tokens already used: token_value -> issued_at
        self._consumed: dict[str, datetime] = {}
        self._consumed_lock = threading.Lock()

        if self.policy.structural_fallback:
            logger.warning(
                "Structural token fallback is enabled: links are accepted on identity "
                "and timestamp alone, so anyone who knows an address can forge one"
            )

    def _lock_for(self, subject_email: str) -> threading.Lock:
        return self._locks[hash(subject_email) % LOCK_STRIPES]

    # -------------------------------------------------------------------------
    # Cooldown
    # -------------------------------------------------------------------------

    def _last_issued_at(self, subject_email: str) -> Optional[datetime]:
        # A persistent store remembers issuances from before a restart
        with self._last_issued_lock:
            last = self._last_issued.get(subject_email)
        stored = self.store.get(subject_email)
        if stored is not None and (last is None or stored.issued_at > last):
            last = stored.issued_at
        return last

    def _remember_issue(self, subject_email: str, issued_at: datetime) -> None:
        cutoff = issued_at - self.policy.cooldown
        with self._last_issued_lock:
            self._last_issued[subject_email] = issued_at
            for email in [e for e, t in self._last_issued.items() if t <= cutoff]:
                del self._last_issued[email]

    def cooldown_remaining(self, subject_email: str) -> float:
        """Seconds until another token may be issued for this identity."""
        last = self._last_issued_at(subject_email)
        if last is None:
            return 0.0
        remaining = (last + self.policy.cooldown - self.clock()).total_seconds()
        return max(0.0, remaining)

    def in_cooldown(self, subject_email: str) -> bool:
        return self.cooldown_remaining(subject_email) > 0

    # -------------------------------------------------------------------------
    # Issue / verify / consume
    # -------------------------------------------------------------------------

    def issue(self, subject_email: str) -> Union[ResetCredential, RateLimited]:
        """
        Mint and store a new credential, replacing any previous one.

        Returns RateLimited (without touching the store) when the previous
        issuance for this identity is inside the cooldown window.
        """
        with self._lock_for(subject_email):
            remaining = self.cooldown_remaining(subject_email)
            if remaining > 0:
                logger.warning(
                    f"Reset for {subject_email} requested again within cooldown "
                    f"({remaining:.1f}s left)"
                )
                return RateLimited(
                    f"Please wait {remaining:.0f} seconds before requesting another reset link",
                    retry_after_seconds=remaining,
                )

            now = self.clock()
            credential = ResetCredential.new(
                subject_email=subject_email,
                token_value=mint_token(subject_email, now),
                issued_at=now,
                ttl=self.policy.ttl,
            )
            self.store.put(credential)
            self._remember_issue(subject_email, now)

        logger.info(
            f"Issued reset token {_mask(credential.token_value)} for {subject_email}, "
            f"expires {credential.expires_at.isoformat()}"
        )
        return credential

    def verify(self, subject_email: str, token_value: str) -> TokenVerification:
        """Check a token against the store, then the structural fallback if enabled."""
        return self._check(subject_email, token_value, self.store.get(subject_email))

    def _check(
        self,
        subject_email: str,
        token_value: str,
        stored: Optional[ResetCredential],
    ) -> TokenVerification:
        now = self.clock()
        if stored is not None:
            if not _tokens_match(stored.token_value, token_value):
                return TokenVerification(valid=False, reason=TokenStatus.MISMATCH)
            if stored.is_expired(now):
                return TokenVerification(valid=False, reason=TokenStatus.EXPIRED)
            return TokenVerification(valid=True, reason=TokenStatus.VALID)

        if not self.policy.structural_fallback:
            return TokenVerification(valid=False, reason=TokenStatus.NOT_FOUND)
        return self._verify_structurally(subject_email, token_value, now)

    def _verify_structurally(
        self, subject_email: str, token_value: str, now: datetime
    ) -> TokenVerification:
        decoded = decode_token(token_value)
        if decoded is None:
            return TokenVerification(valid=False, reason=TokenStatus.NOT_FOUND, via_fallback=True)

        token_email, issued_at = decoded
        with self._consumed_lock:
            consumed = token_value in self._consumed
        if token_email != subject_email or consumed or issued_at > now:
            return TokenVerification(valid=False, reason=TokenStatus.NOT_FOUND, via_fallback=True)

        if not now - issued_at < self.policy.fallback_ttl:
            return TokenVerification(valid=False, reason=TokenStatus.EXPIRED, via_fallback=True)

        logger.info(f"Accepted reset token for {subject_email} via structural fallback")
        return TokenVerification(valid=True, reason=TokenStatus.VALID, via_fallback=True)

    def redeem(self, subject_email: str, token_value: str) -> Redemption:
        """
        Verify a token and, when valid, consume it in the same step.

        Of several concurrent redemptions of one token, exactly one is valid.
        The removed credential is returned so a failed password update can
        hand it back through `restore`.
        """
        with self._lock_for(subject_email):
            stored = self.store.get(subject_email)
            verification = self._check(subject_email, token_value, stored)
            if verification.valid:
                self.store.delete(subject_email)
                self._tombstone(token_value, stored.token_value if stored else None)

        if verification.valid:
            logger.info(f"Redeemed reset token for {subject_email}")
        return Redemption(
            token_value=token_value,
            verification=verification,
            credential=stored if verification.valid else None,
        )

    def restore(self, redemption: Redemption) -> bool:
        """
        Undo a valid `redeem`: the token may be used again.

        The stored credential is not put back when a newer one was issued in
        the meantime. Returns True if the token is usable again.
        """
        if not redemption.verification.valid:
            return False
        credential = redemption.credential
        if credential is None:
            # Redeemed through the structural fallback, only the tombstone to lift
            with self._consumed_lock:
                self._consumed.pop(redemption.token_value, None)
            return True

        with self._lock_for(credential.subject_email):
            if self.store.get(credential.subject_email) is not None:
                return False
            self.store.put(credential)
            with self._consumed_lock:
                self._consumed.pop(credential.token_value, None)
        logger.info(f"Restored reset credential for {credential.subject_email}")
        return True

    def consume(self, subject_email: str, token_value: Optional[str] = None) -> bool:
        """
        Invalidate the credential for an identity after a successful reset.

        Returns True if a stored credential was removed.
        """
        with self._lock_for(subject_email):
            stored = self.store.get(subject_email)
            removed = self.store.delete(subject_email)
            self._tombstone(token_value, stored.token_value if stored else None)

        logger.info(f"Consumed reset credential for {subject_email}")
        return removed

    def _tombstone(self, *token_values: Optional[str]) -> None:
        with self._consumed_lock:
            for used_token in [t for t in token_values if t]:
                decoded = decode_token(used_token)
                self._consumed[used_token] = decoded[1] if decoded else self.clock()
            self._prune_consumed()

    def _prune_consumed(self) -> None:
        # Past the fallback TTL a token is rejected on age alone
        cutoff = self.clock() - self.policy.fallback_ttl
        for used_token in [t for t, issued in self._consumed.items() if issued < cutoff]:
            del self._consumed[used_token]
