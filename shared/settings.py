"""
Environment-level configuration.

Every provider reads its endpoint, credential and optional device/session
identifier from here. A provider whose required values are missing is
reported as unavailable by the provider registry; nothing here raises for
absent provider configuration.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import ChannelFamily, ProviderId


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
    return bool(v)


def _split_providers(value: str) -> list[ProviderId]:
    return [ProviderId(part.strip().lower()) for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    # Branding / formatting
    APP_NAME: str = "VibePOS"
    CURRENCY_SYMBOL: str = "Rp"
    PHONE_COUNTRY_CODE: str = "62"

    # Outbound HTTP
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Email providers, tried in this order
    EMAIL_PROVIDER_ORDER: str = "mailketing,resend"

    # Mailketing
    MAILKETING_API_URL: str = "https://api.mailketing.co.id/api/v1/send"
    MAILKETING_API_TOKEN: Optional[str] = None
    MAILKETING_FROM_NAME: str = "VibePOS"
    MAILKETING_FROM_EMAIL: Optional[str] = None
    MAILKETING_OBSERVE_RESPONSE: bool = False

    # Resend
    RESEND_API_URL: str = "https://api.resend.com/emails"
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: Optional[str] = None

    # WhatsApp gateway (one platform at a time)
    CHAT_PLATFORM: Optional[ProviderId] = None
    WHATSAPP_API_URL: Optional[str] = None
    WHATSAPP_API_KEY: Optional[str] = None
    WHATSAPP_SESSION_ID: Optional[str] = None
    WHATSAPP_DEVICE_ID: Optional[str] = None

    # Password reset
    RESET_PASSWORD_URL: str = "http://localhost:8081/reset-password"
    RESET_TOKEN_TTL_MINUTES: int = 60
    RESET_TOKEN_COOLDOWN_SECONDS: float = 5.0
    RESET_TOKEN_STRUCTURAL_FALLBACK: bool = Field(
        default=False,
        description=(
            "Accept links whose credential is not in the store, judging them by the "
            "identity and timestamp encoded in the token. This allows forged links "
            "for any known address."
        ),
    )
    RESET_TOKEN_FALLBACK_TTL_HOURS: int = 24
    RESET_TOKEN_STORE_PATH: Optional[str] = None

    # Background receipt delivery
    RECEIPT_WORKERS: int = 4

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    @field_validator("CHAT_PLATFORM", mode="before")
    @classmethod
    def parse_chat_platform(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator(
        "MAILKETING_OBSERVE_RESPONSE",
        "RESET_TOKEN_STRUCTURAL_FALLBACK",
        mode="before",
    )
    @classmethod
    def parse_flags(cls, v):
        return _parse_bool(v)

    @field_validator("EMAIL_PROVIDER_ORDER")
    @classmethod
    def email_providers_only(cls, v):
        for provider in _split_providers(v):
            if provider.family != ChannelFamily.EMAIL:
                raise ValueError(f"{provider.value} is not an email provider")
        return v

    @field_validator("CHAT_PLATFORM")
    @classmethod
    def chat_provider_only(cls, v):
        if v is not None and v.family != ChannelFamily.CHAT:
            raise ValueError(f"{v.value} is not a chat platform")
        return v

    @property
    def email_provider_order(self) -> list[ProviderId]:
        return _split_providers(self.EMAIL_PROVIDER_ORDER)

    @property
    def chat_provider_order(self) -> list[ProviderId]:
        # Chat is never cascaded: one configured platform, or nothing
        return [self.CHAT_PLATFORM] if self.CHAT_PLATFORM else []


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings()
