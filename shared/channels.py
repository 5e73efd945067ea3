"""
Provider adapters for outbound messages.

One adapter per external service, all behind the same operation:

    send(destination, subject, body) -> SendOutcome

Email:
- Mailketing: form POST; cannot observe the remote response by default, so
  a request that leaves without a local exception counts as sent
  (optimistic success, reported with confirmed=False)
- Resend: JSON POST with bearer auth, success carries a message id

WhatsApp gateways (plain text, phone numbers normalized to digits with the
country calling code):
- WAHA, DripSender, StarSender, Wablas, each with its own auth header and
  request shape

Design decisions:
- Adapters never raise from `send`; transport errors become failed outcomes
- Every request goes through a shared httpx.Client with a bounded timeout
- Missing configuration makes a provider unavailable, never crashes
- Providers are selected by `ProviderId`, not by free-form strings
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from shared.errors import ErrorKind, NotificationError, ProviderUnavailable, TransportFailure
from shared.models import ChannelFamily, ProviderId, utcnow
from shared.settings import Settings

logger = logging.getLogger("notifications")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class SendOutcome:
    """
    Result of a single provider send attempt.

    Captures success/failure and metadata for the dispatcher and for tests.
    """
    success: bool
    provider: ProviderId
    destination: str
    confirmed: bool = True
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        suffix = "" if self.success else f" ({self.detail})"
        return f"{status} {self.provider.value.upper()} to {self.destination}{suffix}"


# =============================================================================
# Address helpers
# =============================================================================

def is_valid_email(address: str) -> bool:
    return bool(address) and EMAIL_PATTERN.match(address.strip()) is not None


def normalize_phone(phone: str, country_code: str = "62") -> str:
    """
    Normalize a phone number for WhatsApp gateways.

    Keeps digits only; a leading "0" becomes the country calling code, and a
    number without the code gets it prefixed.

    >>> normalize_phone("0812-3456-7890")
    '6281234567890'
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("0"):
        cleaned = country_code + cleaned[1:]
    if not cleaned.startswith(country_code):
        cleaned = country_code + cleaned
    return cleaned


def is_valid_whatsapp_number(phone: str, country_code: str = "62") -> bool:
    """Country code followed by at least nine digits once normalized."""
    normalized = normalize_phone(phone, country_code)
    return re.fullmatch(rf"{re.escape(country_code)}\d{{9,}}", normalized) is not None


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "<unset>"
    return secret[:4] + "..."


# =============================================================================
# Configuration hints
# =============================================================================

@dataclass(frozen=True)
class ProviderHint:
    """What an operator needs to set up a provider, shown on the settings screen."""
    title: str
    description: str
    required_settings: tuple[str, ...]
    default_url: str
    documentation: str


PROVIDER_HINTS: dict[ProviderId, ProviderHint] = {
    ProviderId.MAILKETING: ProviderHint(
        title="Mailketing",
        description="Indonesian email delivery service",
        required_settings=("MAILKETING_API_TOKEN", "MAILKETING_FROM_EMAIL"),
        default_url="https://api.mailketing.co.id/api/v1/send",
        documentation="https://mailketing.co.id/docs/send-email-via-api/",
    ),
    ProviderId.RESEND: ProviderHint(
        title="Resend",
        description="Transactional email API",
        required_settings=("RESEND_API_KEY", "RESEND_FROM_EMAIL"),
        default_url="https://api.resend.com/emails",
        documentation="https://resend.com/docs/api-reference/emails/send-email",
    ),
    ProviderId.WAHA: ProviderHint(
        title="WAHA (WhatsApp HTTP API)",
        description="Self-hosted WhatsApp API solution",
        required_settings=("WHATSAPP_API_URL",),
        default_url="http://localhost:3000",
        documentation="https://waha.devlike.pro/",
    ),
    ProviderId.DRIPSENDER: ProviderHint(
        title="DripSender",
        description="WhatsApp marketing platform Indonesia",
        required_settings=("WHATSAPP_API_URL", "WHATSAPP_API_KEY", "WHATSAPP_DEVICE_ID"),
        default_url="https://api.dripsender.id",
        documentation="https://dripsender.id/docs",
    ),
    ProviderId.STARSENDER: ProviderHint(
        title="StarSender",
        description="WhatsApp automation platform",
        required_settings=("WHATSAPP_API_URL", "WHATSAPP_API_KEY", "WHATSAPP_DEVICE_ID"),
        default_url="https://api.starsender.online",
        documentation="https://starsender.online/docs",
    ),
    ProviderId.WABLAS: ProviderHint(
        title="Wablas",
        description="WhatsApp API Gateway Indonesia",
        required_settings=("WHATSAPP_API_URL", "WHATSAPP_API_KEY"),
        default_url="https://console.wablas.com",
        documentation="https://wablas.com/documentation",
    ),
}


def configuration_hints(provider_id: ProviderId) -> ProviderHint:
    return PROVIDER_HINTS[provider_id]


def _missing_settings(settings: Settings, provider_id: ProviderId) -> list[str]:
    required = PROVIDER_HINTS[provider_id].required_settings
    return [name for name in required if not getattr(settings, name)]


# =============================================================================
# Base adapters
# =============================================================================

class ProviderAdapter(ABC):
    """
    Uniform send contract over one external messaging service.

    Subclasses implement `_deliver`, raising TransportFailure (or letting
    httpx errors escape) on failure; `send` turns that into a SendOutcome.
    """

    provider_id: ProviderId
    family: ChannelFamily

    def __init__(self, client: httpx.Client, timeout: float = 10.0):
        self.client = client
        self.timeout = timeout

    @property
    def optimistic(self) -> bool:
        """True when success means 'sent without a local error', not 'accepted'."""
        return False

    def prepare_destination(self, destination: str) -> str:
        return destination.strip()

    @abstractmethod
    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        """Perform the request. Returns a provider message id when one is known."""

    def send(self, destination: str, subject: str, body: str) -> SendOutcome:
        target = self.prepare_destination(destination)
        try:
            message_id = self._deliver(target, subject, body)
        except NotificationError as e:
            return self._failed(target, e.kind, e.message)
        except httpx.TimeoutException:
            return self._failed(
                target,
                ErrorKind.TRANSPORT_FAILURE,
                f"Timed out after {self.timeout:g}s",
            )
        except httpx.HTTPError as e:
            return self._failed(
                target,
                ErrorKind.TRANSPORT_FAILURE,
                f"Could not reach provider: {e}",
            )

        outcome = SendOutcome(
            success=True,
            provider=self.provider_id,
            destination=target,
            confirmed=not self.optimistic,
            message_id=message_id,
        )
        logger.info(f"[{self.provider_id.value.upper()}] To: {target} | Subject: {subject}")
        return outcome

    def _failed(self, target: str, kind: ErrorKind, detail: str) -> SendOutcome:
        logger.error(f"[{self.provider_id.value.upper()} FAILED] To: {target} | Error: {detail}")
        return SendOutcome(
            success=False,
            provider=self.provider_id,
            destination=target,
            confirmed=False,
            error=kind,
            detail=detail,
        )

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.client.post(url, timeout=self.timeout, **kwargs)

    def _check_status(self, response: httpx.Response) -> None:
        if not response.is_success:
            raise TransportFailure(
                f"HTTP {response.status_code}: {response.text[:200]}",
                provider=self.provider_id.value,
            )

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise TransportFailure(
                "Malformed provider response: body is not JSON",
                provider=self.provider_id.value,
            )
        if not isinstance(data, dict):
            raise TransportFailure(
                "Malformed provider response: expected a JSON object",
                provider=self.provider_id.value,
            )
        return data


class EmailAdapter(ProviderAdapter):
    """Email transports receive an address and an HTML body."""
    family = ChannelFamily.EMAIL


class ChatAdapter(ProviderAdapter):
    """
    WhatsApp gateway transports.

    Destinations are normalized phone numbers; the subject is not sent since
    chat bodies carry their own heading.
    """
    family = ChannelFamily.CHAT

    def __init__(
        self,
        client: httpx.Client,
        api_url: str,
        country_code: str = "62",
        timeout: float = 10.0,
    ):
        super().__init__(client, timeout)
        self.api_url = api_url.rstrip("/")
        self.country_code = country_code

    def prepare_destination(self, destination: str) -> str:
        return normalize_phone(destination, self.country_code)


# =============================================================================
# Email transports
# =============================================================================

# Vendor error strings mapped to operator-facing messages
MAILKETING_ERRORS = {
    "User Not Found or Wrong API Token": "Wrong API token or unknown user",
    "Access Denied, Invalid Token": "Invalid API token",
    "Unknown Sender, Please Add your Sender Email at Add Domain Menu": "Sender address is not registered in Mailketing",
    "Empty From Name": "Sender name is empty",
    "No Credits, Please Top Up": "Mailketing credits exhausted, top up required",
    "Empty Recipient, Please Add recipient address": "Recipient address is empty",
    "Blacklisted": "Recipient address is blacklisted",
    "Empty Subject, Please Add Subject Email": "Email subject is empty",
    "Empty Content, Please Add Email Content": "Email content is empty",
}

MAX_MAILKETING_ATTACHMENTS = 3


class MailketingAdapter(EmailAdapter):
    """
    Mailketing email API.

    The browser client this integration comes from posts in no-cors mode and
    never sees the response, so by default the response is not inspected and
    success is optimistic. With `observe_response=True` the JSON
    `{"status": ..., "response": ...}` body is checked and vendor errors are
    mapped to readable messages.
    """

    provider_id = ProviderId.MAILKETING

    def __init__(
        self,
        client: httpx.Client,
        api_token: str,
        from_email: str,
        from_name: str = "VibePOS",
        api_url: str = "https://api.mailketing.co.id/api/v1/send",
        observe_response: bool = False,
        timeout: float = 10.0,
    ):
        super().__init__(client, timeout)
        self.api_token = api_token
        self.from_email = from_email
        self.from_name = from_name
        self.api_url = api_url
        self.observe_response = observe_response

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "MailketingAdapter":
        missing = _missing_settings(settings, cls.provider_id)
        if missing:
            raise ProviderUnavailable(
                f"Mailketing is not configured, set {', '.join(missing)}",
                provider=cls.provider_id.value,
            )
        return cls(
            client,
            api_token=settings.MAILKETING_API_TOKEN,
            from_email=settings.MAILKETING_FROM_EMAIL,
            from_name=settings.MAILKETING_FROM_NAME,
            api_url=settings.MAILKETING_API_URL,
            observe_response=settings.MAILKETING_OBSERVE_RESPONSE,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    @property
    def optimistic(self) -> bool:
        return not self.observe_response

    def build_form(
        self,
        destination: str,
        subject: str,
        body: str,
        attachments: Optional[list[str]] = None,
    ) -> dict[str, str]:
        form = {
            "api_token": self.api_token,
            "from_name": self.from_name,
            "from_email": self.from_email,
            "recipient": destination,
            "subject": subject,
            "content": body,
        }
        for index, attachment in enumerate((attachments or [])[:MAX_MAILKETING_ATTACHMENTS], start=1):
            form[f"attach{index}"] = attachment
        return form

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        logger.debug(
            f"Mailketing request from {self.from_email} with token {_mask(self.api_token)}"
        )
        response = self._post(self.api_url, data=self.build_form(destination, subject, body))
        if not self.observe_response:
            return None

        self._check_status(response)
        data = self._json(response)
        if data.get("status") != "success":
            vendor_message = str(data.get("response") or "Unknown Mailketing error")
            raise TransportFailure(
                MAILKETING_ERRORS.get(vendor_message, vendor_message),
                provider=self.provider_id.value,
            )
        return None

    def test_connection(self) -> SendOutcome:
        """Send a short test email to the configured sender address."""
        return self.send(
            self.from_email,
            f"Test email - {self.from_name}",
            "<p>This is a test email sent through the Mailketing API.</p>"
            "<p>If you can read it, the configuration works.</p>",
        )


class ResendAdapter(EmailAdapter):
    """Resend email API (server-side transport)."""

    provider_id = ProviderId.RESEND

    def __init__(
        self,
        client: httpx.Client,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
    ):
        super().__init__(client, timeout)
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "ResendAdapter":
        missing = _missing_settings(settings, cls.provider_id)
        if missing:
            raise ProviderUnavailable(
                f"Resend is not configured, set {', '.join(missing)}",
                provider=cls.provider_id.value,
            )
        return cls(
            client,
            api_key=settings.RESEND_API_KEY,
            from_email=settings.RESEND_FROM_EMAIL,
            api_url=settings.RESEND_API_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        response = self._post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.from_email,
                "to": [destination],
                "subject": subject,
                "html": body,
            },
        )
        self._check_status(response)
        data = self._json(response)
        message_id = data.get("id")
        if not message_id:
            raise TransportFailure(
                "Malformed provider response: missing message id",
                provider=self.provider_id.value,
            )
        return str(message_id)

    def test_connection(self) -> SendOutcome:
        return self.send(
            self.from_email,
            "Test email - Resend",
            "<p>This is a test email sent through the Resend API.</p>",
        )


# =============================================================================
# WhatsApp gateways
# =============================================================================

def _require_chat_config(settings: Settings, provider_id: ProviderId) -> None:
    if settings.CHAT_PLATFORM != provider_id:
        raise ProviderUnavailable(
            f"{provider_id.value} is not the selected chat platform",
            provider=provider_id.value,
        )
    missing = _missing_settings(settings, provider_id)
    if missing:
        raise ProviderUnavailable(
            f"{provider_id.value} is not configured, set {', '.join(missing)}",
            provider=provider_id.value,
        )


class WahaAdapter(ChatAdapter):
    """WAHA (self-hosted WhatsApp HTTP API). No auth header, session based."""

    provider_id = ProviderId.WAHA

    def __init__(
        self,
        client: httpx.Client,
        api_url: str,
        session_id: Optional[str] = None,
        country_code: str = "62",
        timeout: float = 10.0,
    ):
        super().__init__(client, api_url, country_code, timeout)
        self.session_id = session_id or "default"

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "WahaAdapter":
        _require_chat_config(settings, cls.provider_id)
        return cls(
            client,
            api_url=settings.WHATSAPP_API_URL,
            session_id=settings.WHATSAPP_SESSION_ID,
            country_code=settings.PHONE_COUNTRY_CODE,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        response = self._post(
            f"{self.api_url}/api/sendText",
            json={
                "session": self.session_id,
                "chatId": f"{destination}@c.us",
                "text": body,
            },
        )
        self._check_status(response)
        return None


class DripSenderAdapter(ChatAdapter):
    """DripSender. Bearer token plus device id in the body."""

    provider_id = ProviderId.DRIPSENDER

    def __init__(
        self,
        client: httpx.Client,
        api_url: str,
        api_key: str,
        device_id: str,
        country_code: str = "62",
        timeout: float = 10.0,
    ):
        super().__init__(client, api_url, country_code, timeout)
        self.api_key = api_key
        self.device_id = device_id

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "DripSenderAdapter":
        _require_chat_config(settings, cls.provider_id)
        return cls(
            client,
            api_url=settings.WHATSAPP_API_URL,
            api_key=settings.WHATSAPP_API_KEY,
            device_id=settings.WHATSAPP_DEVICE_ID,
            country_code=settings.PHONE_COUNTRY_CODE,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        response = self._post(
            f"{self.api_url}/send-message",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "phone": destination,
                "message": body,
                "device_id": self.device_id,
            },
        )
        self._check_status(response)
        return None


class StarSenderAdapter(ChatAdapter):
    """
    StarSender. `apikey` header, everything else in the query string.

    The recipient goes out as a WhatsApp JID (<number>@s.whatsapp.net).
    """

    provider_id = ProviderId.STARSENDER

    def __init__(
        self,
        client: httpx.Client,
        api_url: str,
        api_key: str,
        device_id: str,
        country_code: str = "62",
        timeout: float = 10.0,
    ):
        super().__init__(client, api_url, country_code, timeout)
        # Configured URLs sometimes point at the /send endpoint itself
        if self.api_url.endswith("/send"):
            self.api_url = self.api_url[: -len("/send")]
        self.api_key = api_key
        self.device_id = device_id

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "StarSenderAdapter":
        _require_chat_config(settings, cls.provider_id)
        return cls(
            client,
            api_url=settings.WHATSAPP_API_URL,
            api_key=settings.WHATSAPP_API_KEY,
            device_id=settings.WHATSAPP_DEVICE_ID,
            country_code=settings.PHONE_COUNTRY_CODE,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        jid = destination if "@" in destination else f"{destination}@s.whatsapp.net"
        response = self._post(
            f"{self.api_url}/sendText",
            headers={"apikey": self.api_key},
            params={
                "id_device": self.device_id,
                "message": body,
                "tujuan": jid,
            },
        )
        self._check_status(response)
        return None


class WablasAdapter(ChatAdapter):
    """Wablas. Raw API key in the Authorization header, JSON reply."""

    provider_id = ProviderId.WABLAS

    def __init__(
        self,
        client: httpx.Client,
        api_url: str,
        api_key: str,
        country_code: str = "62",
        timeout: float = 10.0,
    ):
        super().__init__(client, api_url, country_code, timeout)
        self.api_key = api_key

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client) -> "WablasAdapter":
        _require_chat_config(settings, cls.provider_id)
        return cls(
            client,
            api_url=settings.WHATSAPP_API_URL,
            api_key=settings.WHATSAPP_API_KEY,
            country_code=settings.PHONE_COUNTRY_CODE,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        response = self._post(
            f"{self.api_url}/api/send-message",
            headers={"Authorization": self.api_key},
            json={
                "phone": destination.replace("@s.whatsapp.net", ""),
                "message": body,
                "isGroup": False,
            },
        )
        self._check_status(response)
        data = self._json(response)
        if data.get("status") is False:
            raise TransportFailure(
                str(data.get("message") or "Wablas rejected the message"),
                provider=self.provider_id.value,
            )
        return None


ADAPTER_TYPES: dict[ProviderId, type[ProviderAdapter]] = {
    ProviderId.MAILKETING: MailketingAdapter,
    ProviderId.RESEND: ResendAdapter,
    ProviderId.WAHA: WahaAdapter,
    ProviderId.DRIPSENDER: DripSenderAdapter,
    ProviderId.STARSENDER: StarSenderAdapter,
    ProviderId.WABLAS: WablasAdapter,
}


# =============================================================================
# Registry
# =============================================================================

class ProviderRegistry:
    """
    Holds the adapters the dispatcher may use and the default order per family.

    Providers that could not be built are kept with the reason, so a dispatch
    that asks for them gets a ProviderUnavailable diagnostic instead of a crash.

    Example:
        registry = ProviderRegistry.from_settings(get_settings())
        adapter = registry.resolve(ProviderId.MAILKETING)
    """

    def __init__(
        self,
        adapters: Optional[list[ProviderAdapter]] = None,
        unavailable: Optional[dict[ProviderId, str]] = None,
        default_orders: Optional[dict[ChannelFamily, list[ProviderId]]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._adapters: dict[ProviderId, ProviderAdapter] = {}
        self._unavailable: dict[ProviderId, str] = dict(unavailable or {})
        self._default_orders = dict(default_orders or {})
        self._client = client
        for adapter in adapters or []:
            self.register(adapter)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[httpx.Client] = None,
    ) -> "ProviderRegistry":
        owned_client = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        registry = cls(
            default_orders={
                ChannelFamily.EMAIL: settings.email_provider_order,
                ChannelFamily.CHAT: settings.chat_provider_order,
            },
            client=owned_client if client is None else None,
        )
        for provider_id, adapter_type in ADAPTER_TYPES.items():
            try:
                registry.register(adapter_type.from_settings(settings, owned_client))
            except ProviderUnavailable as e:
                registry.mark_unavailable(provider_id, e.message)
                logger.debug(f"Provider {provider_id.value} unavailable: {e.message}")
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider_id] = adapter
        self._unavailable.pop(adapter.provider_id, None)

    def mark_unavailable(self, provider_id: ProviderId, reason: str) -> None:
        self._adapters.pop(provider_id, None)
        self._unavailable[provider_id] = reason

    def resolve(self, provider_id: ProviderId) -> ProviderAdapter:
        """
        Get the adapter for a provider.

        Raises:
            ProviderUnavailable: If the provider is not configured
        """
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            reason = self._unavailable.get(provider_id, f"{provider_id.value} is not configured")
            raise ProviderUnavailable(reason, provider=provider_id.value)
        return adapter

    def default_order(self, family: ChannelFamily) -> list[ProviderId]:
        return list(self._default_orders.get(family, []))

    def availability(self) -> dict[ProviderId, Optional[str]]:
        """Every known provider mapped to None (available) or the reason it is not."""
        status: dict[ProviderId, Optional[str]] = {}
        for provider_id in ProviderId:
            if provider_id in self._adapters:
                status[provider_id] = None
            else:
                status[provider_id] = self._unavailable.get(
                    provider_id, f"{provider_id.value} is not configured"
                )
        return status

    def close(self) -> None:
        """Close the HTTP client if the registry created it."""
        if self._client is not None:
            self._client.close()
            self._client = None
