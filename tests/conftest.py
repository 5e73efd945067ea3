"""
Shared pytest fixtures for the notification dispatch tests.

These fixtures provide consistent test data, a controllable clock and
recording provider adapters so no test touches the network.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from notifications.dispatcher import Dispatcher
from notifications.tokens import TokenPolicy, TokenService
from shared.channels import ProviderAdapter, ProviderRegistry
from shared.credential_store import InMemoryCredentialStore
from shared.errors import TransportFailure
from shared.models import (
    ChannelFamily,
    CompletedSale,
    CustomerContact,
    ProviderId,
    ReceiptLine,
    ReceiptPayload,
    StoreIdentity,
)
from shared.templates import MessageFormatter


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingAdapter(ProviderAdapter):
    """
    In-process adapter that records what it was asked to send.

    `fail=True` makes every send a transport failure.
    """

    def __init__(self, provider_id: ProviderId, fail: bool = False, optimistic: bool = False):
        super().__init__(client=None)
        self.provider_id = provider_id
        self.family = provider_id.family
        self.fail = fail
        self._optimistic = optimistic
        self.sent_messages: list[tuple[str, str, str]] = []

    @property
    def optimistic(self) -> bool:
        return self._optimistic

    def prepare_destination(self, destination: str) -> str:
        return destination.strip()

    def _deliver(self, destination: str, subject: str, body: str) -> Optional[str]:
        if self.fail:
            raise TransportFailure("HTTP 503: gateway down", provider=self.provider_id.value)
        self.sent_messages.append((destination, subject, body))
        return f"{self.provider_id.value}-{len(self.sent_messages)}"

    def get_sent_count(self) -> int:
        return len(self.sent_messages)


def make_registry(*adapters: ProviderAdapter, email_order=None, chat_order=None) -> ProviderRegistry:
    return ProviderRegistry(
        adapters=list(adapters),
        default_orders={
            ChannelFamily.EMAIL: email_order if email_order is not None else [ProviderId.MAILKETING, ProviderId.RESEND],
            ChannelFamily.CHAT: chat_order if chat_order is not None else [ProviderId.WAHA],
        },
    )


def mock_client(handler) -> httpx.Client:
    """httpx client whose requests are answered by `handler(request)`."""
    return httpx.Client(transport=httpx.MockTransport(handler))


# =============================================================================
# Clock / Token Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    """Fresh store for each test."""
    return InMemoryCredentialStore()


@pytest.fixture
def token_service(credential_store, clock) -> TokenService:
    return TokenService(credential_store, TokenPolicy(), clock=clock)


@pytest.fixture
def fallback_token_service(credential_store, clock) -> TokenService:
    """Token service with the structural fallback path enabled."""
    return TokenService(credential_store, TokenPolicy(structural_fallback=True), clock=clock)


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def mailketing() -> RecordingAdapter:
    return RecordingAdapter(ProviderId.MAILKETING)


@pytest.fixture
def resend() -> RecordingAdapter:
    return RecordingAdapter(ProviderId.RESEND)


@pytest.fixture
def waha() -> RecordingAdapter:
    return RecordingAdapter(ProviderId.WAHA)


@pytest.fixture
def formatter() -> MessageFormatter:
    return MessageFormatter(app_name="VibePOS", currency_symbol="Rp")


@pytest.fixture
def dispatcher(mailketing, resend, waha, formatter) -> Dispatcher:
    """Dispatcher over recording adapters for every default-order provider."""
    return Dispatcher(make_registry(mailketing, resend, waha), formatter)


# =============================================================================
# Sale / Receipt Fixtures
# =============================================================================

@pytest.fixture
def store_identity() -> StoreIdentity:
    return StoreIdentity(name="Toko Maju", address="Jl. Merdeka 1, Bandung", phone="022-123456")


@pytest.fixture
def receipt_payload(store_identity) -> ReceiptPayload:
    """Receipt for [A, qty 2, price 1000], no discount, tax 100."""
    return ReceiptPayload(
        transaction_number="TRX-0001",
        created_at=datetime(2024, 5, 1, 14, 30, tzinfo=timezone.utc),
        customer_name="Alice",
        customer_email="alice@example.com",
        payment_method="cash",
        tax_amount=100,
        total_amount=2100,
        items=[ReceiptLine(name="A", quantity=2, unit_price=1000)],
        store=store_identity,
    )


@pytest.fixture
def alice() -> CustomerContact:
    return CustomerContact(name="Alice", email="alice@example.com", phone="081234567890")


@pytest.fixture
def completed_sale(alice, store_identity) -> CompletedSale:
    return CompletedSale(
        transaction_number="TRX-0002",
        payment_method="qris",
        tax_amount=100,
        total_amount=2100,
        items=[ReceiptLine(name="A", quantity=2, unit_price=1000)],
        store=store_identity,
        customer=alice,
    )


# =============================================================================
# Factories (helpers above, handed to tests as fixtures)
# =============================================================================

@pytest.fixture
def adapter_factory():
    return RecordingAdapter


@pytest.fixture
def registry_factory():
    return make_registry


@pytest.fixture
def client_factory():
    return mock_client
