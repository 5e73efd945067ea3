"""
Shared infrastructure for the notification and credential dispatch layer.

- Domain models (sales, receipts, reset credentials, dispatch requests)
- Error taxonomy
- Environment settings
- Credential stores (in-memory and JSON file)
- Provider adapters for email and WhatsApp gateways
- Message formatting for email (HTML) and chat (plain text)
"""

from shared.models import (
    ChannelFamily,
    CompletedSale,
    DispatchRequest,
    DispatchResult,
    MessageType,
    ProviderId,
    ReceiptPayload,
    ResetCredential,
)
from shared.credential_store import CredentialStore, InMemoryCredentialStore, JsonFileCredentialStore
from shared.channels import ProviderAdapter, ProviderRegistry, SendOutcome

__all__ = [
    "ChannelFamily",
    "CompletedSale",
    "DispatchRequest",
    "DispatchResult",
    "MessageType",
    "ProviderId",
    "ReceiptPayload",
    "ResetCredential",
    "CredentialStore",
    "InMemoryCredentialStore",
    "JsonFileCredentialStore",
    "ProviderAdapter",
    "ProviderRegistry",
    "SendOutcome",
]
