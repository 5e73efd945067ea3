"""
Key-value persistence for password reset credentials.

Credentials are keyed by the identity they are bound to, so a write for one
identity replaces the previous credential for that identity and never touches
any other key.

Design decisions:
- `CredentialStore` is the interface callers depend on; swapping in a
  server-side store means implementing four methods
- In-memory store stripes its locks by identity: operations on different
  identities rarely block each other and the lock count stays fixed
- JSON file store survives process restarts (single process, writes are
  serialized and the file is replaced atomically)
- Module-level default instance for convenience, replaceable in tests
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from shared.models import ResetCredential

logger = logging.getLogger("credential_store")

LOCK_STRIPES = 64


class CredentialStore(ABC):
    """At most one live credential per identity."""

    @abstractmethod
    def get(self, subject_email: str) -> Optional[ResetCredential]:
        """Return the stored credential for an identity, if any."""

    @abstractmethod
    def put(self, credential: ResetCredential) -> None:
        """Store a credential, replacing any prior one for the same identity."""

    @abstractmethod
    def delete(self, subject_email: str) -> bool:
        """Remove the credential for an identity. Returns True if one existed."""

    @abstractmethod
    def clear(self) -> None:
        """Remove everything (useful between tests)."""


class InMemoryCredentialStore(CredentialStore):
    """
    Process-local store.

    Example:
        store = InMemoryCredentialStore()
        store.put(credential)
        store.get("alice@example.com")
    """

    def __init__(self):
        self._credentials: dict[str, ResetCredential] = {}
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, subject_email: str) -> threading.Lock:
        return self._locks[hash(subject_email) % LOCK_STRIPES]

    def get(self, subject_email: str) -> Optional[ResetCredential]:
        with self._lock_for(subject_email):
            return self._credentials.get(subject_email)

    def put(self, credential: ResetCredential) -> None:
        with self._lock_for(credential.subject_email):
            self._credentials[credential.subject_email] = credential
        logger.debug(f"Stored reset credential for {credential.subject_email}")

    def delete(self, subject_email: str) -> bool:
        with self._lock_for(subject_email):
            removed = self._credentials.pop(subject_email, None)
        return removed is not None

    def clear(self) -> None:
        self._credentials.clear()

    def __len__(self) -> int:
        return len(self._credentials)


class JsonFileCredentialStore(CredentialStore):
    """
    Store backed by a JSON file, one object keyed by identity.

    The file is loaded lazily and rewritten on every change via a temporary
    file and `os.replace`, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._credentials: Optional[dict[str, ResetCredential]] = None
        self._lock = threading.RLock()

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            # Unreadable store: start empty, outstanding links will need re-issuing
            logger.error(f"Credential store {self.path} is corrupt, ignoring it: {e}")
            return {}

    def _ensure_loaded(self) -> dict[str, ResetCredential]:
        if self._credentials is None:
            data = self._load_json()
            self._credentials = {
                email: ResetCredential(**record) for email, record in data.items()
            }
        return self._credentials

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            email: credential.model_dump(mode="json")
            for email, credential in self._ensure_loaded().items()
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    # =========================================================================
    # Store Operations
    # =========================================================================

    def get(self, subject_email: str) -> Optional[ResetCredential]:
        with self._lock:
            return self._ensure_loaded().get(subject_email)

    def put(self, credential: ResetCredential) -> None:
        with self._lock:
            self._ensure_loaded()[credential.subject_email] = credential
            self._flush()
        logger.debug(f"Stored reset credential for {credential.subject_email} in {self.path}")

    def delete(self, subject_email: str) -> bool:
        with self._lock:
            removed = self._ensure_loaded().pop(subject_email, None)
            if removed is not None:
                self._flush()
        return removed is not None

    def clear(self) -> None:
        with self._lock:
            self._credentials = {}
            self._flush()

    def reload(self) -> None:
        """Drop the cache and re-read the file on next access."""
        with self._lock:
            self._credentials = None


# Module-level default for convenience
# In tests, create a new store instance instead
_default_store: Optional[CredentialStore] = None


def get_credential_store(path: Optional[str] = None) -> CredentialStore:
    """Get the default credential store, file-backed when a path is given."""
    global _default_store
    if _default_store is None:
        if path:
            _default_store = JsonFileCredentialStore(Path(path))
        else:
            _default_store = InMemoryCredentialStore()
    return _default_store


def reset_credential_store(store: Optional[CredentialStore] = None) -> Optional[CredentialStore]:
    """Replace the default store (useful for testing)."""
    global _default_store
    _default_store = store
    return _default_store
