"""
Notification and credential dispatch services.

- Token service: short-lived, single-use password reset tokens
- Dispatcher: provider selection and fallback for one logical message
- Worker: background delivery so checkout never waits on a provider
- Receipt and password reset flows built on top of them
"""

from notifications.dispatcher import Dispatcher
from notifications.password_reset import PasswordResetService, ResetRequestOutcome
from notifications.receipts import ReceiptNotice, ReceiptService
from notifications.tokens import TokenPolicy, TokenService, TokenStatus, TokenVerification
from notifications.worker import DispatchWorker, JobStatus

__all__ = [
    "Dispatcher",
    "DispatchWorker",
    "JobStatus",
    "PasswordResetService",
    "ReceiptNotice",
    "ReceiptService",
    "ResetRequestOutcome",
    "TokenPolicy",
    "TokenService",
    "TokenStatus",
    "TokenVerification",
]
