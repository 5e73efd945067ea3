"""
FastAPI application for the notification and credential dispatch layer.

This application provides:
1. Direct dispatch of a message through the provider fallback chain (/dispatch)
2. Background receipt delivery for completed sales (/receipts)
3. The forgot-password flow (/password-reset/...)
4. Provider availability for the settings screen (/providers)

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

from notifications.dispatcher import Dispatcher
from notifications.password_reset import PasswordResetService, PasswordUpdater
from notifications.receipts import ReceiptService
from notifications.tokens import TokenPolicy, TokenService, TokenVerification
from notifications.worker import DispatchWorker, JobStatus
from shared.channels import ProviderRegistry, configuration_hints
from shared.credential_store import get_credential_store
from shared.errors import ErrorKind, NotificationError, TokenInvalid, ValidationError
from shared.models import (
    ChannelFamily,
    CompletedSale,
    DispatchRequest,
    DispatchResult,
)
from shared.settings import get_settings
from shared.templates import MessageFormatter

logger = logging.getLogger("api")


# =============================================================================
# Request / Response Models
# =============================================================================

class ReceiptRequest(BaseModel):
    """A completed sale and the channels its receipt should go out on."""
    sale: CompletedSale
    channels: list[ChannelFamily] = Field(default_factory=lambda: [ChannelFamily.EMAIL])


class ReceiptQueued(BaseModel):
    job_ids: dict[ChannelFamily, str]
    warnings: list[str]


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    result: Optional[DispatchResult] = None


class ProviderStatus(BaseModel):
    provider: str
    family: ChannelFamily
    available: bool
    reason: Optional[str] = None
    title: str
    required_settings: list[str]
    default_url: str
    documentation: str


class ResetRequestBody(BaseModel):
    email: str


class ResetRequestResponse(BaseModel):
    accepted: bool
    message: str
    provider_used: Optional[str] = None
    confirmed: bool = False


class VerifyBody(BaseModel):
    email: str
    token: str


class CompleteBody(BaseModel):
    email: str
    token: str
    new_password: str


# =============================================================================
# Module-level instances (replaced in tests via reset_api_state)
# =============================================================================

_registry: Optional[ProviderRegistry] = None
_dispatcher: Optional[Dispatcher] = None
_token_service: Optional[TokenService] = None
_worker: Optional[DispatchWorker] = None
_password_updater: Optional[PasswordUpdater] = None


def _log_password_update(email: str, new_password: str) -> None:
    # Identity store integration belongs to the host application
    logger.info(f"Password updated for {email}")


def get_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry.from_settings(get_settings())
    return _registry


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        settings = get_settings()
        _dispatcher = Dispatcher(
            get_registry(),
            MessageFormatter(settings.APP_NAME, settings.CURRENCY_SYMBOL),
            country_code=settings.PHONE_COUNTRY_CODE,
        )
    return _dispatcher


def get_token_service() -> TokenService:
    global _token_service
    if _token_service is None:
        settings = get_settings()
        _token_service = TokenService(
            get_credential_store(settings.RESET_TOKEN_STORE_PATH),
            TokenPolicy.from_settings(settings),
        )
    return _token_service


def get_worker() -> DispatchWorker:
    global _worker
    if _worker is None:
        _worker = DispatchWorker(get_dispatcher(), max_workers=get_settings().RECEIPT_WORKERS)
    return _worker


def get_password_updater() -> PasswordUpdater:
    return _password_updater or _log_password_update


def get_receipt_service(worker: DispatchWorker = Depends(get_worker)) -> ReceiptService:
    return ReceiptService(worker)


def get_reset_service(
    tokens: TokenService = Depends(get_token_service),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> PasswordResetService:
    return PasswordResetService(tokens, dispatcher, get_settings().RESET_PASSWORD_URL)


def reset_api_state(
    registry: Optional[ProviderRegistry] = None,
    dispatcher: Optional[Dispatcher] = None,
    token_service: Optional[TokenService] = None,
    worker: Optional[DispatchWorker] = None,
    password_updater: Optional[PasswordUpdater] = None,
) -> None:
    """Reset API state (for testing)."""
    global _registry, _dispatcher, _token_service, _worker, _password_updater
    _registry = registry
    _dispatcher = dispatcher
    _token_service = token_service
    _worker = worker
    _password_updater = password_updater


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logging.info("Starting notification dispatch API")
    yield
    if _worker is not None:
        _worker.shutdown(wait=True)
    if _registry is not None:
        _registry.close()
    logging.info("Shutting down")


app = FastAPI(
    title="VibePOS Notify",
    description="""
    Receipt and password reset delivery for the point of sale.

    ## Endpoints

    - `/dispatch` - Send one message through the provider fallback chain
    - `/receipts` - Queue receipt delivery for a completed sale
    - `/password-reset/*` - Request, verify and complete a password reset
    - `/providers` - Which providers are configured
    """,
    version="1.0.0",
    lifespan=lifespan,
)


def _error_status(error: NotificationError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, TokenInvalid):
        return 400
    return 500


# =============================================================================
# Health / Providers
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "vibepos-notify"}


@app.get("/providers", response_model=list[ProviderStatus], tags=["Providers"])
def list_providers(registry: ProviderRegistry = Depends(get_registry)):
    """Availability of every provider, with setup hints and the reason when one is not usable."""
    statuses = []
    for provider_id, reason in registry.availability().items():
        hint = configuration_hints(provider_id)
        statuses.append(ProviderStatus(
            provider=provider_id.value,
            family=provider_id.family,
            available=reason is None,
            reason=reason,
            title=hint.title,
            required_settings=list(hint.required_settings),
            default_url=hint.default_url,
            documentation=hint.documentation,
        ))
    return statuses


# =============================================================================
# Dispatch
# =============================================================================

@app.post("/dispatch", response_model=DispatchResult, tags=["Dispatch"])
def dispatch(request: DispatchRequest, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """
    Send one message, falling back across providers.

    Delivery failures are reported in the body (`succeeded: false`), not as
    HTTP errors.
    """
    return dispatcher.dispatch(request)


# =============================================================================
# Receipts
# =============================================================================

@app.post("/receipts", status_code=202, response_model=ReceiptQueued, tags=["Receipts"])
def queue_receipt(
    request: ReceiptRequest,
    receipts: ReceiptService = Depends(get_receipt_service),
):
    """Queue receipt delivery for a completed sale and return immediately."""
    notice = receipts.notify_sale(request.sale, request.channels)
    return ReceiptQueued(job_ids=notice.job_ids, warnings=notice.warnings)


@app.get("/receipts/jobs/{job_id}", response_model=JobStatusResponse, tags=["Receipts"])
def receipt_job_status(job_id: str, worker: DispatchWorker = Depends(get_worker)):
    job = worker.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return JobStatusResponse(job_id=job.job_id, status=job.status, result=job.result)


# =============================================================================
# Password Reset
# =============================================================================

@app.post("/password-reset/request", response_model=ResetRequestResponse, tags=["Password Reset"])
def request_password_reset(
    body: ResetRequestBody,
    service: PasswordResetService = Depends(get_reset_service),
):
    """
    Issue a reset token and email the reset link.

    Returns 429 with a Retry-After header when a link was sent moments ago.
    """
    outcome = service.request_reset(body.email)
    if outcome.error == ErrorKind.RATE_LIMITED:
        return JSONResponse(
            status_code=429,
            content={"detail": outcome.message},
            headers={"Retry-After": str(max(1, round(outcome.retry_after_seconds)))},
        )
    if outcome.error == ErrorKind.VALIDATION:
        raise HTTPException(status_code=422, detail=outcome.message)
    if not outcome.accepted:
        raise HTTPException(status_code=502, detail=outcome.message)

    result = outcome.result
    return ResetRequestResponse(
        accepted=True,
        message=outcome.message,
        provider_used=result.provider_used.value if result and result.provider_used else None,
        confirmed=result.confirmed if result else False,
    )


@app.post("/password-reset/verify", response_model=TokenVerification, tags=["Password Reset"])
def verify_reset_token(
    body: VerifyBody,
    service: PasswordResetService = Depends(get_reset_service),
):
    """Check a token from a reset link. Invalid tokens come back with `valid: false`."""
    return service.verify(body.email, body.token)


@app.post("/password-reset/complete", tags=["Password Reset"])
def complete_password_reset(
    body: CompleteBody,
    service: PasswordResetService = Depends(get_reset_service),
    update_password: PasswordUpdater = Depends(get_password_updater),
):
    try:
        service.complete_reset(body.email, body.token, body.new_password, update_password)
    except (ValidationError, TokenInvalid) as e:
        raise HTTPException(status_code=_error_status(e), detail=e.message)
    return {"status": "password_updated", "email": body.email}
