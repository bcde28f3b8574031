"""FastAPI dependencies for request validation and shared components.

This module provides reusable FastAPI dependencies for:
- Caller identification (X-User-Id set by the upstream auth layer)
- Stripe webhook signature validation
- Access to the components built in the application lifespan
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from hairsim.core.config import Settings
from hairsim.services.generation.cache import GenerationCache
from hairsim.services.generation.job_tracker import JobTracker
from hairsim.services.generation.orchestrator import GenerationOrchestrator
from hairsim.services.payments.checkout import CheckoutService
from hairsim.services.payments.stripe_signature import validate_stripe_signature
from hairsim.services.quota.ledger import QuotaLedger

MAX_USER_ID_LENGTH = 128


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """Identify the caller from the header set by the authentication layer.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or blank
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user id")
    return user_id


async def validate_stripe_webhook_signature(
    request: Request,
    stripe_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate the Stripe-Signature header before processing a webhook.

    Reads the raw request body (signatures cover the exact bytes received)
    and rejects the request with 401 before any payload parsing if the
    signature is missing, stale or does not match.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if signature is missing or invalid
    """
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Stripe-Signature header"
        )

    raw_body = await request.body()

    is_valid = validate_stripe_signature(
        raw_body=raw_body,
        signature_header=stripe_signature,
        signing_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )

    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_job_tracker(request: Request) -> JobTracker:
    return request.app.state.job_tracker


def get_generation_cache(request: Request) -> GenerationCache:
    return request.app.state.generation_cache


def get_quota_ledger(request: Request) -> QuotaLedger:
    return request.app.state.quota_ledger


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout_service
