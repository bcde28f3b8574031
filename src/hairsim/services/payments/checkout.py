"""Checkout flow: open a processor session, confirm it, funnel into the reconciler."""

import time
from typing import Any, Callable, Optional

import structlog

from hairsim.models.payment_session import GrantSource, PaymentSession
from hairsim.services.exceptions import PaymentNotCompletedError
from hairsim.services.payments.packages import get_package
from hairsim.services.payments.reconciler import PaymentReconciler, ReconcileResult
from hairsim.services.payments.stripe_client import CheckoutSession, StripeClient
from hairsim.uow import UnitOfWorkFactory

logger = structlog.get_logger()

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"


def _credits_from_metadata(metadata: dict[str, Any], fallback: int) -> int:
    try:
        credits = int(metadata.get("credits", fallback))
    except (TypeError, ValueError):
        return fallback
    return credits if credits > 0 else fallback


class CheckoutService:
    """Credit purchase flow on top of StripeClient and PaymentReconciler."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        stripe_client: StripeClient,
        reconciler: PaymentReconciler,
        time_fn: Callable[[], float] = time.time,
    ):
        self.uow_factory = uow_factory
        self.stripe_client = stripe_client
        self.reconciler = reconciler
        self.time_fn = time_fn

    async def create_checkout(self, user_id: str, package_id: str) -> CheckoutSession:
        """Open a processor checkout and record it as an unprocessed PaymentSession.

        Raises:
            InvalidPackageError: Unknown package_id
            PaymentProcessorError: Processor call failed
        """
        package = get_package(package_id)
        checkout = await self.stripe_client.create_checkout_session(
            user_id, package, now=int(self.time_fn())
        )

        async with await self.uow_factory() as uow:
            await uow.payment_sessions.add(
                PaymentSession(
                    session_id=checkout.id,
                    user_id=user_id,
                    package_id=package.id,
                    credits_granted=package.credits,
                    amount_cents=package.price_cents,
                    currency=package.currency,
                )
            )

        logger.info(
            "payment.checkout_created",
            session_id=checkout.id,
            user_id=user_id,
            package_id=package.id,
            credits=package.credits,
        )
        return checkout

    async def verify_payment(self, user_id: str, session_id: str) -> ReconcileResult:
        """Client-side confirmation after the checkout redirect.

        Raises:
            PaymentNotCompletedError: Processor does not report the session as paid
            ForbiddenError: Session belongs to another user
            PaymentSessionNotFoundError: Session was never recorded here
        """
        checkout = await self.stripe_client.retrieve_checkout_session(session_id)
        if not checkout.is_paid:
            raise PaymentNotCompletedError(
                "Payment not completed", paymentStatus=checkout.payment_status
            )

        credits = await self._credits_for(checkout)
        return await self.reconciler.reconcile(
            session_id, user_id, credits, GrantSource.VERIFY
        )

    async def handle_webhook_event(self, event: dict[str, Any]) -> Optional[ReconcileResult]:
        """Process a signature-verified webhook event.

        Returns:
            ReconcileResult for paid checkout completions, None for everything else
        """
        event_type = event.get("type")
        obj = event.get("data", {}).get("object", {})

        if event_type == CHECKOUT_COMPLETED:
            checkout = CheckoutSession.from_api(obj)
            if not checkout.is_paid:
                logger.info(
                    "payment.webhook_unpaid_checkout",
                    session_id=checkout.id,
                    payment_status=checkout.payment_status,
                )
                return None

            user_id = checkout.metadata.get("userId", "")
            credits = await self._credits_for(checkout)
            return await self.reconciler.reconcile(
                checkout.id, user_id, credits, GrantSource.WEBHOOK
            )

        if event_type == PAYMENT_FAILED:
            logger.warning("payment.failed", payment_intent_id=obj.get("id"))
            return None

        logger.info("payment.webhook_unhandled", event_type=event_type)
        return None

    async def history(self, user_id: str, limit: int = 50) -> list[PaymentSession]:
        async with await self.uow_factory() as uow:
            return await uow.payment_sessions.list_by_user(user_id, limit=limit)

    async def _credits_for(self, checkout: CheckoutSession) -> int:
        # Metadata wins; the recorded session is the fallback
        recorded = 0
        async with await self.uow_factory() as uow:
            payment_session = await uow.payment_sessions.get_by_session_id(checkout.id)
            if payment_session is not None:
                recorded = payment_session.credits_granted
        if recorded <= 0:
            package_id = checkout.metadata.get("packageId")
            if package_id:
                recorded = get_package(package_id).credits
        return _credits_from_metadata(checkout.metadata, recorded)
