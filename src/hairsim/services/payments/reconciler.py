"""Exactly-once conversion of confirmed payments into credits.

Two independent paths confirm a checkout: the client polling verify-payment
after the redirect and the processor's webhook. Both may fire for the same
session at the same instant. The grant is a compare-and-set on
payment_sessions.processed_at; only the caller that moves it from NULL to a
timestamp adds credits, and it does so in the same transaction.
"""

from dataclasses import dataclass

import structlog

from hairsim.core.timezone import utcnow
from hairsim.models.payment_session import GrantSource
from hairsim.services.exceptions import ForbiddenError, PaymentSessionNotFoundError
from hairsim.uow import UnitOfWorkFactory

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReconcileResult:
    granted: bool
    credit_balance: int
    credits_added: int = 0

    @property
    def already_processed(self) -> bool:
        return not self.granted

    def to_dict(self) -> dict:
        body = {
            "success": True,
            "granted": self.granted,
            "creditBalance": self.credit_balance,
            "creditsAdded": self.credits_added,
        }
        if self.already_processed:
            body["alreadyProcessed"] = True
        return body


class PaymentReconciler:
    """Grants checkout credits at most once per payment session."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        default_tier: str = "free",
        free_daily_limit: int = 3,
    ):
        self.uow_factory = uow_factory
        self.default_tier = default_tier
        self.free_daily_limit = free_daily_limit

    async def reconcile(
        self,
        session_id: str,
        expected_user_id: str,
        credits_to_grant: int,
        source: GrantSource,
    ) -> ReconcileResult:
        """Apply a confirmed payment to the owner's credit balance.

        Args:
            session_id: Payment processor checkout session identifier
            expected_user_id: User the confirmation claims to be for
            credits_to_grant: Credits purchased in this session
            source: Confirmation path (verify or webhook)

        Returns:
            ReconcileResult with granted=True for the single winning caller,
            granted=False with the current balance for every other caller

        Raises:
            PaymentSessionNotFoundError: No checkout recorded under session_id
            ForbiddenError: Session belongs to a different user (nothing is written)
        """
        async with await self.uow_factory() as uow:
            payment_session = await uow.payment_sessions.get_by_session_id(session_id)
            if payment_session is None:
                raise PaymentSessionNotFoundError(
                    "Payment session not found", sessionId=session_id
                )

            owner = payment_session.user_id
            if owner != expected_user_id:
                logger.warning(
                    "payment.forbidden",
                    session_id=session_id,
                    session_owner=owner,
                    requested_by=expected_user_id,
                    source=source.value,
                )
                raise ForbiddenError("Payment session does not belong to this user")

            if credits_to_grant <= 0:
                raise ValueError(f"credits_to_grant must be positive, got {credits_to_grant}")

            won = await uow.payment_sessions.mark_processed(
                session_id, utcnow(), credits_to_grant, source
            )
            if won:
                await uow.quotas.get_or_create(owner, self.default_tier, self.free_daily_limit)
                await uow.quotas.add_credits(owner, credits_to_grant)

            balance = await uow.quotas.get_credit_balance(owner)

        if won:
            logger.info(
                "payment.credits_granted",
                session_id=session_id,
                user_id=owner,
                credits=credits_to_grant,
                credit_balance=balance,
                source=source.value,
            )
            return ReconcileResult(
                granted=True, credit_balance=balance, credits_added=credits_to_grant
            )

        logger.info(
            "payment.already_processed",
            session_id=session_id,
            user_id=owner,
            source=source.value,
        )
        return ReconcileResult(granted=False, credit_balance=balance)
