"""PaymentSession repository for hairsim backend.

Provides the compare-and-set used to grant credits exactly once per checkout.
"""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hairsim.models.payment_session import GrantSource, PaymentSession


class PaymentSessionRepository:
    """Repository for PaymentSession entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, payment_session: PaymentSession) -> PaymentSession:
        """Persist new payment session to database.

        Args:
            payment_session: PaymentSession entity to persist

        Returns:
            Persisted payment session
        """
        self.session.add(payment_session)
        await self.session.flush()
        return payment_session

    async def get_by_session_id(self, session_id: str) -> PaymentSession | None:
        """Retrieve payment session by processor session ID.

        Args:
            session_id: Payment processor checkout session identifier

        Returns:
            PaymentSession if found, None otherwise
        """
        result = await self.session.execute(
            select(PaymentSession)
            .where(PaymentSession.session_id == session_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_processed(
        self,
        session_id: str,
        processed_at: datetime,
        credits_granted: int,
        source: GrantSource,
    ) -> bool:
        """Transition processed_at from NULL to a timestamp (compare-and-set).

        Query explanation:
        - WHERE session_id = :id AND processed_at IS NULL: Only an unprocessed session matches
        - Concurrent callers serialize on the row lock; the loser re-evaluates
          the WHERE clause after the winner commits and matches zero rows

        Args:
            session_id: Payment processor checkout session identifier
            processed_at: Grant timestamp
            credits_granted: Credits being applied by this grant
            source: Confirmation path performing the grant

        Returns:
            True if this call won the transition, False if already processed
        """
        result = await self.session.execute(
            update(PaymentSession)
            .where(PaymentSession.session_id == session_id)  # type: ignore[arg-type]
            .where(PaymentSession.processed_at.is_(None))  # type: ignore[union-attr]
            .values(
                processed_at=processed_at,
                credits_granted=credits_granted,
                grant_source=source,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_by_user(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[PaymentSession]:
        """Retrieve a user's checkout sessions, newest first.

        Args:
            user_id: External user identifier
            limit: Maximum number of sessions to return (default: 50)
            offset: Number of sessions to skip (default: 0)

        Returns:
            List of payment sessions ordered by creation time (newest first)
        """
        result = await self.session.execute(
            select(PaymentSession)
            .where(PaymentSession.user_id == user_id)  # type: ignore[arg-type]
            .order_by(PaymentSession.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
