"""UserQuota repository for hairsim backend.

Every counter mutation is a single conditional UPDATE so that concurrent
generation commits and payment grants for the same user never lose updates.
"""

from datetime import date, datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hairsim.core.timezone import utcnow
from hairsim.models.user_quota import UserQuota


class UserQuotaRepository:
    """Repository for UserQuota entities.

    Methods:
    - get_by_user_id: Retrieve quota row
    - get_or_create: Retrieve quota row, creating it with tier defaults
    - reset_if_new_day: Roll the daily counter over (compare-and-set on last_reset_date)
    - reserve_free / reserve_credit: Hold one unit of a funding source at admission
    - settle_free / settle_credit: Convert a hold into a charge after delivery
    - release_free / release_credit: Hand a hold back after a failed generation
    - release_stale_reservations: Recover holds abandoned by a dead process
    - add_credits: balance = balance + n
    - get_credit_balance: Fresh balance read (bypasses identity map)
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user_id(self, user_id: str) -> UserQuota | None:
        """Retrieve quota state for a user.

        Always reloads the row so that counters changed by conditional
        updates in the same session are visible.

        Args:
            user_id: External user identifier

        Returns:
            UserQuota if found, None otherwise
        """
        result = await self.session.execute(
            select(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str, tier: str, free_daily_limit: int) -> UserQuota:
        """Retrieve quota state, creating a fresh row on first use.

        Args:
            user_id: External user identifier
            tier: Plan tier for newly created rows
            free_daily_limit: Daily free allowance for newly created rows

        Returns:
            Existing or newly created UserQuota
        """
        quota = await self.get_by_user_id(user_id)
        if quota is not None:
            return quota

        # Savepoint so a concurrent first insert for the same user only undoes this insert
        try:
            async with self.session.begin_nested():
                quota = UserQuota(user_id=user_id, tier=tier, free_daily_limit=free_daily_limit)
                self.session.add(quota)
        except IntegrityError:
            existing = await self.get_by_user_id(user_id)
            if existing is None:
                raise
            return existing
        return quota

    async def reset_if_new_day(self, user_id: str, today: date) -> bool:
        """Reset the daily free counter when the stored reset date is stale.

        Query explanation:
        - WHERE last_reset_date <> :today: Only the first caller of the day matches
        - SET used = 0, last_reset_date = :today: Roll over in one statement
        - Reservations of in-flight requests carry over and count against the new day

        Args:
            user_id: External user identifier
            today: Current calendar day (UTC)

        Returns:
            True if this call performed the reset, False if already current
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.last_reset_date != today)  # type: ignore[arg-type]
            .values(free_generations_used_today=0, last_reset_date=today, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def reserve_free(self, user_id: str, now: datetime) -> bool:
        """Atomically hold one free generation for an in-flight request.

        Query explanation:
        - WHERE used + reserved < limit: Holds already taken by other
          in-flight requests count against the allowance
        - SET reserved = reserved + 1, reserved_at = :now

        Args:
            user_id: External user identifier
            now: Reservation timestamp (used to recover abandoned holds)

        Returns:
            True if a free generation was reserved, False if none is left
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(
                UserQuota.free_generations_used_today + UserQuota.free_reserved  # type: ignore[operator]
                < UserQuota.free_daily_limit
            )
            .values(free_reserved=UserQuota.free_reserved + 1, reserved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def reserve_credit(self, user_id: str, now: datetime) -> bool:
        """Atomically hold one purchased credit for an in-flight request.

        Query explanation:
        - WHERE balance > reserved: At least one credit is not held yet
        - SET reserved = reserved + 1, reserved_at = :now

        Returns:
            True if a credit was reserved, False if every credit is spent or held
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.credit_balance > UserQuota.credits_reserved)  # type: ignore[arg-type]
            .values(
                credits_reserved=UserQuota.credits_reserved + 1, reserved_at=now, updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def settle_free(self, user_id: str) -> bool:
        """Turn one free reservation into a used free generation.

        Query explanation:
        - WHERE reserved > 0 AND used < limit: A hold exists for this charge
        - SET used = used + 1, reserved = reserved - 1

        Returns:
            True if charged, False if no reservation was outstanding
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.free_reserved > 0)  # type: ignore[arg-type]
            .where(UserQuota.free_generations_used_today < UserQuota.free_daily_limit)  # type: ignore[arg-type]
            .values(
                free_generations_used_today=UserQuota.free_generations_used_today + 1,
                free_reserved=UserQuota.free_reserved - 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def settle_credit(self, user_id: str) -> bool:
        """Turn one credit reservation into a spent credit.

        Returns:
            True if charged, False if no reservation was outstanding
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.credits_reserved > 0)  # type: ignore[arg-type]
            .where(UserQuota.credit_balance > 0)  # type: ignore[arg-type]
            .values(
                credit_balance=UserQuota.credit_balance - 1,
                credits_reserved=UserQuota.credits_reserved - 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release_free(self, user_id: str) -> bool:
        """Hand back one free reservation without charging."""
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.free_reserved > 0)  # type: ignore[arg-type]
            .values(free_reserved=UserQuota.free_reserved - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release_credit(self, user_id: str) -> bool:
        """Hand back one credit reservation without charging."""
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.credits_reserved > 0)  # type: ignore[arg-type]
            .values(credits_reserved=UserQuota.credits_reserved - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release_stale_reservations(self, user_id: str, cutoff: datetime) -> bool:
        """Drop every hold of a user whose newest reservation predates cutoff.

        Reservations are left behind only when a process dies mid-generation.
        Every request of the user is bounded by the generation timeout, so once
        the latest hold is older than cutoff no request can still settle it.

        Query explanation:
        - WHERE reserved_at < :cutoff AND (free_reserved > 0 OR credits_reserved > 0)
        - SET free_reserved = 0, credits_reserved = 0, reserved_at = NULL

        Returns:
            True if abandoned reservations were dropped
        """
        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .where(UserQuota.reserved_at < cutoff)  # type: ignore[arg-type, operator]
            .where(or_(UserQuota.free_reserved > 0, UserQuota.credits_reserved > 0))  # type: ignore[arg-type]
            .values(free_reserved=0, credits_reserved=0, reserved_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def add_credits(self, user_id: str, amount: int) -> bool:
        """Atomically increase the credit balance.

        Args:
            user_id: External user identifier
            amount: Number of credits to add (must be positive)

        Returns:
            True if the user row existed and was updated

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
            .values(credit_balance=UserQuota.credit_balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_credit_balance(self, user_id: str) -> int:
        """Read the current credit balance straight from the database.

        Args:
            user_id: External user identifier

        Returns:
            Current balance, 0 if the user has no quota row
        """
        result = await self.session.execute(
            select(UserQuota.credit_balance).where(UserQuota.user_id == user_id)  # type: ignore[arg-type]
        )
        balance = result.scalar_one_or_none()
        return balance or 0
