"""Quota ledger: may this user generate right now, and what pays for it.

Funding sources, in order of preference:
1. Daily free allowance (resets on UTC midnight)
2. Purchased credits

Admission reserves one unit of the chosen source, so concurrent requests of
the same user cannot all be admitted against the last free generation or
credit. Nothing is charged until the generation has been delivered: commit
converts the reservation into a charge, release hands it back. The commit
step charges exactly the source chosen at admission; a free generation
delivered after UTC midnight counts against the new day.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable

import structlog

from hairsim.core.timezone import utc_today, utcnow
from hairsim.services.exceptions import QuotaExceededError
from hairsim.uow import UnitOfWorkFactory

logger = structlog.get_logger()


class FundingSource(str, Enum):
    FREE = "free"
    CREDIT = "credit"


@dataclass(frozen=True)
class AdmissionDecision:
    user_id: str
    funding_source: FundingSource
    admitted_on: date


@dataclass(frozen=True)
class CommitResult:
    funding_source: FundingSource
    charged: bool


@dataclass(frozen=True)
class QuotaReport:
    tier: str
    daily_limit: int
    used: int
    remaining: int
    credit_balance: int
    total_available: int

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "dailyLimit": self.daily_limit,
            "used": self.used,
            "remaining": self.remaining,
            "creditBalance": self.credit_balance,
            "totalAvailable": self.total_available,
        }


class QuotaLedger:
    """Single source of truth for generation admission and charging."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        default_tier: str = "free",
        free_daily_limit: int = 3,
        reservation_ttl: float = 600.0,
        today_fn: Callable[[], date] = utc_today,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        """Initialize ledger.

        Args:
            uow_factory: Unit of Work factory for database access
            default_tier: Tier assigned to users seen for the first time
            free_daily_limit: Daily free allowance for users seen for the first time
            reservation_ttl: Seconds after which a user's unsettled reservations
                are treated as abandoned (must exceed the generation timeout)
            today_fn: Calendar day provider, injectable for tests
            now_fn: Clock for reservation timestamps, injectable for tests
        """
        self.uow_factory = uow_factory
        self.default_tier = default_tier
        self.free_daily_limit = free_daily_limit
        self.reservation_ttl = reservation_ttl
        self.today_fn = today_fn
        self.now_fn = now_fn

    async def admit(self, user_id: str) -> AdmissionDecision:
        """Decide whether a generation may start and reserve what funds it.

        Every successful admission must be followed by exactly one commit or
        release of the returned decision.

        Raises:
            QuotaExceededError: No free generations left today and no credits
                that are not already held by in-flight requests
        """
        today = self.today_fn()
        now = self.now_fn()
        source = None
        quota = None

        async with await self.uow_factory() as uow:
            await uow.quotas.get_or_create(user_id, self.default_tier, self.free_daily_limit)
            cutoff = now - timedelta(seconds=self.reservation_ttl)
            if await uow.quotas.release_stale_reservations(user_id, cutoff):
                logger.warning("quota.stale_reservations_released", user_id=user_id)
            if await uow.quotas.reset_if_new_day(user_id, today):
                logger.info("quota.daily_reset", user_id=user_id, reset_date=today.isoformat())

            if await uow.quotas.reserve_free(user_id, now):
                source = FundingSource.FREE
            elif await uow.quotas.reserve_credit(user_id, now):
                source = FundingSource.CREDIT
            else:
                quota = await uow.quotas.get_by_user_id(user_id)

        if source is None:
            if quota is None:
                raise ValueError(f"Quota row for user {user_id} vanished during admission")
            logger.info(
                "quota.exceeded",
                user_id=user_id,
                used=quota.free_generations_used_today,
                daily_limit=quota.free_daily_limit,
                credit_balance=quota.credit_balance,
                in_flight=quota.free_reserved + quota.credits_reserved,
            )
            raise QuotaExceededError(
                remaining=0,
                credit_balance=quota.credit_balance,
                daily_limit=quota.free_daily_limit,
                used=quota.free_generations_used_today,
            )

        logger.info("quota.admitted", user_id=user_id, funding_source=source.value)
        return AdmissionDecision(user_id=user_id, funding_source=source, admitted_on=today)

    async def commit(self, decision: AdmissionDecision) -> CommitResult:
        """Charge the funding source reserved at admission.

        Call only after the generation was delivered. A free reservation is
        charged against the current day, rolling the counter over first if
        midnight passed since admission. If the reservation is gone (dropped
        as abandoned), nothing matches and the generation is absorbed.
        """
        user_id = decision.user_id

        async with await self.uow_factory() as uow:
            if decision.funding_source is FundingSource.FREE:
                today = self.today_fn()
                if await uow.quotas.reset_if_new_day(user_id, today):
                    logger.info(
                        "quota.daily_reset", user_id=user_id, reset_date=today.isoformat()
                    )
                charged = await uow.quotas.settle_free(user_id)
            else:
                charged = await uow.quotas.settle_credit(user_id)

        if charged:
            logger.info(
                "quota.committed",
                user_id=user_id,
                funding_source=decision.funding_source.value,
            )
        else:
            logger.warning(
                "quota.commit_absorbed",
                user_id=user_id,
                funding_source=decision.funding_source.value,
                admitted_on=decision.admitted_on.isoformat(),
            )
        return CommitResult(funding_source=decision.funding_source, charged=charged)

    async def release(self, decision: AdmissionDecision) -> bool:
        """Return the reservation of a generation that will not be charged."""
        async with await self.uow_factory() as uow:
            if decision.funding_source is FundingSource.FREE:
                released = await uow.quotas.release_free(decision.user_id)
            else:
                released = await uow.quotas.release_credit(decision.user_id)

        logger.info(
            "quota.released",
            user_id=decision.user_id,
            funding_source=decision.funding_source.value,
            released=released,
        )
        return released

    async def report(self, user_id: str) -> QuotaReport:
        """Current allowance and balance for display.

        Read-only: a stale day is reported as reset without writing it.
        Reservations of in-flight requests are not available.
        """
        today = self.today_fn()

        async with await self.uow_factory() as uow:
            quota = await uow.quotas.get_by_user_id(user_id)

        if quota is None:
            return QuotaReport(
                tier=self.default_tier,
                daily_limit=self.free_daily_limit,
                used=0,
                remaining=self.free_daily_limit,
                credit_balance=0,
                total_available=self.free_daily_limit,
            )

        used = quota.free_generations_used_today if quota.last_reset_date == today else 0
        remaining = max(0, quota.free_daily_limit - used - quota.free_reserved)
        return QuotaReport(
            tier=quota.tier,
            daily_limit=quota.free_daily_limit,
            used=used,
            remaining=remaining,
            credit_balance=quota.credit_balance,
            total_available=remaining + quota.credits_available,
        )
