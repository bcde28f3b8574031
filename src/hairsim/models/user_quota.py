"""UserQuota entity - Daily free allowance and purchased credit balance per user."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from hairsim.core.timezone import utc_today, utcnow


class UserQuota(SQLModel, table=True):
    """UserQuota is the persisted quota state of a single user.

    Counters are only ever changed through conditional UPDATE statements in
    UserQuotaRepository, never by assigning attributes and flushing.

    Admission reserves one unit of the chosen funding source
    (free_reserved or credits_reserved); a delivered generation converts the
    reservation into a charge, a failed one hands it back.
    """

    __tablename__ = "user_quotas"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_user_quotas_credit_balance_non_negative"),
        CheckConstraint(
            "free_generations_used_today <= free_daily_limit",
            name="ck_user_quotas_free_usage_within_limit",
        ),
        CheckConstraint("free_reserved >= 0", name="ck_user_quotas_free_reserved_non_negative"),
        CheckConstraint(
            "credits_reserved >= 0", name="ck_user_quotas_credits_reserved_non_negative"
        ),
    )

    user_id: str = Field(primary_key=True, max_length=128)
    tier: str = Field(default="free", max_length=50)
    free_generations_used_today: int = Field(default=0, ge=0)
    free_daily_limit: int = Field(default=3, ge=0)
    credit_balance: int = Field(default=0, ge=0)
    free_reserved: int = Field(default=0, ge=0)
    credits_reserved: int = Field(default=0, ge=0)
    reserved_at: Optional[datetime] = Field(default=None)
    last_reset_date: date = Field(default_factory=utc_today)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default=None)

    @property
    def free_remaining(self) -> int:
        return max(0, self.free_daily_limit - self.free_generations_used_today - self.free_reserved)

    @property
    def credits_available(self) -> int:
        return max(0, self.credit_balance - self.credits_reserved)
