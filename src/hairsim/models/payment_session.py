"""PaymentSession entity - Checkout attempts and their one-time credit grant."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from hairsim.core.timezone import utcnow


class GrantSource(str, Enum):
    """Which confirmation path won the race to grant credits."""

    VERIFY = "verify"
    WEBHOOK = "webhook"


class PaymentSession(SQLModel, table=True):
    """PaymentSession records a checkout and whether its credits were granted.

    processed_at moves from NULL to a timestamp exactly once.
    """

    __tablename__ = "payment_sessions"  # type: ignore[assignment]

    session_id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=128)
    package_id: str = Field(max_length=50)
    credits_granted: int = Field(ge=0)
    amount_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="usd", max_length=3)
    processed_at: Optional[datetime] = Field(default=None)
    grant_source: Optional[GrantSource] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None
