"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from hairsim.models.payment_session import GrantSource, PaymentSession
from hairsim.models.user_quota import UserQuota

__all__ = [
    "UserQuota",
    "PaymentSession",
    "GrantSource",
]
