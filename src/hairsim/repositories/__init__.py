"""Repository layer for hairsim backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from hairsim.repositories.payment_session import PaymentSessionRepository
from hairsim.repositories.user_quota import UserQuotaRepository

__all__ = [
    "UserQuotaRepository",
    "PaymentSessionRepository",
]
