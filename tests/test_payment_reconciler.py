"""Tests for exactly-once credit grants in PaymentReconciler."""

import asyncio

import pytest

from hairsim.models.payment_session import GrantSource, PaymentSession
from hairsim.services.exceptions import ForbiddenError, PaymentSessionNotFoundError
from hairsim.services.payments.reconciler import PaymentReconciler


@pytest.fixture
def reconciler(uow_factory):
    return PaymentReconciler(uow_factory)


async def record_checkout(uow_factory, session_id="cs_test_1", user_id="user-1", credits=30):
    async with await uow_factory() as uow:
        await uow.payment_sessions.add(
            PaymentSession(
                session_id=session_id,
                user_id=user_id,
                package_id="popular",
                credits_granted=credits,
                amount_cents=499,
            )
        )


async def credit_balance(uow_factory, user_id: str) -> int:
    async with await uow_factory() as uow:
        return await uow.quotas.get_credit_balance(user_id)


@pytest.mark.asyncio
class TestReconcile:
    async def test_first_reconcile_grants_credits(self, reconciler, uow_factory):
        await record_checkout(uow_factory)

        result = await reconciler.reconcile("cs_test_1", "user-1", 30, GrantSource.VERIFY)

        assert result.granted is True
        assert result.credits_added == 30
        assert result.credit_balance == 30
        assert result.already_processed is False
        assert await credit_balance(uow_factory, "user-1") == 30

    async def test_winner_is_recorded_on_session(self, reconciler, uow_factory):
        await record_checkout(uow_factory)

        await reconciler.reconcile("cs_test_1", "user-1", 30, GrantSource.WEBHOOK)

        async with await uow_factory() as uow:
            payment_session = await uow.payment_sessions.get_by_session_id("cs_test_1")
        assert payment_session.is_processed
        assert payment_session.grant_source == GrantSource.WEBHOOK

    async def test_second_reconcile_reports_already_processed(self, reconciler, uow_factory):
        await record_checkout(uow_factory)
        await reconciler.reconcile("cs_test_1", "user-1", 30, GrantSource.WEBHOOK)

        result = await reconciler.reconcile("cs_test_1", "user-1", 30, GrantSource.VERIFY)

        assert result.granted is False
        assert result.credit_balance == 30
        assert result.to_dict()["alreadyProcessed"] is True
        assert await credit_balance(uow_factory, "user-1") == 30

    async def test_concurrent_reconciles_grant_exactly_once(self, reconciler, uow_factory):
        await record_checkout(uow_factory)
        sources = [GrantSource.VERIFY, GrantSource.WEBHOOK] * 3

        results = await asyncio.gather(
            *(reconciler.reconcile("cs_test_1", "user-1", 30, s) for s in sources)
        )

        assert sum(1 for r in results if r.granted) == 1
        assert sum(1 for r in results if not r.granted) == len(sources) - 1
        assert await credit_balance(uow_factory, "user-1") == 30

    async def test_grant_adds_to_existing_balance(self, reconciler, uow_factory):
        async with await uow_factory() as uow:
            await uow.quotas.get_or_create("user-1", "free", 3)
            await uow.quotas.add_credits("user-1", 5)
        await record_checkout(uow_factory, credits=10)

        result = await reconciler.reconcile("cs_test_1", "user-1", 10, GrantSource.VERIFY)

        assert result.credit_balance == 15

    async def test_other_users_session_is_forbidden(self, reconciler, uow_factory):
        await record_checkout(uow_factory, user_id="owner")

        with pytest.raises(ForbiddenError):
            await reconciler.reconcile("cs_test_1", "intruder", 30, GrantSource.VERIFY)

        async with await uow_factory() as uow:
            payment_session = await uow.payment_sessions.get_by_session_id("cs_test_1")
        assert payment_session.processed_at is None
        assert await credit_balance(uow_factory, "intruder") == 0
        assert await credit_balance(uow_factory, "owner") == 0

    async def test_unknown_session(self, reconciler):
        with pytest.raises(PaymentSessionNotFoundError):
            await reconciler.reconcile("cs_missing", "user-1", 30, GrantSource.VERIFY)

    async def test_non_positive_grant_is_rejected_without_processing(
        self, reconciler, uow_factory
    ):
        await record_checkout(uow_factory)

        with pytest.raises(ValueError):
            await reconciler.reconcile("cs_test_1", "user-1", 0, GrantSource.VERIFY)

        async with await uow_factory() as uow:
            payment_session = await uow.payment_sessions.get_by_session_id("cs_test_1")
        assert payment_session.processed_at is None
