"""Generation request state machine.

    IDLE -> ADMITTED -> CACHE_CHECKED -> CACHE_HIT -> DONE
                                      -> GENERATING -> SUCCEEDED -> DONE
                                                    -> FAILED -> DONE

Quota is reserved before any work, charged only after a result was
delivered and handed back otherwise. Cache and job-tracker failures never
fail a request.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from hairsim.services.exceptions import (
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from hairsim.services.generation.cache import GenerationCache
from hairsim.services.generation.job_tracker import JobTracker, QueuePosition
from hairsim.services.generation.replicate_client import GenerationParams, HairstyleProvider
from hairsim.services.quota.ledger import AdmissionDecision, FundingSource, QuotaLedger

logger = structlog.get_logger()


class GenerationState(str, Enum):
    IDLE = "idle"
    ADMITTED = "admitted"
    CACHE_CHECKED = "cache_checked"
    CACHE_HIT = "cache_hit"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DONE = "done"


@dataclass(frozen=True)
class GenerationRequest:
    user_id: str
    image_content: str
    image_bytes: bytes
    style: str
    color: str = ""
    model: str = "replicate"
    gender: str = "male"

    @property
    def params(self) -> GenerationParams:
        return GenerationParams(
            style=self.style, color=self.color, model=self.model, gender=self.gender
        )


@dataclass(frozen=True)
class GenerationOutcome:
    result_reference: str
    cached: bool
    funding_source: FundingSource
    charged: bool
    job_id: Optional[str] = None
    queue_position: Optional[QueuePosition] = None


class GenerationOrchestrator:
    """Runs one generation request through quota, cache, tracker and provider."""

    def __init__(
        self,
        ledger: QuotaLedger,
        cache: GenerationCache,
        tracker: JobTracker,
        provider: HairstyleProvider,
        generation_timeout: float = 120.0,
        cache_ttl: Optional[int] = None,
        cache_hits_are_free: bool = True,
    ):
        """Initialize orchestrator.

        Args:
            ledger: Quota admission and charging
            cache: Generation result cache
            tracker: In-flight job bookkeeping
            provider: External AI generation call
            generation_timeout: Seconds before the provider call is abandoned
            cache_ttl: Lifetime of stored results (None uses the cache default)
            cache_hits_are_free: Serve cached results without charging quota
        """
        self.ledger = ledger
        self.cache = cache
        self.tracker = tracker
        self.provider = provider
        self.generation_timeout = generation_timeout
        self.cache_ttl = cache_ttl
        self.cache_hits_are_free = cache_hits_are_free

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """Admit, serve from cache or generate, then charge.

        The reservation taken at admission is committed once a result is
        delivered and released on every other exit, cancellation included.

        Raises:
            QuotaExceededError: Admission refused
            ProviderUnavailableError: Provider failed or unreachable
            ProviderRejectedError: Provider refused the input
            ProviderTimeoutError: Provider exceeded generation_timeout
        """
        user_id = request.user_id
        self._transition(user_id, GenerationState.IDLE)

        decision = await self.ledger.admit(user_id)
        self._transition(
            user_id, GenerationState.ADMITTED, funding_source=decision.funding_source.value
        )

        settled = False
        try:
            key = self.cache.key(
                self.cache.fingerprint(request.image_content),
                request.style,
                request.color,
                request.model,
                request.gender,
            )
            entry = await self.cache.get(key)
            self._transition(user_id, GenerationState.CACHE_CHECKED, hit=entry is not None)

            if entry is not None:
                self._transition(user_id, GenerationState.CACHE_HIT)
                charged = False
                if self.cache_hits_are_free:
                    settled = True
                    await self._release(decision)
                else:
                    charged = (await self.ledger.commit(decision)).charged
                    settled = True
                self._transition(user_id, GenerationState.DONE, cached=True, charged=charged)
                return GenerationOutcome(
                    result_reference=entry.result_reference,
                    cached=True,
                    funding_source=decision.funding_source,
                    charged=charged,
                )

            job_id = uuid.uuid4().hex
            position = self._begin_job(job_id, user_id)
            self._transition(user_id, GenerationState.GENERATING, job_id=job_id)

            succeeded = False
            try:
                result_reference = await asyncio.wait_for(
                    self.provider.generate(request.image_bytes, request.params),
                    timeout=self.generation_timeout,
                )
                succeeded = True
            except asyncio.TimeoutError as e:
                self._fail(user_id, job_id, "ProviderTimeout")
                raise ProviderTimeoutError(
                    f"Generation exceeded {self.generation_timeout:g}s timeout"
                ) from e
            except ProviderError as e:
                self._fail(user_id, job_id, e.kind)
                raise
            except asyncio.CancelledError:
                self._fail(user_id, job_id, "Cancelled")
                raise
            except Exception as e:
                self._fail(user_id, job_id, "ProviderUnavailable")
                raise ProviderUnavailableError(f"Generation failed: {e}") from e
            finally:
                self._end_job(job_id, success=succeeded)

            self._transition(user_id, GenerationState.SUCCEEDED, job_id=job_id)

            await self.cache.put(
                key,
                result_reference,
                ttl=self.cache_ttl,
                style=request.style,
                color=request.color,
                model=request.model,
            )
            commit = await self.ledger.commit(decision)
            settled = True
        finally:
            if not settled:
                await self._release(decision)

        self._transition(
            user_id, GenerationState.DONE, job_id=job_id, cached=False, charged=commit.charged
        )
        return GenerationOutcome(
            result_reference=result_reference,
            cached=False,
            funding_source=decision.funding_source,
            charged=commit.charged,
            job_id=job_id,
            queue_position=position,
        )

    async def _release(self, decision: AdmissionDecision) -> None:
        try:
            await self.ledger.release(decision)
        except Exception as e:
            logger.error(
                "generation.release_failed",
                user_id=decision.user_id,
                funding_source=decision.funding_source.value,
                error=str(e),
            )

    def _begin_job(self, job_id: str, user_id: str) -> Optional[QueuePosition]:
        try:
            return self.tracker.begin(job_id, user_id)
        except Exception as e:
            logger.warning("generation.tracker_failed", job_id=job_id, op="begin", error=str(e))
            return None

    def _end_job(self, job_id: str, success: bool) -> None:
        try:
            self.tracker.end(job_id, success)
        except Exception as e:
            logger.warning("generation.tracker_failed", job_id=job_id, op="end", error=str(e))

    def _fail(self, user_id: str, job_id: str, kind: str) -> None:
        self._transition(user_id, GenerationState.FAILED, job_id=job_id, error=kind)
        self._transition(user_id, GenerationState.DONE, job_id=job_id, cached=False, charged=False)

    @staticmethod
    def _transition(user_id: str, state: GenerationState, **context) -> None:
        logger.info(f"generation.{state.value}", user_id=user_id, **context)
