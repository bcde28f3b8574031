"""In-flight generation job tracking and wait-time estimation.

The tracker keeps no persistent state: a job exists from the moment a
generation is admitted on a cache miss until the provider call returns.
Wait estimates are advisory only; nothing here orders or schedules jobs.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3).

    Built-in round() rounds halves to even.
    """
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class WaitTimeEstimator:
    """Heuristic wait-time strategy.

    Jobs overlap on the provider side, so each queue position costs only a
    fraction (concurrency_factor) of the average processing time.
    """

    concurrency_factor: float = 0.8
    window_size: int = 50
    initial_average: float = 30.0

    def __post_init__(self):
        if not 0 < self.concurrency_factor <= 1:
            raise ValueError("concurrency_factor must be in (0, 1]")
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")

    def estimate(self, position: int, average_processing_time: float) -> int:
        return round_half_up(position * average_processing_time * self.concurrency_factor)

    def average(self, samples: deque) -> float:
        if not samples:
            return self.initial_average
        return sum(samples) / len(samples)


@dataclass
class GenerationJob:
    """A generation currently running against the provider."""

    job_id: str
    user_id: str
    started_at: float
    status: str = "processing"


@dataclass(frozen=True)
class QueuePosition:
    job_id: str
    position: int
    estimated_wait_seconds: int
    total_in_queue: int


@dataclass(frozen=True)
class QueueSnapshot:
    active_count: int
    average_processing_time: float
    estimated_wait_for_next: int


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    position: int
    total_in_queue: int
    elapsed_seconds: int
    estimated_remaining_seconds: int
    status: str


@dataclass
class JobTracker:
    """Bookkeeping of active generation jobs.

    Mutations take a single lock. snapshot() reads without it; the counters
    it reports may lag a concurrent begin()/end() by one update.
    """

    estimator: WaitTimeEstimator = field(default_factory=WaitTimeEstimator)
    time_fn: Callable[[], float] = time.monotonic

    def __post_init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, GenerationJob] = {}
        self._samples: deque = deque(maxlen=self.estimator.window_size)
        self._average = self.estimator.initial_average

    @property
    def average_processing_time(self) -> float:
        return self._average

    @property
    def active_count(self) -> int:
        return len(self._jobs)

    def begin(self, job_id: str, user_id: str) -> QueuePosition:
        """Register a job and report its position and estimated wait.

        Args:
            job_id: Unique job identifier (one per request)
            user_id: User who started the job

        Returns:
            QueuePosition with 1-based position including this job
        """
        with self._lock:
            self._jobs[job_id] = GenerationJob(
                job_id=job_id, user_id=user_id, started_at=self.time_fn()
            )
            position = len(self._jobs)
            estimated = self.estimator.estimate(position, self._average)

        logger.info(
            "queue.job_started",
            job_id=job_id,
            user_id=user_id,
            position=position,
            estimated_wait_seconds=estimated,
        )
        return QueuePosition(
            job_id=job_id,
            position=position,
            estimated_wait_seconds=estimated,
            total_in_queue=position,
        )

    def end(self, job_id: str, success: bool) -> None:
        """Remove a job; successful jobs feed the processing-time window.

        Removing an unknown or already removed job is a no-op.
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return
            if not success:
                return
            elapsed = self.time_fn() - job.started_at
            self._samples.append(elapsed)
            self._average = self.estimator.average(self._samples)
            average = self._average

        logger.info(
            "queue.average_updated",
            job_id=job_id,
            processing_seconds=round(elapsed, 2),
            average_processing_seconds=round(average, 2),
        )

    def snapshot(self) -> QueueSnapshot:
        active = len(self._jobs)
        average = self._average
        return QueueSnapshot(
            active_count=active,
            average_processing_time=average,
            estimated_wait_for_next=self.estimator.estimate(active + 1, average),
        )

    def get_job_position(self, job_id: str) -> Optional[JobProgress]:
        """Position of a running job in start order, or None if it is not active."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            position = list(self._jobs).index(job_id) + 1
            total = len(self._jobs)
            elapsed = self.time_fn() - job.started_at
            average = self._average

        return JobProgress(
            job_id=job_id,
            position=position,
            total_in_queue=total,
            elapsed_seconds=round_half_up(elapsed),
            estimated_remaining_seconds=round_half_up(max(0.0, average - elapsed)),
            status=job.status,
        )


def format_wait_time(seconds: float) -> str:
    """Format a wait estimate for display ("45 seconds", "2m 5s", "1h 3m")."""
    if seconds < 60:
        return f"{round_half_up(seconds)} seconds"
    if seconds < 3600:
        minutes = int(seconds // 60)
        secs = round_half_up(seconds % 60)
        if secs > 0:
            return f"{minutes}m {secs}s"
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    hours = int(seconds // 3600)
    minutes = round_half_up((seconds % 3600) / 60)
    return f"{hours}h {minutes}m"
