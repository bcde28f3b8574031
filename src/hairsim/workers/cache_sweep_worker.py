"""Cache sweep worker.

Expired local cache entries are already dropped when they are read; this
worker removes the ones nobody asks for again so the local tier does not
fill up with dead results. Redis expires its own keys.
"""

import asyncio

import structlog

from hairsim.core.config import Settings
from hairsim.services.generation.cache import GenerationCache

logger = structlog.get_logger()


async def run_cache_sweep_worker(cache: GenerationCache, settings: Settings) -> None:
    """Main worker loop for cache sweeping.

    Sweeps every CACHE_SWEEP_INTERVAL_SECONDS until cancelled.

    Args:
        cache: Generation cache shared with the request handlers
        settings: Application settings (sweep interval)
    """
    interval = settings.cache_sweep_interval_seconds

    logger.info("worker.started", worker="cache_sweep", interval_seconds=interval)

    try:
        while True:
            await asyncio.sleep(interval)
            try:
                cache.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="cache_sweep",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="cache_sweep")
        raise
