"""
Upstream call helper: per-call timeout, at most one retry on timeout,
failures surfaced as UpstreamServiceError naming the dependency.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .errors import AIServiceError, UpstreamServiceError

logger = logging.getLogger(__name__)


async def call_with_timeout(
    dependency: str,
    call: Callable[[], Awaitable[Any]],
    timeout: float,
    max_retries: int = 1,
) -> Any:
    """
    Await call() under a timeout.

    Args:
        dependency: Name reported in errors and logs (embedding, vector_store, ...)
        call: Zero-argument factory returning a fresh awaitable per attempt
        timeout: Seconds allowed per attempt
        max_retries: Retries after a timeout (0 or 1)

    Raises:
        UpstreamServiceError: timeout on the last attempt, or any provider error
    """
    attempts = 1 + max(0, min(max_retries, 1))
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{dependency} call timed out after {timeout}s (attempt {attempt}/{attempts})",
                extra={"dependency": dependency},
            )
            if attempt == attempts:
                raise UpstreamServiceError(dependency, f"timed out after {timeout}s", timed_out=True)
        except AIServiceError:
            raise
        except Exception as e:
            logger.error(f"{dependency} call failed: {e}", extra={"dependency": dependency})
            raise UpstreamServiceError(dependency, str(e)) from e
