from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from sessionward.logging import get_logger
from sessionward.service.errors import UnavailableError
from sessionward.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def run_blocking(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store/hash call in a worker thread under a deadline.

    A timeout or backend outage becomes ``UnavailableError``; it is never
    reported as a credential or token failure.
    """

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("blocking_call_timeout", operation=operation, timeout_seconds=timeout)
        raise UnavailableError(detail={"operation": operation}) from exc
    except StorageUnavailable as exc:
        logger.error("storage_unavailable", operation=operation, error=str(exc))
        raise UnavailableError(detail={"operation": operation}) from exc
