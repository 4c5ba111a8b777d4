import time

import pytest

from sessionward.service.concurrency import run_blocking
from sessionward.service.errors import UnavailableError
from sessionward.storage.errors import StorageUnavailable


async def test_returns_result():
    assert await run_blocking(sum, [1, 2, 3], timeout=1.0, operation="sum") == 6


async def test_timeout_becomes_unavailable():
    with pytest.raises(UnavailableError) as exc_info:
        await run_blocking(time.sleep, 0.3, timeout=0.01, operation="slow_call")
    assert exc_info.value.detail == {"operation": "slow_call"}
    assert exc_info.value.retryable


async def test_storage_outage_becomes_unavailable():
    def outage():
        raise StorageUnavailable("connection refused")

    with pytest.raises(UnavailableError):
        await run_blocking(outage, timeout=1.0, operation="lookup")


async def test_other_errors_propagate():
    def broken():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await run_blocking(broken, timeout=1.0, operation="lookup")
