from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from .client import ReplicateClient
from .errors import RunnerError
from .reporter import Reporter

# rough wall-clock expectations used to pace the progress estimate
EXPECTED_SECONDS = {"image": 30.0, "audio": 15.0, "video": 120.0}
# the estimate stays below the 0.9 milestone written before downloads start
ESTIMATE_CEILING = 0.85


def estimate_progress(elapsed: float, tool: str) -> float:
    expected = EXPECTED_SECONDS.get(tool, EXPECTED_SECONDS["image"])
    return min(ESTIMATE_CEILING, 0.1 + (elapsed / expected) * 0.8)


async def wait_for_completion(
    prediction: Any,
    client: ReplicateClient,
    reporter: Reporter,
    *,
    tool: str = "image",
    poll_interval: float = 1.0,
    timeout: float = 300.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, Any]:
    """Poll ``prediction`` until it reaches a terminal status.

    Returns the succeeded prediction payload. Failure, cancellation, timeout
    and malformed responses raise ``RunnerError``; a timed-out prediction is
    left running remotely.
    """
    started = clock()
    last_status = None
    current = prediction

    while True:
        status = current.get("status") if isinstance(current, dict) else None
        if not status or not isinstance(status, str):
            raise RunnerError("replicate", "Unexpected response while polling prediction status.")

        if status != last_status:
            logger.info("prediction {} status {}", current.get("id"), status)
            last_status = status

        if status == "succeeded":
            return current
        if status == "failed":
            raise RunnerError("replicate_failed", str(current.get("error") or "Prediction failed."))
        if status == "canceled":
            raise RunnerError("replicate_canceled", "Prediction was canceled.")

        elapsed = clock() - started
        if elapsed > timeout:
            raise RunnerError("timeout", f"Prediction timed out after {round(timeout)}s.")

        reporter.progress(estimate_progress(elapsed, tool))

        await sleep(poll_interval)
        current = await client.get_prediction(current)
