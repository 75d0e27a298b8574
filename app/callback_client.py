import asyncio
import logging
from typing import Optional, Set

import httpx

from .config import Settings
from .models import FinalResultPayload

logger = logging.getLogger(__name__)

# ======================================================================
# TERMINAL NOTIFIER: ONE-SHOT, NON-BLOCKING, BOUNDED RETRY
# ----------------------------------------------------------------------
# 1. notify() schedules send_final_result_with_retry() as a background
#    task, so the turn response is never delayed by the endpoint.
# 2. Bounded attempts with exponential backoff between them.
# 3. Exhausted retries are logged and dropped; the session is not
#    re-armed, so the report goes out at most once per session.
# ======================================================================


async def send_final_result(payload: FinalResultPayload, url: str, timeout: float = 5.0,
                            client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Single POST of the final report.
    Returns True on a 2xx response, False otherwise.
    """
    data = payload.model_dump()
    try:
        if client is not None:
            response = await client.post(url, json=data, timeout=timeout)
        else:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.post(url, json=data, timeout=timeout)
    except httpx.HTTPError as e:
        logger.error(f"Callback failed for {payload.sessionId}: {e}")
        return False

    logger.info(f"Callback response for {payload.sessionId}: status={response.status_code}")
    return response.is_success


async def send_final_result_with_retry(
    payload: FinalResultPayload,
    url: str,
    max_attempts: int = 3,
    timeout: float = 5.0,
    base_delay: float = 1.0,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Up to max_attempts POSTs, sleeping base_delay, 2*base_delay, ... in between."""
    for attempt in range(1, max_attempts + 1):
        if await send_final_result(payload, url, timeout, client):
            logger.info(f"Callback succeeded on attempt {attempt} ({payload.sessionId})")
            return True

        if attempt < max_attempts:
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"Callback attempt {attempt} failed, retrying in {delay}s...")
            await asyncio.sleep(delay)

    logger.error(f"Callback dropped after {max_attempts} attempts ({payload.sessionId})")
    return False


class CallbackNotifier:
    """Fire-and-forget sender; keeps task references alive until they finish."""

    def __init__(self, settings: Settings, base_delay: float = 1.0):
        self.url = settings.callback_url
        self.attempts = settings.callback_attempts
        self.timeout = settings.callback_timeout_s
        self.base_delay = base_delay
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, payload: FinalResultPayload) -> asyncio.Task:
        task = asyncio.create_task(
            send_final_result_with_retry(payload, self.url, self.attempts, self.timeout, self.base_delay)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Callback dispatched (non-blocking) for session {payload.sessionId}")
        return task

    async def drain(self) -> None:
        """Wait for in-flight reports, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
