"""
Retry wrapper for workbook writes.

Excel Online rejects writes while another session holds the workbook. Those
errors are retried on a fixed schedule; anything else fails immediately.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence


log = logging.getLogger("edcrm.resilience")

LOCK_ERROR_MARKERS = ("resourcelocked", "editconflict", "workbookbusy")

DEFAULT_RETRY_DELAYS = (10, 20, 30)


def is_lock_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


async def resilient_write(
    write_function: Callable[[], Awaitable[Any]],
    on_final_failure: Callable[[BaseException], None],
    retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Optional[Any]:
    """
    Run a workbook write, retrying while the workbook is locked.

    Args:
        write_function: Zero-argument coroutine function performing the write
        on_final_failure: Called once with the last error when the write gives up
        retry_delays: Seconds to wait before each retry
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The write result, or None when the write failed

    Example:
        result = await resilient_write(
            lambda: add_row(credential, "Task", values),
            lambda err: log.error("Task not saved: %s", err),
        )
    """
    attempts = len(retry_delays) + 1
    for attempt in range(attempts):
        try:
            return await write_function()
        except Exception as e:
            if not is_lock_error(e):
                log.error("Workbook write failed: %s", e)
                on_final_failure(e)
                return None
            if attempt == attempts - 1:
                log.error("Workbook still locked after %d attempts: %s", attempts, e)
                on_final_failure(e)
                return None
            delay = retry_delays[attempt]
            log.warning(
                "Workbook locked (attempt %d of %d), retrying in %ss: %s",
                attempt + 1, attempts, delay, e,
            )
            await sleep(delay)
    return None
