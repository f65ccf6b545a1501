"""Bounded retry with exponential backoff."""
import logging
import time

logger = logging.getLogger("dbwatch.backoff")


def backoff_delay(attempt, base_delay=0.5, max_delay=30.0):
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


def retry_with_backoff(func, attempts=3, base_delay=0.5, max_delay=30.0,
                       retry_on=(Exception,), cancel=None, description="operation"):
    """Call ``func`` until it succeeds or ``attempts`` calls have failed.

    Waits between attempts use ``cancel.wait`` when a cancel event is given so
    that shutdown interrupts the backoff. The last exception is re-raised once
    the budget is exhausted or cancellation is requested.
    """
    attempts = max(1, int(attempts))
    last_error = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as e:
            last_error = e
            if attempt + 1 >= attempts:
                break
            wait = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"{description} failed: {e} (attempt {attempt + 1}/{attempts}, retrying in {wait:.2f}s)")
            if cancel is not None:
                if cancel.wait(wait):
                    logger.info(f"{description} retry abandoned: shutdown requested")
                    break
            elif wait > 0:
                time.sleep(wait)
    raise last_error
