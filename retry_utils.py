# -*- coding: utf-8 -*-
"""
Retry helpers: bounded linear retry for fetch cycles, backoff for reconnects.
"""

import logging
import time

logger = logging.getLogger(__name__)


def retry(fn, max_attempts=3, base_delay=1.0, sleep=time.sleep):
    """
    Call fn until it succeeds or max_attempts is used up.

    Waits base_delay * attempt seconds between attempts (linear backoff).

    Args:
        fn: Zero-argument callable
        max_attempts: Total number of calls before giving up
        base_delay: Delay unit in seconds
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        The last exception raised by fn once all attempts failed
    """
    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if attempt < max_attempts:
                logger.warning("Retry attempt %d failed: %s", attempt, e)
                sleep(base_delay * attempt)
    raise last_error


def backoff_delay(base_delay, attempt, max_delay):
    """Reconnect delay for the given attempt (1-based): grows by 1.5x, capped."""
    return min(base_delay * 1.5 ** (attempt - 1), max_delay)
