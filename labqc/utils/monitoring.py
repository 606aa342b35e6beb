import functools
import logging
import time

logger = logging.getLogger(__name__)

def track_performance(func):
    """Log how long an async endpoint took, including failed calls"""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info(f"{func.__name__} completed in {elapsed_ms:.1f} ms")

    return wrapper
