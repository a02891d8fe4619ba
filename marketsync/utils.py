import functools
from datetime import datetime, timezone
from typing import Callable

from loguru import logger

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored by the datastore."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def log_job(func):
    """
    A decorator for scheduled coroutine jobs that logs entry, exit, and exceptions.

    Exceptions are logged and swallowed so a failing pass never stops the
    scheduler; the next interval runs normally.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.info(f"Entering job {func_name}")
        try:
            result = await func(*args, **kwargs)
            logger.info(f"Job {func_name} finished")
            return result
        except Exception as e:
            logger.error(f"Job {func_name} failed: {type(e).__name__}: {e}")
            return None

    return wrapper
