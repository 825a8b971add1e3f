import inspect
import time
import logging
from functools import wraps
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


def _describe(result: Any) -> str:
    if isinstance(result, bool) or result is None:
        return str(result)
    if isinstance(result, int):
        return f"{result} rows"
    if isinstance(result, dict):
        return ", ".join(f"{k}={v}" for k, v in result.items())
    return type(result).__name__


def log_execution(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Time a storage coroutine and log its outcome; failures are logged and re-raised."""
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"log_execution needs a coroutine function, got {func.__qualname__}")

    @wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        start = time.perf_counter()
        logger.debug(f"[START] {func.__qualname__}")
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            duration = time.perf_counter() - start
            logger.error(f"[ERROR] {func.__qualname__} failed after {duration:.3f}s: {e}")
            raise
        duration = time.perf_counter() - start
        logger.debug(f"[SUCCESS] {func.__qualname__} -> {_describe(result)} in {duration:.3f}s")
        return result

    return wrapper
