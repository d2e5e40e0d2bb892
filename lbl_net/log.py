import sys
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import StrEnum
from functools import wraps
from pathlib import Path
from typing import Final, ParamSpec, TypeVar

from loguru import logger

LOG_FORMAT: Final[str] = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level>"
    " | {extra[name]} | <level>{message}</level>"
)


class LogLevel(StrEnum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def setup_logging(log_level: LogLevel, *, log_file: Path | None = None) -> None:
    """Log to stderr and, when ``log_file`` is given, also to that file.

    Records carry the component name bound with ``logger.bind(name=...)``.
    The file sink is queued so worker threads never block on disk writes.
    """
    logger.remove()
    logger.configure(extra={"name": "lbl_net"})
    logger.add(sys.stderr, level=log_level.value, format=LOG_FORMAT)
    if log_file is not None:
        logger.add(log_file, level=log_level.value, format=LOG_FORMAT, enqueue=True)


P = ParamSpec("P")
R = TypeVar("R")


def log_result(log_level: LogLevel) -> Callable[[Callable[P, R]], Callable[P, R]]:
    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            result = func(*args, **kwargs)
            shown = f"{result:.6g}" if isinstance(result, float) else f"{result}"
            logger.log(log_level.value, f"{func.__name__} returned {shown}")
            return result

        return wrapper

    return decorator


@contextmanager
def log_time(template: str, *, log_level: LogLevel = LogLevel.TRACE) -> Iterator[float]:
    start_time = time.perf_counter()
    yield start_time
    logger.log(log_level.value, template.format(time_taken=time.perf_counter() - start_time))
