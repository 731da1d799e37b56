import os
import sys
from functools import wraps
from time import perf_counter
from typing import Callable, Optional

from loguru import logger


class Logging:
    """
    Simulation log facade over loguru
    ---------------------------------------
    - stderr sink always, file sink when a dir is configured
    - date-based rotation and retention for the file sink
    - ``timed`` decorator for tick phases
    ---------------------------------------
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        rotation: str = "1 day",
        retention: str = "30 days",
        log_level: str = "INFO",
    ):
        self.log_dir = log_dir
        self.rotation = rotation
        self.retention = retention
        self.level = log_level
        self._configure()

    def _configure(self) -> None:
        logger.remove()
        logger.add(
            sink=sys.stderr,
            level=self.level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )
        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)
            logger.add(
                sink=f"{self.log_dir}/{{time:YYYY-MM-DD}}.log",
                rotation=self.rotation,
                retention=self.retention,
                level=self.level,
                format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
                enqueue=True,  # tick scheduler and action threads share the sink
                backtrace=True,
                diagnose=False,
            )

    # ----------- log methods -----------
    def debug(self, msg: str, *args, **kwargs):
        logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        logger.exception(msg, *args, **kwargs)

    # ---------- decorators ----------
    def timed(self, label: Optional[str] = None) -> Callable:
        def decorator(func: Callable):
            name = label or func.__name__

            @wraps(func)
            def wrapper(*args, **kwargs):
                start = perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    logger.debug(f"[TIME] {name} took {perf_counter() - start:.4f}s")

            return wrapper

        return decorator


def init_logging(config) -> Logging:
    """Reconfigure the global ``logs`` from a ``LogConfig``."""
    global logs
    logs = Logging(
        log_dir=config.dir,
        rotation=config.rotation,
        retention=config.retention,
        log_level=config.level,
    )
    return logs


# default global logs (replaced by init_logging)
logs = Logging()
