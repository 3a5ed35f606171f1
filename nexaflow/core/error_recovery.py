"""Retry policy for storage writes and node attempts, plus component health checks."""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

from .exceptions import NexaflowError, StorageError
from .logging import get_logger, RetryLogger


logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Exponential backoff: the delay after attempt ``n`` is ``base_delay * exponential_base ** (n - 1)``.

    Engine errors are retried when they are marked ``recoverable``; other
    exceptions only when they are instances of ``retryable_exceptions``.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = (StorageError,)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exception, NexaflowError):
            return exception.recoverable
        return isinstance(exception, self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated function according to ``config``."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            retry_logger = RetryLogger(func.__name__)
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        if attempt > 1:
                            retry_logger.gave_up(e, attempt)
                        raise
                    delay = config.get_delay(attempt)
                    retry_logger.attempt_failed(e, attempt, config.max_attempts, delay)
                    time.sleep(delay)
                    attempt += 1
                    continue
                if attempt > 1:
                    retry_logger.recovered(attempt)
                return result
        return wrapper

    return decorator


HealthCheck = Callable[[], Union[Dict[str, Any], str, Awaitable[Any]]]


@dataclass
class _RegisteredCheck:
    func: HealthCheck
    timeout: float


@dataclass
class HealthChecker:
    """Named component checks. A check returns details or raises to report itself unhealthy."""
    checks: Dict[str, _RegisteredCheck] = field(default_factory=dict)
    last_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def register_check(self, name: str, check_func: HealthCheck, timeout: float = 5.0):
        self.checks[name] = _RegisteredCheck(check_func, timeout)
        logger.debug(f"Registered health check: {name}")

    def clear(self):
        self.checks.clear()
        self.last_results.clear()

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run one check; synchronous checks run in a worker thread under the same timeout."""
        check = self.checks.get(name)
        if check is None:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        start = time.time()
        if asyncio.iscoroutinefunction(check.func):
            pending = check.func()
        else:
            pending = asyncio.to_thread(check.func)

        try:
            outcome = await asyncio.wait_for(pending, timeout=check.timeout)
            result: Dict[str, Any] = {"status": "healthy", "message": "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
            elif isinstance(outcome, str):
                result["message"] = outcome
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {check.timeout}s"}
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.time() - start) * 1000, 2)
        result["timestamp"] = datetime.utcnow().isoformat()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        names = list(self.checks)
        results = dict(zip(names, await asyncio.gather(*(self.run_check(n) for n in names))))
        healthy = all(r["status"] == "healthy" for r in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }


health_checker = HealthChecker()
