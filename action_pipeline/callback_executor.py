"""
Runs user callbacks with a timeout and optional retries
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from .utils import elapsed_since, resolve

logger = logging.getLogger(__name__)


@dataclass
class CallbackExecutionResult:
    """Outcome of a callback execution"""
    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    timed_out: bool = False
    execution_time: float = 0.0


class CallbackExecutor:
    """Executes sync or async callbacks under a deadline"""

    def __init__(self, default_timeout: Optional[float] = 10.0):
        self.default_timeout = default_timeout
        self.executions = 0
        self.failures = 0
        self.timeouts = 0

    async def execute(
        self,
        callback: Callable[..., Any],
        args: Sequence[Any] = (),
        timeout: Optional[float] = None,
        retries: int = 0,
        retry_delay: float = 0.1,
        backoff: float = 1.0
    ) -> CallbackExecutionResult:
        """
        Execute a callback, retrying on failure.

        Args:
            callback: Function to call; coroutine results are awaited
            args: Positional arguments for the callback
            timeout: Seconds per attempt; ``None`` uses the executor default
            retries: Extra attempts after the first failure
            retry_delay: Seconds to wait before the first retry
            backoff: Multiplier applied to the delay after each retry

        Returns:
            CallbackExecutionResult describing the last attempt
        """
        timeout = self.default_timeout if timeout is None else timeout
        start = time.perf_counter()
        delay = retry_delay
        outcome = CallbackExecutionResult(success=False)
        self.executions += 1

        for attempt in range(1, retries + 2):
            outcome.attempts = attempt
            try:
                value = await asyncio.wait_for(resolve(callback(*args)), timeout)
                outcome.success = True
                outcome.result = value
                outcome.error = None
                outcome.timed_out = False
                break
            except asyncio.TimeoutError as e:
                outcome.timed_out = True
                outcome.error = TimeoutError(f"Callback timed out after {timeout}s")
                outcome.error.__cause__ = e
                logger.warning(f"Callback {_name(callback)} timed out (attempt {attempt})")
            except Exception as e:
                outcome.timed_out = False
                outcome.error = e
                logger.warning(f"Callback {_name(callback)} failed (attempt {attempt}): {e}")

            if attempt <= retries:
                await asyncio.sleep(delay)
                delay *= backoff

        if not outcome.success:
            self.failures += 1
            if outcome.timed_out:
                self.timeouts += 1

        outcome.execution_time = elapsed_since(start)
        return outcome


def _name(callback: Callable[..., Any]) -> str:
    return getattr(callback, "__name__", repr(callback))
