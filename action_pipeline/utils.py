"""
Utility functions for action-pipeline
"""
import inspect
import logging
import os
import re
import time
import uuid
from typing import Any, Pattern

logger = logging.getLogger(__name__)

# Pre-compile regex pattern for better performance
ENV_VAR_PATTERN: Pattern[str] = re.compile(r'\$\{([^}]+)\}')


def substitute_env_vars(value: str, warn_missing: bool = True) -> str:
    """Substitute environment variables in a string.

    Args:
        value: String that may contain ${VAR_NAME} placeholders
        warn_missing: Whether to log warnings for missing variables

    Returns:
        String with environment variables substituted

    Example:
        >>> os.environ['ALLOWED_ORIGIN'] = 'catalog'
        >>> substitute_env_vars('${ALLOWED_ORIGIN}')
        'catalog'
    """
    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)

        if (var_value := os.environ.get(var_name)) is not None:
            return var_value

        if warn_missing:
            logger.warning(f"Environment variable ${{{var_name}}} is not set")
        return match.group(0)  # Return the original ${VAR_NAME}

    return ENV_VAR_PATTERN.sub(replace_var, value)


def generate_id(prefix: str) -> str:
    """Generate a process-unique identifier such as ``ctx_3f2a...``"""
    return f"{prefix}_{uuid.uuid4().hex}"


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged"""
    if inspect.isawaitable(value):
        return await value
    return value


def elapsed_since(start: float) -> float:
    """Seconds elapsed since a ``time.perf_counter()`` reading"""
    return time.perf_counter() - start
