"""
Async wrapper for blocking Docker SDK calls.

The docker SDK is synchronous. Every daemon call made from the event loop goes
through async_docker_call so a slow daemon never blocks registry checks.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def async_docker_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking Docker SDK call in a worker thread.

    Args:
        func: Docker SDK callable (e.g., client.containers.get)
        *args, **kwargs: Passed through to func

    Returns:
        Whatever func returns. Exceptions propagate unchanged.
    """
    return await asyncio.to_thread(functools.partial(func, *args, **kwargs))
