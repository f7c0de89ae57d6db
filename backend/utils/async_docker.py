"""
Async wrapper for blocking Docker SDK calls.

The Docker SDK is synchronous (requests over the unix socket). Every call made
from a coroutine goes through async_docker_call so a slow daemon never stalls
the event loop, and so tests have a single seam to patch.
"""

import asyncio
from typing import Any, Callable


async def async_docker_call(sync_fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking Docker SDK callable in a worker thread and return its result."""
    return await asyncio.to_thread(sync_fn, *args, **kwargs)
