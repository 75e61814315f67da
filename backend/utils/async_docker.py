"""
Async wrappers for the Docker SDK.

docker-py is synchronous. Every engine call made by the update pipeline goes
through async_docker_call() so the event loop stays responsive while the
daemon pulls, stops or creates containers.

Usage:
    from utils.async_docker import async_docker_call

    attrs = await async_docker_call(client.api.inspect_container, "web")
"""

import asyncio
from typing import Callable, TypeVar

T = TypeVar('T')


async def async_docker_call(sync_fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Execute a synchronous Docker SDK call in the default thread pool.

    Args:
        sync_fn: Synchronous function to call (e.g., client.api.start)
        *args: Positional arguments to pass to sync_fn
        **kwargs: Keyword arguments to pass to sync_fn

    Returns:
        Result from the synchronous function
    """
    return await asyncio.to_thread(sync_fn, *args, **kwargs)
