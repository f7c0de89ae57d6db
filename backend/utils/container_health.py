"""
Shared container health helpers.

Used by:
- Orchestrator-side updates (updates/docker_executor.py) for the health gate
  between starting the new container and removing the old one
- The health monitor and self-update controller, which read the same
  State.Health fields through the helpers below
"""

import asyncio
import time
import logging
from typing import Any, Dict, Optional

import docker

from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
UNHEALTHY = 'unhealthy'


def get_health_state(attrs: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """State.Health of an inspect result, or None when no HEALTHCHECK is configured."""
    return ((attrs or {}).get('State') or {}).get('Health') or None


def has_healthcheck(attrs: Optional[Dict[str, Any]]) -> bool:
    return get_health_state(attrs) is not None


def get_health_status(attrs: Optional[Dict[str, Any]]) -> Optional[str]:
    health = get_health_state(attrs)
    return health.get('Status') if health else None


def is_running(attrs: Optional[Dict[str, Any]]) -> bool:
    return bool(((attrs or {}).get('State') or {}).get('Running', False))


def normalize_container_name(name: Optional[str]) -> str:
    """Inspect returns names with a leading slash ("/dockguard")."""
    if not name:
        return ''
    return name[1:] if name.startswith('/') else name


async def wait_for_container_health(
    client: docker.DockerClient,
    container_id: str,
    timeout: int = 120,
    interval: float = 1.0,
    stability_seconds: float = 3.0,
) -> bool:
    """
    Wait for container to become healthy or stable.

    1. Wait for container to reach "running" state (up to timeout)
    2. If container has Docker HEALTHCHECK: Poll for "healthy" status (up to timeout)
       - Short-circuits immediately when "healthy" detected
       - Returns False immediately if "unhealthy" detected
    3. If no health check: wait stability_seconds, verify still running

    Args:
        client: Docker SDK client instance
        container_id: Container ID
        timeout: Maximum time to wait in seconds
        interval: Delay between inspections in seconds

    Returns:
        True if container is healthy/stable
        False if container is unhealthy, crashed, or timeout reached
    """
    start_time = time.time()

    while time.time() - start_time < timeout:
        try:
            container = await async_docker_call(client.containers.get, container_id)
            attrs = container.attrs

            if not is_running(attrs):
                # Container might still be starting up
                await asyncio.sleep(interval)
                continue

            status = get_health_status(attrs)
            if has_healthcheck(attrs):
                if status == HEALTHY:
                    logger.info(f"Container {container_id} is healthy")
                    return True
                elif status == UNHEALTHY:
                    logger.error(f"Container {container_id} is unhealthy")
                    return False
                logger.debug(f"Container {container_id} health status: {status}, waiting...")
                await asyncio.sleep(interval)
            else:
                logger.info(
                    f"Container {container_id} has no health check, waiting {stability_seconds}s for stability"
                )
                await asyncio.sleep(stability_seconds)

                # Catch quick crashes
                container = await async_docker_call(client.containers.get, container_id)
                if is_running(container.attrs):
                    logger.info(f"Container {container_id} stable, considering healthy")
                    return True
                logger.error(f"Container {container_id} crashed within {stability_seconds}s of starting")
                return False

        except docker.errors.NotFound:
            logger.error(f"Container {container_id} not found during health check")
            return False
        except Exception as e:
            logger.error(f"Error checking container health: {e}")
            return False

    logger.error(f"Health check timeout after {timeout}s for container {container_id}")
    return False
