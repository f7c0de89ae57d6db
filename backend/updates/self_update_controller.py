"""
Self-Update Controller

Swaps DockGuard's own container for a freshly created candidate. This runs in
a separate, auto-removed helper container spawned by
DockerUpdateExecutor.execute_self_update(), because the process that started
the update is stopped halfway through it.

Phases are forward-only and each one is logged as

    [self-update:<opId>] <PHASE>[ - <details>]

1. STOP_OLD          stop the old container ("already stopped" is fine)
2. WAIT_OLD_STOPPED  poll until State.Running is false
3. START_NEW         start the candidate ("already started" is fine)
4. WAIT_NEW_RUNNING  poll until the candidate is running
5. HEALTH_GATE       wait for "healthy"; fail fast on "unhealthy";
                     skipped when the candidate has no HEALTHCHECK
6. COMMIT            force-remove the old container

Any failure in 1-6 enters rollback: remove the candidate, give the old
container its name back, start it again. Each rollback step is attempted even
if the previous one failed, and the error that caused the rollback is the one
re-raised.

Usage (inside the helper container):
    dockguard-self-update
    python -m updates.self_update_controller
"""

import asyncio
import logging
import sys
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import docker

from config.self_update import SelfUpdateConfigError, load_update_operation
from updates.errors import ContainerUnhealthyError, PhaseTimeoutError
from updates.types import SelfUpdatePhase, UpdateOperation
from utils.async_docker import async_docker_call
from utils.container_health import (
    HEALTHY,
    UNHEALTHY,
    get_health_status,
    has_healthcheck,
    is_running,
    normalize_container_name,
)
from utils.docker_errors import (
    get_error_message,
    is_container_already_started_error,
    is_container_already_stopped_error,
)

logger = logging.getLogger(__name__)

EXIT_COMMITTED = 0
EXIT_FAILED = 1
EXIT_INVALID_CONFIG = 2

# (condition met, details for the debug log)
CheckFn = Callable[[], Awaitable[Tuple[bool, str]]]


class SelfUpdateController:
    """
    Runs exactly one UpdateOperation to COMMIT or rollback.

    There is no external cancellation: once run() is entered it finishes on
    its own, bounded by the operation's timeouts.
    """

    def __init__(self, operation: UpdateOperation, docker_client: docker.DockerClient):
        self.operation = operation
        self.client = docker_client

    def log_phase(self, phase: SelfUpdatePhase, details: Optional[str] = None, level: int = logging.INFO):
        suffix = f" - {details}" if details else ""
        logger.log(level, f"[self-update:{self.operation.op_id}] {phase.value}{suffix}")

    async def _get_container(self, container_id: str) -> Any:
        return await async_docker_call(self.client.containers.get, container_id)

    async def _inspect(self, container_id: str) -> Dict[str, Any]:
        container = await self._get_container(container_id)
        return container.attrs

    async def _wait_for(
        self,
        check: CheckFn,
        timeout_ms: int,
        container_id: str,
        failure_message: str,
    ) -> None:
        """
        Poll check() at the fixed interval until it reports success.

        The deadline is elapsed wall-clock time since entry, so slow inspect
        calls eat into the budget rather than extending it.
        """
        interval = self.operation.poll_interval_ms / 1000
        started_at = time.time()

        while (time.time() - started_at) * 1000 < timeout_ms:
            ok, details = await check()
            if ok:
                return
            logger.debug(f"[self-update:{self.operation.op_id}] waiting ({details})")
            await asyncio.sleep(interval)

        raise PhaseTimeoutError(failure_message, container_id=container_id, timeout_ms=timeout_ms)

    async def stop_old_container(self):
        self.log_phase(SelfUpdatePhase.STOP_OLD)
        old_container = await self._get_container(self.operation.old_container_id)
        try:
            await async_docker_call(old_container.stop)
        except Exception as e:
            if not is_container_already_stopped_error(e):
                raise
            logger.debug(f"Old container {self.operation.old_container_id} was already stopped")

    async def wait_old_container_stopped(self):
        self.log_phase(SelfUpdatePhase.WAIT_OLD_STOPPED)
        old_id = self.operation.old_container_id

        async def check():
            attrs = await self._inspect(old_id)
            running = is_running(attrs)
            return not running, f"old-running={running}"

        await self._wait_for(
            check,
            self.operation.start_timeout_ms,
            old_id,
            f"Timed out waiting for old container {old_id} to stop",
        )

    async def start_new_container(self):
        self.log_phase(SelfUpdatePhase.START_NEW)
        new_container = await self._get_container(self.operation.new_container_id)
        try:
            await async_docker_call(new_container.start)
        except Exception as e:
            if not is_container_already_started_error(e):
                raise
            logger.debug(f"New container {self.operation.new_container_id} was already started")

    async def wait_new_container_running(self):
        self.log_phase(SelfUpdatePhase.WAIT_NEW_RUNNING)
        new_id = self.operation.new_container_id

        async def check():
            attrs = await self._inspect(new_id)
            running = is_running(attrs)
            return running, f"new-running={running}"

        await self._wait_for(
            check,
            self.operation.start_timeout_ms,
            new_id,
            f"Timed out waiting for new container {new_id} to enter running state",
        )

    async def wait_new_container_healthy(self):
        new_id = self.operation.new_container_id

        initial = await self._inspect(new_id)
        if not has_healthcheck(initial):
            self.log_phase(SelfUpdatePhase.HEALTH_GATE, "Skipped (container has no healthcheck)")
            return

        self.log_phase(SelfUpdatePhase.HEALTH_GATE)

        async def check():
            status = get_health_status(await self._inspect(new_id))
            if status == HEALTHY:
                return True, HEALTHY
            if status == UNHEALTHY:
                raise ContainerUnhealthyError(new_id)
            return False, f"health={status or 'none'}"

        await self._wait_for(
            check,
            self.operation.health_timeout_ms,
            new_id,
            f"Timed out waiting for new container {new_id} to become healthy",
        )

    async def commit_update(self):
        self.log_phase(SelfUpdatePhase.COMMIT)
        old_container = await self._get_container(self.operation.old_container_id)
        await async_docker_call(old_container.remove, force=True)
        self.log_phase(SelfUpdatePhase.SUCCEEDED)

    async def restore_old_container_name(self):
        """Rename the old container back if it still carries the temporary name."""
        old_container = await self._get_container(self.operation.old_container_id)
        current_name = normalize_container_name(old_container.attrs.get('Name'))
        wanted_name = self.operation.old_container_name
        if not current_name or current_name == wanted_name:
            return

        self.log_phase(SelfUpdatePhase.ROLLBACK_RESTORE_NAME, f"{current_name} -> {wanted_name}")
        await async_docker_call(old_container.rename, wanted_name)

    async def rollback(self, error: BaseException):
        """
        Best-effort restore of the old container.

        Never raises: every sub-step failure is logged and the next sub-step
        still runs.
        """
        reason = get_error_message(error)

        self.log_phase(SelfUpdatePhase.CLEANUP_CANDIDATE)
        try:
            candidate = await self._get_container(self.operation.new_container_id)
            await async_docker_call(candidate.remove, force=True)
        except Exception as cleanup_error:
            self.log_phase(
                SelfUpdatePhase.CLEANUP_CANDIDATE_FAILED,
                get_error_message(cleanup_error),
                level=logging.WARNING,
            )

        try:
            await self.restore_old_container_name()
        except Exception as rename_error:
            self.log_phase(
                SelfUpdatePhase.ROLLBACK_RESTORE_NAME_FAILED,
                get_error_message(rename_error),
                level=logging.WARNING,
            )

        self.log_phase(SelfUpdatePhase.ROLLBACK_START_OLD, reason)
        try:
            old_container = await self._get_container(self.operation.old_container_id)
            await async_docker_call(old_container.start)
        except Exception as start_error:
            if not is_container_already_started_error(start_error):
                self.log_phase(
                    SelfUpdatePhase.ROLLBACK_START_OLD_FAILED,
                    get_error_message(start_error),
                    level=logging.ERROR,
                )

        self.log_phase(SelfUpdatePhase.FAILED_WITH_ROLLBACK, reason, level=logging.ERROR)

    async def run(self):
        """
        Execute the operation.

        Raises:
            The original forward-path exception, after rollback was attempted
        """
        op = self.operation
        self.log_phase(
            SelfUpdatePhase.PREPARE,
            f"old={op.old_container_name}({op.old_container_id}), new={op.new_container_id}",
        )
        try:
            await self.stop_old_container()
            await self.wait_old_container_stopped()
            await self.start_new_container()
            await self.wait_new_container_running()
            await self.wait_new_container_healthy()
            await self.commit_update()
        except Exception as e:
            await self.rollback(e)
            raise


def main(
    environ: Optional[Mapping[str, str]] = None,
    docker_client: Optional[docker.DockerClient] = None,
) -> int:
    """
    Run one self-update from the environment contract.

    Returns:
        Process exit code: 0 committed, 1 failed (rolled back), 2 bad environment
    """
    try:
        operation = load_update_operation(environ)
    except SelfUpdateConfigError as e:
        logger.error(f"[self-update] invalid environment: {e}")
        return EXIT_INVALID_CONFIG

    try:
        client = docker_client or docker.from_env()
        asyncio.run(SelfUpdateController(operation, client).run())
    except Exception as e:
        logger.error(f"[self-update] controller failed: {get_error_message(e)}")
        return EXIT_FAILED

    return EXIT_COMMITTED


def cli():
    """Console entry point for the helper container"""
    from config.settings import setup_logging

    setup_logging(log_to_file=False)
    sys.exit(main())


if __name__ == "__main__":
    cli()
