"""
Health Monitor

After an ordinary (non-self) container update, watches the new container for
a bounded window and rolls it back to the newest image backup if Docker
reports it unhealthy.

Each monitor owns two asyncio tasks:
- a poll loop that inspects the container every interval_ms, skipping a tick
  while the previous inspection is still outstanding
- a one-shot window timer; when it fires without an unhealthy verdict the
  update is considered good and monitoring stops

Both are cleared together on every terminal transition. A monitor performs at
most one terminal action: one rollback attempt, or a silent stop.

The monitor decides *when* to roll back. *How* a container is rebuilt from its
inspected spec is delegated to the ContainerRecreator in the options.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from audit.audit_logger import AuditAction, AuditStatus, log_update_audit
from updates.types import HealthMonitorOptions
from utils.async_docker import async_docker_call
from utils.container_health import HEALTHY, UNHEALTHY, get_health_state
from utils.docker_errors import get_error_message
from utils.metrics import record_rollback

logger = logging.getLogger(__name__)


class HealthMonitorHandle:
    """
    Cancellation handle for one monitoring window.

    cancel() is idempotent: after expiry, after a rollback, or when called
    twice it does nothing. A rollback already in progress is not interrupted.
    """

    def __init__(self, options: HealthMonitorOptions):
        self.options = options
        self.last_status: Optional[str] = None
        self.checks_performed = 0
        self.rollback_attempted = False

        self._poll_task: Optional[asyncio.Task] = None
        self._window_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None
        self._check_in_flight = False
        self._stopped = False
        self._rolling_back = False
        self._finished = asyncio.Event()
        self._done_callbacks: List[Callable[['HealthMonitorHandle'], None]] = []

    @property
    def stopped(self) -> bool:
        """True once polling has been torn down for any reason"""
        return self._stopped

    @property
    def finished(self) -> bool:
        """True once monitoring is over and any rollback has completed"""
        return self._finished.is_set()

    def add_done_callback(self, callback: Callable[['HealthMonitorHandle'], None]):
        """Call callback(handle) once monitoring is over, or now if it already is."""
        if self.finished:
            callback(self)
        else:
            self._done_callbacks.append(callback)

    def _mark_finished(self):
        if self._finished.is_set():
            return
        self._finished.set()
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Error in health monitor done callback: {e}", exc_info=True)

    def _start(self):
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._window_task = asyncio.create_task(self._window_timer())

    def _stop_timers(self) -> bool:
        """Clear both timers. Returns False if they were already cleared."""
        if self._stopped:
            return False
        self._stopped = True

        current = asyncio.current_task()
        for task in (self._poll_task, self._window_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        if not self._rolling_back:
            self._mark_finished()
        return True

    def cancel(self):
        if self._stop_timers():
            logger.info(f"Health monitoring cancelled for container {self.options.container_name}")

    async def wait(self):
        """Wait until monitoring is over (expiry, cancellation, or rollback finished)."""
        await self._finished.wait()

    async def _poll_loop(self):
        interval = self.options.interval_ms / 1000
        while not self._stopped:
            await asyncio.sleep(interval)
            if self._stopped:
                break
            if self._check_in_flight:
                logger.debug(
                    f"Previous inspection of {self.options.container_name} still running, skipping tick"
                )
                continue
            self._check_in_flight = True
            self._check_task = asyncio.create_task(self._run_check())

    async def _run_check(self):
        try:
            await self._inspect_and_handle()
        except Exception as e:
            logger.warning(
                f"Error inspecting container {self.options.container_name} "
                f"during health monitoring: {get_error_message(e)}"
            )
        finally:
            self._check_in_flight = False

    async def _inspect_and_handle(self):
        opts = self.options
        container = await async_docker_call(opts.docker_client.containers.get, opts.container_id)
        self.checks_performed += 1

        # Result arrived after expiry or cancellation
        if self._stopped:
            return

        health = get_health_state(container.attrs)
        if health is None:
            logger.warning(
                f"Container {opts.container_name} has no HEALTHCHECK defined, stopping health monitoring"
            )
            self._stop_timers()
            return

        status = health.get('Status')
        self.last_status = status
        if status != UNHEALTHY:
            return

        logger.warning(f"Container {opts.container_name} became unhealthy, initiating automatic rollback")
        self._rolling_back = True
        self._stop_timers()
        try:
            await self._perform_rollback()
        finally:
            self._mark_finished()

    async def _window_timer(self):
        await asyncio.sleep(self.options.window_ms / 1000)
        if self._stopped:
            return

        name = self.options.container_name
        logger.info(
            f"Health monitoring window expired for container {name}: no unhealthy status observed "
            f"(last status: {self.last_status or 'unknown'})"
        )
        if self.last_status != HEALTHY:
            # Absence of "unhealthy" is not the same as "healthy"
            logger.warning(
                f"Container {name} never reported healthy during the monitoring window; "
                f"keeping the update without a positive health verdict"
            )
        self._stop_timers()

    async def _perform_rollback(self):
        """Restore the newest backup image. Never raises."""
        opts = self.options
        name = opts.container_name
        ref = opts.container_ref

        try:
            backups = opts.backup_store.get_backups_by_name(name)
            if not backups:
                logger.warning(f"No backups found for container {name}, cannot auto-rollback")
                return

            latest_backup = backups[0]
            self.rollback_attempted = True
            backup_image = latest_backup.image_reference
            logger.info(f"Auto-rollback: restoring backup image {backup_image}")

            current_container = await opts.recreator.get_current_container(opts.docker_client, ref)
            if current_container is None:
                logger.warning(f"Container {name} not found, cannot auto-rollback")
                return

            spec = await opts.recreator.inspect_container(current_container, logger)
            await opts.recreator.stop_and_remove_container(current_container, spec, ref, logger)
            await opts.recreator.recreate_container(opts.docker_client, spec, backup_image, ref, logger)

            log_update_audit(
                opts.db,
                action=AuditAction.AUTO_ROLLBACK,
                container_name=name,
                status=AuditStatus.SUCCESS,
                from_version=opts.backup_image_tag,
                to_version=latest_backup.image_tag,
                details='Automatic rollback triggered by health check failure',
                container_image=latest_backup.image_name,
            )
            record_rollback('auto-rollback', 'success', 'unhealthy')
            logger.info(f"Auto-rollback of container {name} completed successfully")

        except Exception as e:
            message = get_error_message(e)
            logger.error(f"Auto-rollback failed for container {name}: {message}")
            record_rollback('auto-rollback', 'error', 'unhealthy')
            try:
                log_update_audit(
                    opts.db,
                    action=AuditAction.AUTO_ROLLBACK,
                    container_name=name,
                    status=AuditStatus.ERROR,
                    details=f"Auto-rollback failed: {message}",
                )
            except Exception as audit_error:
                logger.error(f"Could not record auto-rollback failure for {name}: {audit_error}")


def start_health_monitor(options: HealthMonitorOptions) -> HealthMonitorHandle:
    """
    Start monitoring a container's health after an update.

    Must be called from a running event loop.

    Returns:
        HealthMonitorHandle used to cancel or await the monitor
    """
    if options.window_ms <= 0 or options.interval_ms <= 0:
        raise ValueError(
            f"Health monitor window and interval must be positive "
            f"(window={options.window_ms}ms, interval={options.interval_ms}ms)"
        )

    logger.info(
        f"Starting health monitor for {options.container_name} "
        f"(window={options.window_ms}ms, interval={options.interval_ms}ms)"
    )
    handle = HealthMonitorHandle(options)
    handle._start()
    return handle
