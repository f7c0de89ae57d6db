"""
Docker SDK Update Executor

Drives a container update from the orchestrator side, with direct access to
the Docker socket.

Ordinary containers are updated in place:
1. Record the current image as a backup (rollback target)
2. Pull the new image
3. Rename the old container to <name>-old-<ts>
4. Create the new container under the original name
5. Stop old, start new, health gate (only if the old one was running)
6. Remove the old container
7. Optionally start the health monitor for post-update auto-rollback
8. Prune backups to the retention count

Any failure in 4-6 restores the old container (remove new, rename back,
restart) and is recorded as rollback telemetry with the step that failed.

DockGuard's own container cannot be swapped this way: stopping it kills the
process doing the swap. execute_self_update() prepares the candidate and hands
over to the self-update controller running in a short-lived helper container.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import docker

from audit.audit_logger import AuditAction, AuditStatus, log_update_audit
from config.self_update import build_helper_environment
from config.settings import AppConfig
from database import DatabaseManager
from event_bus import Event, EventBus, EventType, get_event_bus
from updates.backup_store import BackupStore
from updates.container_recreator import DockerContainerRecreator
from updates.health_monitor import HealthMonitorHandle, start_health_monitor
from updates.types import (
    HealthMonitorOptions,
    RollbackConfig,
    UpdateContext,
    UpdateOperation,
    UpdateResult,
    split_image_reference,
)
from utils.async_docker import async_docker_call
from utils.container_health import is_running, normalize_container_name, wait_for_container_health
from utils.docker_errors import get_error_message, is_container_already_stopped_error
from utils.metrics import record_rollback

logger = logging.getLogger(__name__)

# Container labels controlling post-update auto-rollback
LABEL_ROLLBACK_AUTO = 'dockguard.rollback.auto'
LABEL_ROLLBACK_WINDOW = 'dockguard.rollback.window'
LABEL_ROLLBACK_INTERVAL = 'dockguard.rollback.interval'

DEFAULT_ROLLBACK_WINDOW_MS = 300000
DEFAULT_ROLLBACK_INTERVAL_MS = 10000

# Labels put on the self-update helper container
LABEL_SELF_UPDATE_HELPER = 'dockguard.self-update.helper'
LABEL_SELF_UPDATE_OPERATION_ID = 'dockguard.self-update.operation-id'

SELF_UPDATE_HELPER_COMMAND = ['dockguard-self-update']

STOP_TIMEOUT_SECONDS = 30


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class DockerUpdateExecutor:
    """
    Executes container updates via Docker SDK.

    One instance is shared by the application; it keeps the health monitors
    it started so a later update of the same container cancels the earlier
    window.
    """

    def __init__(
        self,
        db: DatabaseManager,
        backup_store: Optional[BackupStore] = None,
        recreator: Optional[DockerContainerRecreator] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Args:
            db: Database manager for backups and audit rows
            backup_store: Backup store (defaults to one over db)
            recreator: Container recreation implementation
            event_bus: Bus for update events (defaults to the global bus)
        """
        self.db = db
        self.backup_store = backup_store or BackupStore(db)
        self.recreator = recreator or DockerContainerRecreator()
        self.event_bus = event_bus or get_event_bus()
        self.health_monitors: Dict[str, HealthMonitorHandle] = {}

    def is_self_update(self, image: str) -> bool:
        """True if image is DockGuard's own image (any registry, any tag)."""
        name, _ = split_image_reference(image)
        self_name = AppConfig.SELF_IMAGE_NAME
        return name == self_name or name.endswith(f"/{self_name}")

    def get_rollback_config(self, labels: Optional[Dict[str, str]]) -> RollbackConfig:
        """Read auto-rollback settings from container labels."""
        labels = labels or {}
        return RollbackConfig(
            auto_rollback=(labels.get(LABEL_ROLLBACK_AUTO) or 'false').strip().lower() == 'true',
            window_ms=self._positive_label(labels, LABEL_ROLLBACK_WINDOW, DEFAULT_ROLLBACK_WINDOW_MS),
            interval_ms=self._positive_label(labels, LABEL_ROLLBACK_INTERVAL, DEFAULT_ROLLBACK_INTERVAL_MS),
        )

    def _positive_label(self, labels: Dict[str, str], key: str, default: int) -> int:
        raw = labels.get(key)
        if raw is None:
            return default
        try:
            value = int(str(raw).strip())
        except ValueError:
            value = 0
        if value <= 0:
            logger.warning(f"Invalid {key} label value {raw!r}, using default {default}ms")
            return default
        return value

    def find_docker_socket_bind(self, attrs: Dict[str, Any]) -> Optional[str]:
        """Host path bind-mounted at AppConfig.DOCKER_SOCKET_PATH, if any."""
        socket_target = AppConfig.DOCKER_SOCKET_PATH
        binds = (attrs.get('HostConfig') or {}).get('Binds') or []
        for bind in binds:
            parts = bind.split(':')
            if len(parts) >= 2 and parts[1] == socket_target:
                return parts[0]
        return None

    async def execute(self, context: UpdateContext, docker_client: docker.DockerClient) -> UpdateResult:
        """
        Update one container to context.new_image.

        Never raises; failures are returned as UpdateResult.
        """
        try:
            old_container = await async_docker_call(docker_client.containers.get, context.container_id)
        except docker.errors.NotFound:
            return UpdateResult.failure_result("Container not found")
        except Exception as e:
            return UpdateResult.failure_result(f"Error getting container: {get_error_message(e)}")

        await self._emit(EventType.UPDATE_STARTED, context, {'target_image': context.new_image})

        try:
            if self.is_self_update(context.current_image):
                return await self.execute_self_update(context, docker_client, old_container)
            return await self._execute_container_update(context, docker_client, old_container)
        except Exception as e:
            message = get_error_message(e)
            logger.error(f"Error executing update of {context.container_name}: {message}", exc_info=True)
            await self._record_failure(context, message)
            return UpdateResult.failure_result(f"Update failed: {message}")

    async def _execute_container_update(
        self,
        context: UpdateContext,
        client: docker.DockerClient,
        old_container: Any,
    ) -> UpdateResult:
        _, old_tag = split_image_reference(context.current_image)
        _, new_tag = split_image_reference(context.new_image)

        await self._record_backup(context, client, old_container)

        logger.info(f"Pulling new image: {context.new_image}")
        await self._pull_image(client, context.new_image)

        await async_docker_call(old_container.reload)
        spec = old_container.attrs
        old_name = normalize_container_name(spec.get('Name')) or context.container_name
        temp_name = f"{old_name}-old-{_timestamp_ms()}"
        was_running = is_running(spec)
        should_health_gate = was_running and self._has_healthcheck_configured(spec)

        logger.info(f"Renaming container {old_name} to {temp_name}")
        await async_docker_call(old_container.rename, temp_name)

        new_container = None
        old_stopped = False
        failure_reason = 'create_new_failed'
        try:
            new_container = await self.recreator.create_from_spec(
                client, spec, context.new_image, old_name, logger
            )

            if was_running:
                failure_reason = 'stop_old_failed'
                await self._stop_container(old_container, temp_name)
                old_stopped = True

                failure_reason = 'start_new_failed'
                logger.info(f"Starting new container {old_name}")
                await async_docker_call(new_container.start)

                if should_health_gate:
                    failure_reason = 'health_gate_failed'
                    timeout = AppConfig.UPDATE_HEALTH_TIMEOUT_SECONDS
                    logger.info(f"Waiting for health check (timeout: {timeout}s)")
                    healthy = await wait_for_container_health(client, new_container.id, timeout=timeout)
                    if not healthy:
                        raise RuntimeError(f"New container {old_name} did not become healthy within {timeout}s")

            failure_reason = 'cleanup_old_failed'
            try:
                await async_docker_call(old_container.remove, force=True)
            except docker.errors.NotFound:
                logger.info(f"Container {temp_name} was already removed during cleanup")

        except Exception as e:
            message = get_error_message(e)
            logger.warning(f"Container update failed for {old_name}, attempting rollback ({message})")
            rollback_succeeded = await self._rollback_container(
                old_container, old_name, temp_name, new_container, restart=was_running and old_stopped
            )
            self._record_rollback_telemetry(
                context,
                failure_reason,
                rollback_succeeded,
                message,
                from_version=new_tag,
                to_version=old_tag,
            )
            await self._record_failure(context, message)
            if rollback_succeeded:
                await self._emit(EventType.ROLLBACK_COMPLETED, context, {'reason': failure_reason})
            return UpdateResult.failure_result(
                f"Update failed: {message}", rollback_performed=rollback_succeeded
            )

        log_update_audit(
            self.db,
            action=AuditAction.UPDATE_APPLIED,
            container_name=context.container_name,
            status=AuditStatus.SUCCESS,
            from_version=old_tag,
            to_version=new_tag,
            container_image=split_image_reference(context.new_image)[0],
        )
        await self._emit(
            EventType.UPDATE_COMPLETED,
            context,
            {'previous_image': context.current_image, 'new_image': context.new_image},
        )

        await self._maybe_start_health_monitor(context, client, new_tag)

        self.backup_store.prune_old_backups(context.container_name, AppConfig.BACKUP_RETENTION_COUNT)

        return UpdateResult.success_result(new_container.short_id)

    async def execute_self_update(
        self,
        context: UpdateContext,
        client: docker.DockerClient,
        old_container: Any,
    ) -> UpdateResult:
        """
        Prepare a self-update and spawn the helper that performs the swap.

        On success the helper is running and will stop this process's
        container shortly; nothing after this call is guaranteed to run.

        Raises:
            RuntimeError: If the Docker socket is not bind-mounted
        """
        await async_docker_call(old_container.reload)
        spec = old_container.attrs

        socket_path = self.find_docker_socket_bind(spec)
        if not socket_path:
            raise RuntimeError(
                "Self-update requires the Docker socket to be bind-mounted "
                "(e.g. /var/run/docker.sock:/var/run/docker.sock)"
            )

        await self._record_backup(context, client, old_container)

        logger.info(f"Pulling new image: {context.new_image}")
        await self._pull_image(client, context.new_image)

        op_id = str(uuid.uuid4())
        await self._emit(
            EventType.SELF_UPDATE_STARTING,
            context,
            {
                'op_id': op_id,
                'requires_ack': True,
                'ack_timeout_ms': AppConfig.SELF_UPDATE_ACK_TIMEOUT_MS,
                'started_at': datetime.now(timezone.utc).isoformat(),
            },
        )

        old_name = normalize_container_name(spec.get('Name')) or context.container_name
        temp_name = f"{old_name}-old-{_timestamp_ms()}"

        logger.info(f"Renaming container {old_name} to {temp_name}")
        await async_docker_call(old_container.rename, temp_name)

        try:
            # Created but not started: the old container still holds the ports
            new_container = await self.recreator.create_from_spec(
                client, spec, context.new_image, old_name, logger
            )
        except Exception as e:
            logger.warning(f"Failed to create new container, rolling back rename: {get_error_message(e)}")
            await self._rollback_container(old_container, old_name, temp_name, None, restart=False)
            raise

        operation = UpdateOperation(
            op_id=op_id,
            old_container_id=spec['Id'],
            old_container_name=old_name,
            new_container_id=new_container.id,
            start_timeout_ms=AppConfig.SELF_UPDATE_START_TIMEOUT_MS,
            health_timeout_ms=AppConfig.SELF_UPDATE_HEALTH_TIMEOUT_MS,
            poll_interval_ms=AppConfig.SELF_UPDATE_POLL_INTERVAL_MS,
        )

        logger.info("Spawning helper container for self-update transition")
        try:
            helper = await async_docker_call(
                client.containers.create,
                context.new_image,
                command=SELF_UPDATE_HELPER_COMMAND,
                environment={
                    **build_helper_environment(operation),
                    'DOCKER_HOST': f"unix://{AppConfig.DOCKER_SOCKET_PATH}",
                },
                labels={
                    LABEL_SELF_UPDATE_HELPER: 'true',
                    LABEL_SELF_UPDATE_OPERATION_ID: op_id,
                },
                auto_remove=True,
                volumes=[f"{socket_path}:{AppConfig.DOCKER_SOCKET_PATH}"],
                name=f"{AppConfig.SELF_IMAGE_NAME}-self-update-{_timestamp_ms()}",
            )
            await async_docker_call(helper.start)
        except Exception as e:
            logger.warning(f"Failed to spawn helper container, rolling back: {get_error_message(e)}")
            await self._rollback_container(old_container, old_name, temp_name, new_container, restart=False)
            raise

        _, old_tag = split_image_reference(context.current_image)
        _, new_tag = split_image_reference(context.new_image)
        log_update_audit(
            self.db,
            action=AuditAction.SELF_UPDATE,
            container_name=context.container_name,
            status=AuditStatus.INFO,
            from_version=old_tag,
            to_version=new_tag,
            details=f"Self-update helper started for operation {op_id}",
            container_image=split_image_reference(context.new_image)[0],
        )
        logger.info("Helper container started, this process will terminate when the old container stops")

        return UpdateResult.success_result(new_container.short_id, self_update_op_id=op_id)

    async def _maybe_start_health_monitor(
        self,
        context: UpdateContext,
        client: docker.DockerClient,
        running_image_tag: str,
    ) -> Optional[HealthMonitorHandle]:
        rollback_config = self.get_rollback_config(context.labels)
        if not rollback_config.auto_rollback:
            return None

        # The id changed when the container was recreated; the name did not
        try:
            new_container = await async_docker_call(client.containers.get, context.container_name)
        except docker.errors.NotFound:
            logger.warning("Cannot find recreated container by name, skipping health monitoring")
            return None

        if not (new_container.attrs.get('State') or {}).get('Health'):
            logger.warning(
                "Auto-rollback enabled but container has no HEALTHCHECK defined, skipping health monitoring"
            )
            return None

        previous = self.health_monitors.pop(context.container_name, None)
        if previous:
            previous.cancel()

        handle = start_health_monitor(HealthMonitorOptions(
            docker_client=client,
            container_id=new_container.id,
            container_name=context.container_name,
            backup_image_tag=running_image_tag,
            window_ms=rollback_config.window_ms,
            interval_ms=rollback_config.interval_ms,
            recreator=self.recreator,
            backup_store=self.backup_store,
            db=self.db,
        ))
        self.health_monitors[context.container_name] = handle
        handle.add_done_callback(self._forget_health_monitor)
        return handle

    def _forget_health_monitor(self, handle: HealthMonitorHandle):
        name = handle.options.container_name
        if self.health_monitors.get(name) is handle:
            del self.health_monitors[name]

    def cancel_health_monitors(self):
        """Cancel every monitoring window this executor started"""
        for handle in list(self.health_monitors.values()):
            handle.cancel()
        self.health_monitors.clear()

    async def _record_backup(self, context: UpdateContext, client: docker.DockerClient, old_container: Any):
        image_name, image_tag = split_image_reference(context.current_image)
        digest = await self._get_repo_digest(client, old_container.attrs.get('Image'))
        self.backup_store.insert_backup(
            container_id=context.container_id,
            container_name=context.container_name,
            image_name=image_name,
            image_tag=image_tag,
            image_digest=digest,
            trigger_name=context.trigger_name,
        )
        await self._emit(EventType.BACKUP_CREATED, context, {'backup_image': context.current_image})

    async def _get_repo_digest(self, client: docker.DockerClient, image_id: Optional[str]) -> Optional[str]:
        if not image_id:
            return None
        try:
            image = await async_docker_call(client.images.get, image_id)
        except Exception as e:
            logger.debug(f"Could not read repo digest of {image_id}: {e}")
            return None
        digests = image.attrs.get('RepoDigests') or []
        return digests[0].split('@', 1)[-1] if digests else None

    async def _pull_image(self, client: docker.DockerClient, image: str):
        """Pull Docker image with timeout."""
        timeout = AppConfig.IMAGE_PULL_TIMEOUT_SECONDS
        try:
            await asyncio.wait_for(async_docker_call(client.images.pull, image), timeout=timeout)
            logger.debug(f"Successfully pulled image {image}")
        except asyncio.TimeoutError:
            raise RuntimeError(f"Image pull timed out after {timeout}s for {image}")

    def _has_healthcheck_configured(self, spec: Dict[str, Any]) -> bool:
        return bool((spec.get('Config') or {}).get('Healthcheck') or (spec.get('State') or {}).get('Health'))

    async def _stop_container(self, container: Any, name: str):
        logger.info(f"Stopping container {name}")
        try:
            await async_docker_call(container.stop, timeout=STOP_TIMEOUT_SECONDS)
        except Exception as e:
            if not is_container_already_stopped_error(e):
                raise
            logger.debug(f"Container {name} was already stopped")

    async def _rollback_container(
        self,
        old_container: Any,
        original_name: str,
        temp_name: str,
        new_container: Optional[Any],
        restart: bool,
    ) -> bool:
        """Restore the renamed old container. Returns True if fully restored."""
        if new_container is not None:
            try:
                await async_docker_call(new_container.remove, force=True)
            except Exception as e:
                logger.warning(f"Failed to remove new container {original_name}: {get_error_message(e)}")

        rollback_succeeded = True
        restore_name = temp_name
        try:
            await async_docker_call(old_container.rename, original_name)
            restore_name = original_name
        except Exception as e:
            rollback_succeeded = False
            logger.warning(
                f"Rollback failed to restore container name from {temp_name} to {original_name} "
                f"({get_error_message(e)})"
            )

        if restart:
            try:
                await async_docker_call(old_container.start)
            except Exception as e:
                rollback_succeeded = False
                logger.warning(
                    f"Rollback failed to restart previous container {restore_name} ({get_error_message(e)})"
                )

        if rollback_succeeded:
            logger.warning(f"Rollback successful: {original_name} restored")
        else:
            logger.critical(
                f"CRITICAL: Rollback failed for {original_name}. "
                f"Manual intervention required - previous container: {restore_name}"
            )
        return rollback_succeeded

    def _record_rollback_telemetry(
        self,
        context: UpdateContext,
        failure_reason: str,
        rollback_succeeded: bool,
        message: str,
        from_version: str,
        to_version: str,
    ):
        if rollback_succeeded:
            outcome, reason = 'success', failure_reason
            details = f"Rollback completed after {failure_reason} during container update"
        else:
            outcome, reason = 'error', f"{failure_reason}_rollback_failed"
            details = f"Rollback failed after {failure_reason}: {message}"

        record_rollback('update', outcome, reason)
        try:
            log_update_audit(
                self.db,
                action=AuditAction.ROLLBACK,
                container_name=context.container_name,
                status=AuditStatus.SUCCESS if rollback_succeeded else AuditStatus.ERROR,
                from_version=from_version,
                to_version=to_version,
                details=details,
            )
        except Exception as e:
            logger.error(f"Could not record rollback audit for {context.container_name}: {e}")

    async def _record_failure(self, context: UpdateContext, message: str):
        try:
            log_update_audit(
                self.db,
                action=AuditAction.UPDATE_FAILED,
                container_name=context.container_name,
                status=AuditStatus.ERROR,
                from_version=split_image_reference(context.current_image)[1],
                to_version=split_image_reference(context.new_image)[1],
                details=message,
            )
        except Exception as e:
            logger.error(f"Could not record update failure for {context.container_name}: {e}")
        await self._emit(EventType.UPDATE_FAILED, context, {'error_message': message})

    async def _emit(self, event_type: EventType, context: UpdateContext, data: Dict[str, Any]):
        await self.event_bus.emit(Event(
            event_type=event_type,
            container_id=context.container_id,
            container_name=context.container_name,
            data=data,
        ))
