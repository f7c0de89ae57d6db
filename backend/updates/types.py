"""
Shared types for the update-safety subsystem.

This module contains dataclasses and types used by the self-update controller,
the health monitor and the orchestrator-side executor so that all three agree
on the shape of a container reference and an update operation.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any, Dict, Protocol, Union


class SelfUpdatePhase(str, Enum):
    """Log tags emitted by the self-update controller, in execution order."""
    PREPARE = "PREPARE"
    STOP_OLD = "STOP_OLD"
    WAIT_OLD_STOPPED = "WAIT_OLD_STOPPED"
    START_NEW = "START_NEW"
    WAIT_NEW_RUNNING = "WAIT_NEW_RUNNING"
    HEALTH_GATE = "HEALTH_GATE"
    COMMIT = "COMMIT"
    SUCCEEDED = "SUCCEEDED"
    # Rollback branch
    CLEANUP_CANDIDATE = "CLEANUP_CANDIDATE"
    CLEANUP_CANDIDATE_FAILED = "CLEANUP_CANDIDATE_FAILED"
    ROLLBACK_RESTORE_NAME = "ROLLBACK_RESTORE_NAME"
    ROLLBACK_RESTORE_NAME_FAILED = "ROLLBACK_RESTORE_NAME_FAILED"
    ROLLBACK_START_OLD = "ROLLBACK_START_OLD"
    ROLLBACK_START_OLD_FAILED = "ROLLBACK_START_OLD_FAILED"
    FAILED_WITH_ROLLBACK = "FAILED_WITH_ROLLBACK"


@dataclass(frozen=True)
class ContainerRef:
    """Identity of one container for the duration of one operation."""
    id: str
    name: str


@dataclass(frozen=True)
class UpdateOperation:
    """
    One self-update, built once from the helper's environment.

    Timeouts are in milliseconds, matching the environment contract.
    """
    old_container_id: str
    new_container_id: str
    old_container_name: str = 'dockguard'
    op_id: str = 'unknown'
    start_timeout_ms: int = 30000
    health_timeout_ms: int = 120000
    poll_interval_ms: int = 1000

    @property
    def old_container_ref(self) -> ContainerRef:
        return ContainerRef(id=self.old_container_id, name=self.old_container_name)


LogLike = Union[logging.Logger, logging.LoggerAdapter]


class ContainerRecreator(Protocol):
    """
    Capabilities the health monitor delegates to.

    The monitor only decides when to roll back; rebuilding a container from
    its inspected spec is the implementer's job.
    """

    async def get_current_container(self, docker_client: Any, ref: ContainerRef) -> Optional[Any]:
        ...

    async def inspect_container(self, container: Any, log: LogLike) -> Dict[str, Any]:
        ...

    async def stop_and_remove_container(
        self, container: Any, spec: Dict[str, Any], ref: ContainerRef, log: LogLike
    ) -> None:
        ...

    async def recreate_container(
        self, docker_client: Any, spec: Dict[str, Any], new_image: str, ref: ContainerRef, log: LogLike
    ) -> Any:
        ...


@dataclass
class HealthMonitorOptions:
    """
    Everything one health-monitoring window needs.

    backup_image_tag is the tag the monitored container runs, i.e. the one a
    rollback moves away from; it is recorded as the from_version of the
    auto-rollback audit row.
    """
    docker_client: Any
    container_id: str
    container_name: str
    backup_image_tag: str
    window_ms: int
    interval_ms: int
    recreator: ContainerRecreator
    backup_store: Any
    db: Any

    @property
    def container_ref(self) -> ContainerRef:
        return ContainerRef(id=self.container_id, name=self.container_name)


@dataclass(frozen=True)
class RollbackConfig:
    """Auto-rollback settings read from container labels."""
    auto_rollback: bool = False
    window_ms: int = 300000
    interval_ms: int = 10000


@dataclass
class UpdateContext:
    """
    Context for a container update operation.

    Passed to the executor to provide all necessary information for
    performing the update.
    """
    container_id: str
    container_name: str
    current_image: str
    new_image: str
    labels: Dict[str, str] = field(default_factory=dict)
    trigger_name: Optional[str] = None


@dataclass
class UpdateResult:
    """
    Result of a container update operation.

    For a self-update, success means the helper controller was spawned; the
    swap itself finishes after this process has been stopped.
    """
    success: bool
    new_container_id: Optional[str] = None
    error_message: Optional[str] = None
    rollback_performed: bool = False
    self_update_op_id: Optional[str] = None

    @classmethod
    def success_result(cls, new_container_id: str, self_update_op_id: Optional[str] = None) -> 'UpdateResult':
        """Create a successful result."""
        return cls(success=True, new_container_id=new_container_id, self_update_op_id=self_update_op_id)

    @classmethod
    def failure_result(cls, error_message: str, rollback_performed: bool = False) -> 'UpdateResult':
        """Create a failure result."""
        return cls(
            success=False,
            error_message=error_message,
            rollback_performed=rollback_performed
        )


def split_image_reference(image: str) -> tuple:
    """
    Split "registry/repo:tag" into ("registry/repo", "tag").

    A colon inside the registry host (registry:5000/app) is not a tag
    separator. Digest references keep the digest as the tag part.
    """
    if '@' in image:
        name, digest = image.split('@', 1)
        return name, digest
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        return image[:last_colon], image[last_colon + 1:]
    return image, 'latest'
