"""
Updates Module

Update-safety subsystem: swapping a running container for a new image without
leaving the host broken.

Architecture:
- DockerUpdateExecutor (updates.docker_executor): orchestrator-side driver;
  updates ordinary containers in place and hands self-updates to a helper
- SelfUpdateController (updates.self_update_controller): runs in the helper
  container and performs the blue/green swap of DockGuard itself
- start_health_monitor (updates.health_monitor): watches a freshly updated
  container and rolls it back to its newest backup if it turns unhealthy
- BackupStore (updates.backup_store): rollback targets per container name

Only the shared types are re-exported here; import the components from their
modules.
"""

from updates.types import (
    ContainerRef,
    UpdateOperation,
    UpdateContext,
    UpdateResult,
    HealthMonitorOptions,
    RollbackConfig,
    SelfUpdatePhase,
)
from updates.errors import SelfUpdateError, PhaseTimeoutError, ContainerUnhealthyError

__all__ = [
    'ContainerRef',
    'UpdateOperation',
    'UpdateContext',
    'UpdateResult',
    'HealthMonitorOptions',
    'RollbackConfig',
    'SelfUpdatePhase',
    'SelfUpdateError',
    'PhaseTimeoutError',
    'ContainerUnhealthyError',
]
