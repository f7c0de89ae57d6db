"""
Exceptions raised on the self-update forward path.

Any of these reaching SelfUpdateController.run() triggers the rollback branch
and is re-raised unchanged once rollback has been attempted.
"""


class SelfUpdateError(Exception):
    """Base class for forward-path failures of a self-update."""


class PhaseTimeoutError(SelfUpdateError):
    """A WAIT_* or HEALTH_GATE phase did not resolve before its deadline."""

    def __init__(self, message: str, container_id: str, timeout_ms: int):
        super().__init__(message)
        self.container_id = container_id
        self.timeout_ms = timeout_ms


class ContainerUnhealthyError(SelfUpdateError):
    """The candidate's health check reported unhealthy during HEALTH_GATE."""

    def __init__(self, container_id: str):
        super().__init__(f"New container became unhealthy ({container_id})")
        self.container_id = container_id
