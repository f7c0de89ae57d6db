"""
Audit logging helper functions for DockGuard.

Records update outcomes to the update_audit_log table and counts every row
written in the dockguard_audit_entries_total metric.
"""

import logging
from enum import Enum
from typing import Optional, Union

from database import DatabaseManager, UpdateAuditLog, utcnow
from utils.metrics import record_audit_entry

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Audit action types"""
    UPDATE_APPLIED = 'update-applied'
    UPDATE_FAILED = 'update-failed'
    ROLLBACK = 'rollback'
    AUTO_ROLLBACK = 'auto-rollback'
    SELF_UPDATE = 'self-update'


class AuditStatus(str, Enum):
    SUCCESS = 'success'
    ERROR = 'error'
    INFO = 'info'


def log_update_audit(
    db: DatabaseManager,
    action: Union[AuditAction, str],
    container_name: str,
    status: Union[AuditStatus, str],
    from_version: Optional[str] = None,
    to_version: Optional[str] = None,
    details: Optional[str] = None,
    container_image: Optional[str] = None,
) -> UpdateAuditLog:
    """
    Append one audit row and bump the audit counter.

    Unlike request-scoped auditing, these rows are written from background
    tasks (health monitor, executor), so this helper owns its session and
    commits immediately.

    Args:
        db: Database manager
        action: What happened
        container_name: Container the action applied to
        status: success, error or info
        from_version: Tag the container ran before the action
        to_version: Tag the container runs after the action
        details: Free-form explanation (error message on failure)
        container_image: Image repository, when known

    Returns:
        Created UpdateAuditLog entry (detached)
    """
    action_value = action.value if isinstance(action, AuditAction) else action
    status_value = status.value if isinstance(status, AuditStatus) else status

    with db.get_session() as session:
        entry = UpdateAuditLog(
            action=action_value,
            container_name=container_name,
            container_image=container_image,
            from_version=from_version,
            to_version=to_version,
            status=status_value,
            details=details,
            created_at=utcnow(),
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        session.expunge(entry)

    record_audit_entry(action_value)

    logger.debug(
        f"Audit: {action_value} on {container_name} ({status_value})"
        f"{f' {from_version} -> {to_version}' if from_version or to_version else ''}"
    )

    return entry
