"""
Audit logging module for DockGuard.

Provides helper functions for recording update outcomes to the audit log.
"""

from .audit_logger import (
    AuditAction,
    AuditStatus,
    log_update_audit,
)

__all__ = [
    'AuditAction',
    'AuditStatus',
    'log_update_audit',
]
