"""
Prometheus counters for update outcomes.

Counters live in the default registry so main.py can expose them with
prometheus_client.make_asgi_app().
"""

from prometheus_client import Counter

AUDIT_COUNTER = Counter(
    'dockguard_audit_entries_total',
    'Total count of update audit entries written',
    ['action'],
)

ROLLBACK_COUNTER = Counter(
    'dockguard_rollback_total',
    'Total count of rollback outcomes',
    ['type', 'outcome', 'reason'],
)


def record_audit_entry(action: str) -> None:
    AUDIT_COUNTER.labels(action=action).inc()


def record_rollback(rollback_type: str, outcome: str, reason: str) -> None:
    """
    Count one rollback attempt.

    Args:
        rollback_type: 'auto-rollback' (health monitor) or 'update' (executor)
        outcome: 'success' or 'error'
        reason: short machine-friendly cause, e.g. 'unhealthy', 'recreate_failed'
    """
    ROLLBACK_COUNTER.labels(type=rollback_type, outcome=outcome, reason=reason).inc()
