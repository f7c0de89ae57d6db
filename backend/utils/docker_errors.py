"""
Classification of "already in that state" runtime errors.

The engine answers 304 Not Modified when asked to stop a stopped container or
start a started one. Older engines and some compatible runtimes (Podman)
return a 4xx/5xx with a message instead, so message matching is kept as a
fallback. Message matching is a heuristic, not a contract: the strings below
are the ones observed from Docker and Podman.
"""

from typing import Optional

HTTP_NOT_MODIFIED = 304

_ALREADY_STOPPED_MARKERS = ('is not running', 'already stopped')
_ALREADY_STARTED_MARKERS = ('already started',)


def get_status_code(error: BaseException) -> Optional[int]:
    """Status code of a docker.errors.APIError (or anything shaped like one)."""
    status = getattr(error, 'status_code', None)
    if status is None:
        status = getattr(error, 'status', None)
    if status is None:
        response = getattr(error, 'response', None)
        status = getattr(response, 'status_code', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def get_error_message(error: BaseException) -> str:
    """Best human-readable text for a runtime error."""
    explanation = getattr(error, 'explanation', None)
    if explanation:
        return str(explanation)
    return str(error) or error.__class__.__name__


def _matches(error: BaseException, markers) -> bool:
    if get_status_code(error) == HTTP_NOT_MODIFIED:
        return True
    message = f"{getattr(error, 'explanation', '') or ''} {error}".lower()
    return any(marker in message for marker in markers)


def is_container_already_stopped_error(error: BaseException) -> bool:
    return _matches(error, _ALREADY_STOPPED_MARKERS)


def is_container_already_started_error(error: BaseException) -> bool:
    return _matches(error, _ALREADY_STARTED_MARKERS)
