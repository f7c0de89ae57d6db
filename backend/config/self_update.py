"""
Environment contract for the self-update helper process.

The orchestrator cannot survive its own replacement, so it hands the swap to
a short-lived helper container and passes everything the helper needs through
environment variables. This module is the single place those variables are
named, parsed and validated.

| Variable                      | Required | Default    |
|-------------------------------|----------|------------|
| OLD_CONTAINER_ID              | yes      |            |
| OLD_CONTAINER_NAME            | no       | dockguard  |
| NEW_CONTAINER_ID              | yes      |            |
| OP_ID                         | no       | unknown    |
| START_TIMEOUT_MS              | no       | 30000      |
| HEALTH_TIMEOUT_MS             | no       | 120000     |
| POLL_INTERVAL_MS              | no       | 1000       |
| SELF_UPDATE_CONTRACT_VERSION  | no       | 1          |
"""

import logging
import os
from typing import Dict, Mapping, Optional

from updates.types import UpdateOperation

logger = logging.getLogger(__name__)

CONTRACT_VERSION = '1'

ENV_OLD_CONTAINER_ID = 'OLD_CONTAINER_ID'
ENV_OLD_CONTAINER_NAME = 'OLD_CONTAINER_NAME'
ENV_NEW_CONTAINER_ID = 'NEW_CONTAINER_ID'
ENV_OP_ID = 'OP_ID'
ENV_START_TIMEOUT_MS = 'START_TIMEOUT_MS'
ENV_HEALTH_TIMEOUT_MS = 'HEALTH_TIMEOUT_MS'
ENV_POLL_INTERVAL_MS = 'POLL_INTERVAL_MS'
ENV_CONTRACT_VERSION = 'SELF_UPDATE_CONTRACT_VERSION'

DEFAULT_OLD_CONTAINER_NAME = 'dockguard'
DEFAULT_OP_ID = 'unknown'
DEFAULT_START_TIMEOUT_MS = 30000
DEFAULT_HEALTH_TIMEOUT_MS = 120000
DEFAULT_POLL_INTERVAL_MS = 1000


class SelfUpdateConfigError(ValueError):
    """The helper was started with an unusable environment."""


def _required(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name)
    if value is None or value.strip() == '':
        raise SelfUpdateConfigError(f"Missing required environment variable: {name}")
    return value.strip()


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using {default}")
        return default
    return value


def load_update_operation(environ: Optional[Mapping[str, str]] = None) -> UpdateOperation:
    """
    Build the UpdateOperation for this helper process.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Immutable UpdateOperation

    Raises:
        SelfUpdateConfigError: If a required id is missing or the contract
            version is not one this controller understands
    """
    if environ is None:
        environ = os.environ

    version = (environ.get(ENV_CONTRACT_VERSION) or CONTRACT_VERSION).strip()
    if version != CONTRACT_VERSION:
        raise SelfUpdateConfigError(
            f"Unsupported self-update contract version {version!r} (expected {CONTRACT_VERSION})"
        )

    return UpdateOperation(
        op_id=(environ.get(ENV_OP_ID) or '').strip() or DEFAULT_OP_ID,
        old_container_id=_required(environ, ENV_OLD_CONTAINER_ID),
        old_container_name=(environ.get(ENV_OLD_CONTAINER_NAME) or '').strip() or DEFAULT_OLD_CONTAINER_NAME,
        new_container_id=_required(environ, ENV_NEW_CONTAINER_ID),
        start_timeout_ms=_positive_int(environ, ENV_START_TIMEOUT_MS, DEFAULT_START_TIMEOUT_MS),
        health_timeout_ms=_positive_int(environ, ENV_HEALTH_TIMEOUT_MS, DEFAULT_HEALTH_TIMEOUT_MS),
        poll_interval_ms=_positive_int(environ, ENV_POLL_INTERVAL_MS, DEFAULT_POLL_INTERVAL_MS),
    )


def build_helper_environment(operation: UpdateOperation) -> Dict[str, str]:
    """Inverse of load_update_operation: the env the orchestrator passes to the helper."""
    return {
        ENV_CONTRACT_VERSION: CONTRACT_VERSION,
        ENV_OP_ID: operation.op_id,
        ENV_OLD_CONTAINER_ID: operation.old_container_id,
        ENV_OLD_CONTAINER_NAME: operation.old_container_name,
        ENV_NEW_CONTAINER_ID: operation.new_container_id,
        ENV_START_TIMEOUT_MS: str(operation.start_timeout_ms),
        ENV_HEALTH_TIMEOUT_MS: str(operation.health_timeout_ms),
        ENV_POLL_INTERVAL_MS: str(operation.poll_interval_ms),
    }
