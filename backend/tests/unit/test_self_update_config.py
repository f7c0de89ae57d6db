"""
Unit tests for the self-update helper's environment contract.

Tests verify:
- Required container ids (missing and blank values)
- Defaults for optional variables
- Invalid numeric values fall back to defaults
- Contract version check
- build_helper_environment() produces what load_update_operation() reads
"""

import logging

import pytest

from config.self_update import (
    CONTRACT_VERSION,
    SelfUpdateConfigError,
    build_helper_environment,
    load_update_operation,
)
from updates.types import ContainerRef, UpdateOperation


def _env(**overrides):
    env = {
        'OLD_CONTAINER_ID': 'old-id',
        'NEW_CONTAINER_ID': 'new-id',
    }
    env.update(overrides)
    return env


class TestRequiredVariables:

    def test_minimal_environment_uses_defaults(self):
        operation = load_update_operation(_env())

        assert operation.old_container_id == 'old-id'
        assert operation.new_container_id == 'new-id'
        assert operation.old_container_name == 'dockguard'
        assert operation.op_id == 'unknown'
        assert operation.start_timeout_ms == 30000
        assert operation.health_timeout_ms == 120000
        assert operation.poll_interval_ms == 1000

    @pytest.mark.parametrize('missing', ['OLD_CONTAINER_ID', 'NEW_CONTAINER_ID'])
    def test_missing_container_id_fails_fast(self, missing):
        env = _env()
        del env[missing]

        with pytest.raises(SelfUpdateConfigError, match=missing):
            load_update_operation(env)

    def test_blank_container_id_counts_as_missing(self):
        with pytest.raises(SelfUpdateConfigError, match='OLD_CONTAINER_ID'):
            load_update_operation(_env(OLD_CONTAINER_ID='   '))

    def test_values_are_trimmed(self):
        operation = load_update_operation(_env(
            OLD_CONTAINER_ID=' old-id ',
            OLD_CONTAINER_NAME=' my-dockguard ',
            OP_ID=' op-1 ',
        ))

        assert operation.old_container_id == 'old-id'
        assert operation.old_container_name == 'my-dockguard'
        assert operation.op_id == 'op-1'


class TestNumericVariables:

    def test_explicit_timeouts(self):
        operation = load_update_operation(_env(
            START_TIMEOUT_MS='5000',
            HEALTH_TIMEOUT_MS='60000',
            POLL_INTERVAL_MS='250',
        ))

        assert operation.start_timeout_ms == 5000
        assert operation.health_timeout_ms == 60000
        assert operation.poll_interval_ms == 250

    @pytest.mark.parametrize('raw', ['abc', '0', '-10', '1.5'])
    def test_invalid_value_falls_back_with_warning(self, raw, caplog):
        with caplog.at_level(logging.WARNING):
            operation = load_update_operation(_env(START_TIMEOUT_MS=raw))

        assert operation.start_timeout_ms == 30000
        assert 'START_TIMEOUT_MS' in caplog.text


class TestContractVersion:

    def test_current_version_accepted(self):
        operation = load_update_operation(_env(SELF_UPDATE_CONTRACT_VERSION=CONTRACT_VERSION))
        assert operation.old_container_id == 'old-id'

    def test_unknown_version_rejected(self):
        with pytest.raises(SelfUpdateConfigError, match='contract version'):
            load_update_operation(_env(SELF_UPDATE_CONTRACT_VERSION='2'))


class TestHelperEnvironment:

    def test_helper_environment_is_read_back_unchanged(self):
        operation = UpdateOperation(
            op_id='op-42',
            old_container_id='aaa',
            old_container_name='dockguard-prod',
            new_container_id='bbb',
            start_timeout_ms=1234,
            health_timeout_ms=5678,
            poll_interval_ms=90,
        )

        env = build_helper_environment(operation)

        assert all(isinstance(value, str) for value in env.values())
        assert env['SELF_UPDATE_CONTRACT_VERSION'] == CONTRACT_VERSION
        assert load_update_operation(env) == operation

    def test_old_container_ref(self):
        operation = load_update_operation(_env(OLD_CONTAINER_NAME='dg'))
        assert operation.old_container_ref == ContainerRef(id='old-id', name='dg')
