"""
Unit tests for Redis role detection (redis_vault/backup/role.py).
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from redis_vault.backup.role import Role, RoleDetector, RoleDetectionError, parse_role


class TestParseRole:
    """Test mapping of role strings."""

    @pytest.mark.parametrize('value', ['master', 'MASTER', ' Master ', 'primary'])
    def test_primary(self, value):
        assert parse_role(value) is Role.PRIMARY

    @pytest.mark.parametrize('value', ['slave', 'replica', 'Replica', 'secondary'])
    def test_secondary(self, value):
        assert parse_role(value) is Role.SECONDARY

    @pytest.mark.parametrize('value', ['', 'sentinel', 'leader', None, 42])
    def test_unknown(self, value):
        assert parse_role(value) is Role.UNKNOWN


class TestRoleDetector:
    """Test RoleDetector decisions."""

    def test_both_roles_enabled_skips_query(self):
        """Test no Redis client is created when both roles are backed up."""
        factory = MagicMock()
        detector = RoleDetector('redis://localhost:6379', client_factory=factory)

        assert detector.should_backup(True, True) is True
        factory.assert_not_called()

    def test_no_roles_enabled_skips_query(self):
        """Test nothing is backed up and Redis is not queried when both flags are off."""
        factory = MagicMock()
        detector = RoleDetector('redis://localhost:6379', client_factory=factory)

        assert detector.should_backup(False, False) is False
        factory.assert_not_called()

    @pytest.mark.parametrize('role,backup_master,backup_replica,expected', [
        ('master', True, False, True),
        ('master', False, True, False),
        ('slave', True, False, False),
        ('slave', False, True, True),
        ('replica', False, True, True),
    ])
    def test_decision_by_role(self, mock_redis_client, role, backup_master, backup_replica, expected):
        """Test the decision follows the flag for the detected role."""
        mock_redis_client.info.return_value = {'role': role}
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        assert detector.should_backup(backup_master, backup_replica) is expected
        mock_redis_client.info.assert_called_once_with('replication')

    def test_unknown_role_defaults_to_backup(self, mock_redis_client, caplog):
        """Test an unrecognized role backs up and logs a warning."""
        mock_redis_client.info.return_value = {'role': 'sentinel'}
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        with caplog.at_level(logging.WARNING, logger='redis_vault.backup.role'):
            assert detector.should_backup(False, True) is True

        assert 'Could not determine Redis role' in caplog.text

    def test_missing_role_field_is_unknown(self, mock_redis_client):
        """Test an INFO reply without a role field is treated as unknown."""
        mock_redis_client.info.return_value = {}
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        assert detector.get_role() is Role.UNKNOWN
        assert detector.should_backup(True, False) is True

    def test_role_is_queried_every_time(self, mock_redis_client):
        """Test the role is not cached between calls (failover)."""
        mock_redis_client.info.side_effect = [{'role': 'master'}, {'role': 'slave'}]
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        assert detector.should_backup(True, False) is True
        assert detector.should_backup(True, False) is False

    def test_client_created_once(self, mock_redis_client):
        """Test the Redis client is reused across calls."""
        factory = MagicMock(return_value=mock_redis_client)
        detector = RoleDetector('redis://localhost:6379', client_factory=factory)

        detector.get_role()
        detector.get_role()

        factory.assert_called_once_with('redis://localhost:6379')

    def test_connection_error_propagates(self, mock_redis_client):
        """Test an unreachable Redis raises instead of falling back to unknown."""
        mock_redis_client.info.side_effect = RedisConnectionError('Connection refused')
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        with pytest.raises(RoleDetectionError, match='Connection refused'):
            detector.should_backup(True, False)

    def test_query_error_propagates(self, mock_redis_client):
        """Test a failing INFO command raises."""
        mock_redis_client.info.side_effect = ResponseError('NOPERM')
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)

        with pytest.raises(RoleDetectionError):
            detector.get_role()

    def test_invalid_url(self):
        """Test an invalid connection string raises RoleDetectionError."""
        detector = RoleDetector('not-a-redis-url')

        with pytest.raises(RoleDetectionError, match='Failed to create Redis client'):
            detector.get_role()

    @patch('redis_vault.backup.role.redis.Redis.from_url')
    def test_default_client_factory(self, mock_from_url, mock_redis_client):
        """Test the default factory builds a client from the URL."""
        mock_from_url.return_value = mock_redis_client
        detector = RoleDetector('redis://:secret@redis:6379/0')

        assert detector.get_role() is Role.PRIMARY

        args, kwargs = mock_from_url.call_args
        assert args[0] == 'redis://:secret@redis:6379/0'
        assert kwargs['decode_responses'] is True

    def test_check_connection(self, mock_redis_client):
        """Test check_connection pings Redis and wraps failures."""
        detector = RoleDetector('redis://localhost:6379', client_factory=lambda url: mock_redis_client)
        detector.check_connection()
        mock_redis_client.ping.assert_called_once()

        mock_redis_client.ping.side_effect = RedisConnectionError('timeout')
        with pytest.raises(RoleDetectionError, match='not reachable'):
            detector.check_connection()
