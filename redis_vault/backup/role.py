"""
Redis replication role detection.

The role is read from ``INFO replication`` on every call and never cached,
because a failover can turn a replica into the master between two cycles.
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional

import redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
SOCKET_TIMEOUT = 30

_PRIMARY_ROLES = ('master', 'primary')
_SECONDARY_ROLES = ('slave', 'replica', 'secondary')


class RoleDetectionError(Exception):
    """Raised when Redis cannot be reached or queried."""
    pass


class Role(Enum):
    PRIMARY = 'primary'
    SECONDARY = 'secondary'
    UNKNOWN = 'unknown'


def parse_role(value: Any) -> Role:
    """Map a role string reported by Redis onto a Role."""
    if not isinstance(value, str):
        return Role.UNKNOWN

    role = value.strip().lower()
    if role in _PRIMARY_ROLES:
        return Role.PRIMARY
    if role in _SECONDARY_ROLES:
        return Role.SECONDARY
    return Role.UNKNOWN


def _default_client_factory(connection_string: str) -> redis.Redis:
    return redis.Redis.from_url(
        connection_string,
        socket_connect_timeout=CONNECT_TIMEOUT,
        socket_timeout=SOCKET_TIMEOUT,
        decode_responses=True
    )


class RoleDetector:
    """
    Decides whether this node should be backed up based on its role.

    The Redis client is created on first use, so nodes that back up both
    roles never open a connection.
    """

    def __init__(self, connection_string: str,
                 client_factory: Optional[Callable[[str], Any]] = None):
        self.connection_string = connection_string
        self._client_factory = client_factory or _default_client_factory
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = self._client_factory(self.connection_string)
            except (RedisError, ValueError) as e:
                raise RoleDetectionError(f"Failed to create Redis client: {e}")
        return self._client

    def get_role(self) -> Role:
        """
        Query the current replication role.

        Raises:
            RoleDetectionError: If the INFO command fails
        """
        try:
            info = self.client.info('replication')
        except RedisError as e:
            raise RoleDetectionError(f"Failed to query Redis replication info: {e}")

        role = info.get('role') if isinstance(info, dict) else None
        return parse_role(role)

    def should_backup(self, backup_master: bool, backup_replica: bool) -> bool:
        """
        Decide whether a backup should run for the current role.

        Args:
            backup_master: Back up when this node is the master
            backup_replica: Back up when this node is a replica

        Returns:
            True if the backup should run

        Raises:
            RoleDetectionError: If the role has to be queried and Redis fails
        """
        if backup_master and backup_replica:
            return True
        if not backup_master and not backup_replica:
            return False

        role = self.get_role()

        if role is Role.PRIMARY:
            logger.debug(f"Redis role is master, backup_master={backup_master}")
            return backup_master
        if role is Role.SECONDARY:
            logger.debug(f"Redis role is replica, backup_replica={backup_replica}")
            return backup_replica

        logger.warning("Could not determine Redis role, defaulting to backup")
        return True

    def check_connection(self):
        """
        Verify that Redis answers a PING.

        Raises:
            RoleDetectionError: If Redis cannot be reached
        """
        try:
            self.client.ping()
        except RedisError as e:
            raise RoleDetectionError(f"Redis is not reachable: {e}")
