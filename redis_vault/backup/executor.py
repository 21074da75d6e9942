"""
Backup executor - runs one backup cycle.

Workflow:
1. Count the attempt
2. Check the Redis role against backup_master / backup_replica
3. Read the dump file (skip quietly if Redis has not written one yet)
4. Upload it under a key derived from the dump's modification time
5. Record metrics
6. Enforce retention, only after a successful upload
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from redis_vault.config import Config
from redis_vault.metrics import Metrics
from .role import RoleDetector, RoleDetectionError
from .retention import RetentionManager
from .storage import StorageBackend, StorageError


logger = logging.getLogger(__name__)

KEY_TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


class BackupError(Exception):
    """Raised when the dump file cannot be read."""
    pass


def build_backup_key(prefix: str, node_name: str, modified: datetime) -> str:
    """
    Build the object key for a dump.

    The timestamp is the dump's modification time in UTC, truncated to
    whole seconds, so an unchanged dump always maps to the same key.

    Example: redis-vault/cache-0_2024-01-15T12:00:00Z.rdb
    """
    if modified.tzinfo is None:
        modified = modified.replace(tzinfo=timezone.utc)
    timestamp = modified.astimezone(timezone.utc).strftime(KEY_TIMESTAMP_FORMAT)

    filename = f"{node_name}_{timestamp}.rdb"
    prefix = prefix.rstrip('/')
    return f"{prefix}/{filename}" if prefix else filename


def node_prefix(prefix: str, node_name: str) -> str:
    """Key prefix matching only this node's backups."""
    prefix = prefix.rstrip('/')
    return f"{prefix}/{node_name}_" if prefix else f"{node_name}_"


class BackupExecutor:
    """
    Orchestrates one backup cycle for this Redis node.
    """

    def __init__(self, config: Config, storage: StorageBackend, metrics: Metrics,
                 role_detector: Optional[RoleDetector] = None,
                 retention: Optional[RetentionManager] = None,
                 wall_clock: Callable[[], float] = time.time):
        """
        Initialize backup executor.

        Args:
            config: Resolved configuration
            storage: Backend the dumps are uploaded to
            metrics: Metrics sink
            role_detector: Role detector (default: built from the connection string)
            retention: Retention manager (default: built from the retention config)
            wall_clock: Returns the current Unix time (for tests)
        """
        self.config = config
        self.storage = storage
        self.metrics = metrics
        self.role_detector = role_detector or RoleDetector(config.redis.connection_string)
        self.retention = retention or RetentionManager(
            storage,
            metrics,
            keep_last=config.retention.keep_last,
            keep_duration=config.retention.keep_duration
        )
        self.wall_clock = wall_clock

    @property
    def node_name(self) -> str:
        return self.config.redis.node_name

    @property
    def prefix(self) -> str:
        return self.config.storage.clean_prefix

    def run_cycle(self) -> Optional[str]:
        """
        Execute one backup cycle.

        Returns:
            Key of the uploaded backup, or None if the cycle was skipped
            (role not selected, or no dump file yet)

        Raises:
            RoleDetectionError: If Redis cannot be queried
            BackupError: If the dump file cannot be read
            StorageError: If the upload fails
        """
        start_time = time.monotonic()
        self.metrics.backups_total.inc()

        try:
            should_backup = self.role_detector.should_backup(
                self.config.redis.backup_master,
                self.config.redis.backup_replica
            )
        except RoleDetectionError:
            self._record_failure(start_time)
            raise

        if not should_backup:
            logger.info("Skipping backup based on Redis role configuration")
            return None

        dump_path = self.config.dump_path
        try:
            dump_exists = dump_path.exists()
        except OSError as e:
            logger.error(f"Failed to access dump file {dump_path}: {e}")
            self._record_failure(start_time)
            raise BackupError(f"Failed to access dump file {dump_path}: {e}") from e

        if not dump_exists:
            logger.warning(f"Dump file does not exist: {dump_path}")
            return None

        try:
            key = self._upload_dump(dump_path)
        except (BackupError, StorageError):
            self._record_failure(start_time)
            raise

        self.metrics.backup_duration_seconds.observe(time.monotonic() - start_time)
        self.metrics.backups_successful.inc()

        self._enforce_retention()

        return key

    def _record_failure(self, start_time: float):
        """Every failed cycle is timed and counted the same way."""
        self.metrics.backup_duration_seconds.observe(time.monotonic() - start_time)
        self.metrics.backups_failed.inc()

    def _upload_dump(self, dump_path) -> str:
        """
        Read the dump file and upload it.

        Returns:
            Key of the uploaded backup
        """
        try:
            stat = dump_path.stat()
            logger.debug(f"Reading dump file: {dump_path}")
            data = dump_path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read dump file {dump_path}: {e}")
            raise BackupError(f"Failed to read dump file {dump_path}: {e}") from e

        modified = datetime.fromtimestamp(int(stat.st_mtime), tz=timezone.utc)
        key = build_backup_key(self.prefix, self.node_name, modified)

        logger.debug(f"Uploading backup to: {key}")

        try:
            self.storage.upload(key, data)
        except StorageError as e:
            self.metrics.storage_uploads_total.inc()
            logger.error(f"Failed to upload {dump_path} to {self.storage.name}://{self.storage.bucket_name}/{key}: {e}")
            raise

        self.metrics.storage_uploads_total.inc()
        self.metrics.backup_size_bytes.observe(len(data))
        self.metrics.last_backup_timestamp.set(self.wall_clock())

        logger.info(f"Backup uploaded successfully: {key} ({len(data) / 1024 / 1024:.2f} MB)")
        return key

    def _enforce_retention(self):
        """Run cleanup. A failing listing does not undo the successful backup."""
        try:
            self.retention.cleanup(node_prefix(self.prefix, self.node_name))
        except StorageError as e:
            logger.error(f"Backup retention failed: {e}")
