"""
Configuration loading for redis-vault.

Settings come from an optional YAML (or JSON) file and are then overridden by
environment variables. Durations and the storage target are validated here,
so a Config returned by load_config() is ready to use.
"""

import os
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import yaml

from redis_vault.utils.durations import parse_duration, DurationError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'
DEFAULT_PREFIX = 'redis-vault'
DEFAULT_RETENTION_COUNT = 7
DEFAULT_METRICS_PORT = 9090
DEFAULT_INTERVAL = '1h'
DEFAULT_INITIAL_DELAY = '300s'

STORAGE_TYPES = ('s3', 'gcs')
LOG_FORMATS = ('text', 'json')

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class RedisConfig:
    connection_string: str = 'redis://localhost:6379'
    data_path: Path = Path('/data')
    node_name: str = 'redis-node'
    backup_master: bool = True
    backup_replica: bool = True

    @property
    def role_detection_required(self) -> bool:
        """Role only matters when exactly one of the two roles is backed up."""
        return self.backup_master != self.backup_replica

    def __repr__(self):
        # Connection strings may carry a password
        return (
            f"RedisConfig(connection_string='[REDACTED]', data_path={str(self.data_path)!r}, "
            f"node_name={self.node_name!r}, backup_master={self.backup_master}, "
            f"backup_replica={self.backup_replica})"
        )


@dataclass(frozen=True)
class BackupConfig:
    interval: timedelta = timedelta(hours=1)
    dump_filename: str = 'dump.rdb'
    initial_delay: timedelta = timedelta(seconds=300)


@dataclass(frozen=True)
class StorageTarget:
    """Where backups go. Exactly one backend kind per process."""
    kind: str = 's3'
    bucket: str = DEFAULT_PREFIX
    prefix: str = DEFAULT_PREFIX
    region: Optional[str] = None
    endpoint: Optional[str] = None
    project_id: Optional[str] = None

    @property
    def clean_prefix(self) -> str:
        return self.prefix.rstrip('/')


@dataclass(frozen=True)
class RetentionConfig:
    keep_last: int = DEFAULT_RETENTION_COUNT
    keep_duration: Optional[timedelta] = None

    @property
    def deletes_everything(self) -> bool:
        return self.keep_last == 0 and not self.keep_duration


@dataclass(frozen=True)
class LoggingConfig:
    format: str = 'text'
    level: str = 'info'
    file: Optional[str] = None


@dataclass(frozen=True)
class MetricsConfig:
    enabled: bool = False
    port: int = DEFAULT_METRICS_PORT
    listen_address: str = '0.0.0.0'


@dataclass(frozen=True)
class Config:
    redis: RedisConfig = field(default_factory=RedisConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    storage: StorageTarget = field(default_factory=StorageTarget)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @property
    def dump_path(self) -> Path:
        return self.redis.data_path / self.backup.dump_filename


def load_config(path=DEFAULT_CONFIG_PATH, environ: Optional[Dict[str, str]] = None) -> Config:
    """
    Load configuration from file with environment variable overrides.

    A missing file is not an error: defaults are used and a warning is logged.

    Args:
        path: Path to a YAML or JSON configuration file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated Config

    Raises:
        ConfigError: If the file cannot be parsed or any value is invalid
    """
    if environ is None:
        environ = os.environ

    raw: Dict[str, Any] = {}
    config_path = Path(path) if path else None

    if config_path is not None and config_path.exists():
        logger.info(f"Loading configuration from file: {config_path}")
        try:
            with open(config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read configuration file {config_path}: {e}")

        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    else:
        logger.warning(f"No config file found at {config_path}, using defaults")

    config = build_config(raw)
    config = apply_env_overrides(config, environ)

    if config.retention.deletes_everything:
        logger.warning(
            "Retention keeps neither a backup count nor a duration: "
            "every stored backup for this node will be deleted after each successful upload"
        )

    return config


def build_config(raw: Dict[str, Any]) -> Config:
    """
    Build a Config from a parsed configuration mapping.

    Missing sections and keys fall back to defaults.
    """
    redis_raw = _section(raw, 'redis')
    backup_raw = _section(raw, 'backup')
    storage_raw = _section(raw, 'storage')
    retention_raw = _section(raw, 'retention')
    logging_raw = _section(raw, 'logging')
    metrics_raw = _section(raw, 'metrics')

    defaults = Config()

    redis_config = RedisConfig(
        connection_string=str(redis_raw.get('connection_string', defaults.redis.connection_string)),
        data_path=Path(redis_raw.get('data_path', defaults.redis.data_path)),
        node_name=str(redis_raw.get('node_name', defaults.redis.node_name)),
        backup_master=_to_bool(redis_raw.get('backup_master', True), 'redis.backup_master'),
        backup_replica=_to_bool(redis_raw.get('backup_replica', True), 'redis.backup_replica'),
    )

    backup_config = BackupConfig(
        interval=_to_interval(backup_raw.get('interval', DEFAULT_INTERVAL), 'backup.interval'),
        dump_filename=str(backup_raw.get('dump_filename', defaults.backup.dump_filename)),
        initial_delay=_to_duration(backup_raw.get('initial_delay', DEFAULT_INITIAL_DELAY), 'backup.initial_delay'),
    )

    storage_url = backup_raw.get('storage_url')
    if storage_url:
        storage = parse_storage_url(storage_url)
    else:
        storage = _storage_from_mapping(storage_raw)

    keep_duration = retention_raw.get('keep_duration')
    retention_config = RetentionConfig(
        keep_last=_to_count(retention_raw.get('keep_last', DEFAULT_RETENTION_COUNT), 'retention.keep_last'),
        keep_duration=_to_duration(keep_duration, 'retention.keep_duration') if keep_duration else None,
    )

    logging_config = _validate_logging(LoggingConfig(
        format=str(logging_raw.get('format', 'text')).lower(),
        level=str(logging_raw.get('level', 'info')).lower(),
        file=logging_raw.get('file'),
    ))

    metrics_config = MetricsConfig(
        enabled=_to_bool(metrics_raw.get('enabled', False), 'metrics.enabled'),
        port=_to_port(metrics_raw.get('port', DEFAULT_METRICS_PORT), 'metrics.port'),
        listen_address=str(metrics_raw.get('listen_address', '0.0.0.0')),
    )

    config = Config(
        redis=redis_config,
        backup=backup_config,
        storage=storage,
        retention=retention_config,
        logging=logging_config,
        metrics=metrics_config,
    )
    _validate(config)
    return config


def apply_env_overrides(config: Config, environ: Dict[str, str]) -> Config:
    """Apply environment variable overrides on top of file configuration."""
    env = environ.get

    # Redis
    redis_config = config.redis
    if env('REDIS_CONNECTION'):
        redis_config = replace(redis_config, connection_string=env('REDIS_CONNECTION'))
    if env('REDIS_DATA_PATH'):
        redis_config = replace(redis_config, data_path=Path(env('REDIS_DATA_PATH')))
    if env('REDIS_NODE_NAME'):
        redis_config = replace(redis_config, node_name=env('REDIS_NODE_NAME'))
    if env('BACKUP_MASTER'):
        redis_config = replace(redis_config, backup_master=_to_bool(env('BACKUP_MASTER'), 'BACKUP_MASTER'))
    if env('BACKUP_REPLICA'):
        redis_config = replace(redis_config, backup_replica=_to_bool(env('BACKUP_REPLICA'), 'BACKUP_REPLICA'))

    # Backup
    backup_config = config.backup
    if env('BACKUP_INTERVAL'):
        backup_config = replace(backup_config, interval=_to_interval(env('BACKUP_INTERVAL'), 'BACKUP_INTERVAL'))
    if env('DUMP_FILENAME'):
        backup_config = replace(backup_config, dump_filename=env('DUMP_FILENAME'))
    if env('INITIAL_DELAY'):
        backup_config = replace(backup_config, initial_delay=_to_duration(env('INITIAL_DELAY'), 'INITIAL_DELAY'))

    # Storage
    storage = config.storage
    storage_type = env('STORAGE_TYPE', '').lower()
    if storage_type == 'gs':
        storage_type = 'gcs'
    if storage_type and storage_type not in STORAGE_TYPES:
        raise ConfigError(f"Unsupported STORAGE_TYPE: {env('STORAGE_TYPE')}")

    if not storage_type:
        if env('GCS_BUCKET'):
            storage_type = 'gcs'
        elif env('S3_BUCKET'):
            storage_type = 's3'
        else:
            storage_type = storage.kind

    if env('STORAGE_URL'):
        storage = parse_storage_url(env('STORAGE_URL'))
    elif storage_type == 'gcs':
        current = storage if storage.kind == 'gcs' else None
        bucket = env('GCS_BUCKET') or (current.bucket if current else None)
        if not bucket:
            raise ConfigError("GCS_BUCKET required for GCS storage")
        storage = StorageTarget(
            kind='gcs',
            bucket=bucket,
            prefix=env('GCS_PREFIX') or (current.prefix if current else DEFAULT_PREFIX),
            project_id=env('GCS_PROJECT_ID') or (current.project_id if current else None),
        )
    else:
        current = storage if storage.kind == 's3' else None
        bucket = env('S3_BUCKET') or (current.bucket if current else None)
        if not bucket:
            raise ConfigError("S3_BUCKET required for S3 storage")
        storage = StorageTarget(
            kind='s3',
            bucket=bucket,
            prefix=env('S3_PREFIX') or (current.prefix if current else DEFAULT_PREFIX),
            region=env('AWS_REGION') or (current.region if current else None),
            endpoint=env('S3_ENDPOINT') or (current.endpoint if current else None),
        )

    # Retention
    retention_config = config.retention
    if env('RETENTION_KEEP_LAST'):
        retention_config = replace(
            retention_config,
            keep_last=_to_count(env('RETENTION_KEEP_LAST'), 'RETENTION_KEEP_LAST')
        )
    if env('RETENTION_KEEP_DURATION'):
        retention_config = replace(
            retention_config,
            keep_duration=_to_duration(env('RETENTION_KEEP_DURATION'), 'RETENTION_KEEP_DURATION')
        )

    # Logging
    logging_config = config.logging
    if env('LOG_FORMAT'):
        logging_config = replace(logging_config, format=env('LOG_FORMAT').lower())
    if env('LOG_LEVEL'):
        logging_config = replace(logging_config, level=env('LOG_LEVEL').lower())
    if env('LOG_FILE'):
        logging_config = replace(logging_config, file=env('LOG_FILE'))
    logging_config = _validate_logging(logging_config)

    # Metrics
    metrics_config = config.metrics
    if env('METRICS_ENABLED'):
        metrics_config = replace(metrics_config, enabled=_to_bool(env('METRICS_ENABLED'), 'METRICS_ENABLED'))
    if env('METRICS_PORT'):
        metrics_config = replace(metrics_config, port=_to_port(env('METRICS_PORT'), 'METRICS_PORT'))
    if env('METRICS_LISTEN_ADDRESS'):
        metrics_config = replace(metrics_config, listen_address=env('METRICS_LISTEN_ADDRESS'))

    config = Config(
        redis=redis_config,
        backup=backup_config,
        storage=storage,
        retention=retention_config,
        logging=logging_config,
        metrics=metrics_config,
    )
    _validate(config)
    return config


def parse_storage_url(url: str) -> StorageTarget:
    """
    Parse a storage URL into a StorageTarget.

    Supported forms:
        s3://bucket/prefix?region=eu-central-1&endpoint=http://minio:9000
        gs://bucket/prefix?project_id=my-project   (gcs:// also accepted)

    Raises:
        ConfigError: If the scheme is unsupported or the bucket is missing
    """
    parsed = urlparse(str(url))
    scheme = parsed.scheme.lower()

    if scheme not in ('s3', 'gs', 'gcs'):
        raise ConfigError(f"Unsupported storage URL scheme in {url!r}: expected s3:// or gs://")

    bucket = parsed.netloc
    if not bucket:
        raise ConfigError(f"Storage URL {url!r} has no bucket")

    prefix = parsed.path.strip('/')
    query = {k: v[-1] for k, v in parse_qs(parsed.query).items()}

    if scheme == 's3':
        unknown = set(query) - {'region', 'endpoint'}
        if unknown:
            raise ConfigError(f"Unknown S3 storage URL parameters: {', '.join(sorted(unknown))}")
        return StorageTarget(
            kind='s3',
            bucket=bucket,
            prefix=prefix,
            region=query.get('region'),
            endpoint=query.get('endpoint'),
        )

    unknown = set(query) - {'project_id'}
    if unknown:
        raise ConfigError(f"Unknown GCS storage URL parameters: {', '.join(sorted(unknown))}")
    return StorageTarget(
        kind='gcs',
        bucket=bucket,
        prefix=prefix,
        project_id=query.get('project_id'),
    )


def _storage_from_mapping(raw: Dict[str, Any]) -> StorageTarget:
    kind = str(raw.get('type', 's3')).lower()
    if kind == 'gs':
        kind = 'gcs'
    if kind not in STORAGE_TYPES:
        raise ConfigError(f"Unsupported storage type: {kind!r} (expected one of: {', '.join(STORAGE_TYPES)})")

    if kind == 's3':
        unused = [key for key in ('project_id',) if raw.get(key)]
    else:
        unused = [key for key in ('region', 'endpoint') if raw.get(key)]
    if unused:
        logger.warning(f"Ignoring storage settings not used by {kind}: {', '.join(unused)}")

    return StorageTarget(
        kind=kind,
        bucket=str(raw.get('bucket', DEFAULT_PREFIX)),
        prefix=str(raw.get('prefix', DEFAULT_PREFIX)),
        region=raw.get('region') if kind == 's3' else None,
        endpoint=raw.get('endpoint') if kind == 's3' else None,
        project_id=raw.get('project_id') if kind == 'gcs' else None,
    )


def _validate(config: Config):
    if not config.redis.node_name:
        raise ConfigError("redis.node_name must not be empty")
    if not config.backup.dump_filename:
        raise ConfigError("backup.dump_filename must not be empty")
    if not config.storage.bucket:
        raise ConfigError("storage bucket must not be empty")


def _validate_logging(logging_config: LoggingConfig) -> LoggingConfig:
    if logging_config.format not in LOG_FORMATS:
        raise ConfigError(f"Invalid log format {logging_config.format!r} (expected text or json)")
    if logging_config.level not in ('debug', 'info', 'warn', 'warning', 'error', 'critical'):
        raise ConfigError(f"Invalid log level {logging_config.level!r}")
    return logging_config


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Configuration section '{name}' must be a mapping")
    # Keys left empty in YAML (null) fall back to their defaults
    return {key: value for key, value in section.items() if value is not None}


def _to_bool(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


def _to_count(value, name: str) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid integer for {name}: {value!r}")
    if count < 0:
        raise ConfigError(f"{name} must not be negative")
    return count


def _to_port(value, name: str) -> int:
    port = _to_count(value, name)
    if not 0 < port < 65536:
        raise ConfigError(f"{name} must be between 1 and 65535")
    return port


def _to_duration(value, name: str) -> timedelta:
    try:
        return parse_duration(value)
    except DurationError as e:
        raise ConfigError(f"Invalid duration for {name}: {e}")


def _to_interval(value, name: str) -> timedelta:
    interval = _to_duration(value, name)
    if interval.total_seconds() < 1:
        raise ConfigError(f"{name} must be at least one second")
    return interval
