"""
Shared pytest fixtures for redis-vault tests.

This module provides fixtures for:
- Configuration pointing at a temporary data directory
- A fresh Metrics registry per test
- Flask app and test client for the metrics endpoint
- Mock fixtures for external services (S3, Redis)
- A dump file with a fixed modification time
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from redis_vault import create_app
from redis_vault import scheduler as scheduler_module
from redis_vault.backup.storage import BackupRecord
from redis_vault.config import (
    Config, RedisConfig, BackupConfig, StorageTarget, RetentionConfig
)
from redis_vault.metrics import Metrics


# 2024-01-15T12:00:00Z
DUMP_MTIME = 1705320000


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never touches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Reset the global scheduler state after each test."""
    yield
    scheduler_module.scheduler = None
    scheduler_module.backup_executor = None


@pytest.fixture
def data_dir(tmp_path):
    """Redis data directory."""
    path = tmp_path / 'data'
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir):
    """
    Configuration backing up both roles to s3://test-bucket/redis-vault.
    """
    return Config(
        redis=RedisConfig(
            connection_string='redis://localhost:6379',
            data_path=data_dir,
            node_name='cache-0',
            backup_master=True,
            backup_replica=True
        ),
        backup=BackupConfig(
            interval=timedelta(hours=1),
            dump_filename='dump.rdb',
            initial_delay=timedelta(0)
        ),
        storage=StorageTarget(
            kind='s3',
            bucket='test-bucket',
            prefix='redis-vault/'
        ),
        retention=RetentionConfig(keep_last=2, keep_duration=None)
    )


@pytest.fixture
def dump_file(data_dir):
    """
    Create dump.rdb with a fixed modification time (2024-01-15T12:00:00Z).
    """
    path = data_dir / 'dump.rdb'
    path.write_bytes(b'REDIS0011' + b'\x00' * 1024)
    os.utime(path, (DUMP_MTIME, DUMP_MTIME))
    return path


@pytest.fixture
def metrics():
    """Metrics with a private registry."""
    return Metrics()


@pytest.fixture
def app(metrics):
    """Flask app exposing the metrics."""
    app = create_app(metrics)
    app.config.update({'TESTING': True})
    return app


@pytest.fixture
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_storage():
    """
    In-memory stand-in for a StorageBackend.

    Uploaded objects are kept in ``objects``; list() returns records for them.
    """
    storage = MagicMock()
    storage.name = 's3'
    storage.bucket_name = 'test-bucket'
    storage.objects = {}

    def upload(key, data):
        storage.objects[key] = data

    def list_objects(prefix):
        now = datetime(2024, 1, 15, 12, 0, 5, tzinfo=timezone.utc)
        return [
            BackupRecord(key=key, timestamp=now, size=len(data))
            for key, data in storage.objects.items()
            if key.startswith(prefix)
        ]

    storage.upload.side_effect = upload
    storage.list.side_effect = list_objects
    return storage


@pytest.fixture
def mock_redis_client():
    """
    Mock redis client reporting the master role.
    """
    client = MagicMock()
    client.info.return_value = {'role': 'master', 'connected_slaves': 1}
    client.ping.return_value = True
    return client


@pytest.fixture
def make_records():
    """
    Factory building ``count`` records with descending timestamps starting at ``newest``.
    """
    def factory(count, newest, step=timedelta(hours=1), prefix='redis-vault/cache-0_'):
        return [
            BackupRecord(
                key=f"{prefix}{(newest - i * step).strftime('%Y-%m-%dT%H:%M:%SZ')}.rdb",
                timestamp=newest - i * step,
                size=1024
            )
            for i in range(count)
        ]

    return factory
