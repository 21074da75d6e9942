"""
Backup module for redis-vault.

This module handles the core backup functionality including:
- Redis role detection
- Storage (S3 and GCS)
- Cycle orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupError, build_backup_key
from .role import RoleDetector, RoleDetectionError, Role
from .storage import StorageBackend, BackupRecord, S3Storage, GCSStorage, StorageError, create_storage
from .retention import RetentionManager, partition

__all__ = [
    'BackupExecutor',
    'BackupError',
    'build_backup_key',
    'RoleDetector',
    'RoleDetectionError',
    'Role',
    'StorageBackend',
    'BackupRecord',
    'S3Storage',
    'GCSStorage',
    'StorageError',
    'create_storage',
    'RetentionManager',
    'partition'
]
