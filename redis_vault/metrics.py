"""
Prometheus metrics for redis-vault.

One Metrics instance is created at startup and shared between the backup
cycle (writer) and the metrics HTTP server (reader). prometheus_client
guards every metric with its own lock, so scrapes never see torn updates.
"""

import logging
import threading
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from werkzeug.serving import make_server


logger = logging.getLogger(__name__)

# 1 KiB .. 16 GiB
SIZE_BUCKETS = tuple(float(1024 * 4 ** i) for i in range(13))
DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)


class Metrics:
    """Process-wide metrics handle with a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Backup operation counters
        self.backups_total = Counter(
            'redis_vault_backups',
            'Total number of backup operations attempted',
            registry=self.registry
        )
        self.backups_successful = Counter(
            'redis_vault_backups_successful',
            'Total number of successful backup operations',
            registry=self.registry
        )
        self.backups_failed = Counter(
            'redis_vault_backups_failed',
            'Total number of failed backup operations',
            registry=self.registry
        )

        # Backup operation details
        self.backup_size_bytes = Histogram(
            'redis_vault_backup_size_bytes',
            'Size of backup files in bytes',
            buckets=SIZE_BUCKETS,
            registry=self.registry
        )
        self.backup_duration_seconds = Histogram(
            'redis_vault_backup_duration_seconds',
            'Duration of backup operations in seconds',
            buckets=DURATION_BUCKETS,
            registry=self.registry
        )
        self.last_backup_timestamp = Gauge(
            'redis_vault_last_backup_timestamp_seconds',
            'Unix timestamp of the last successful backup',
            registry=self.registry
        )

        # Storage operations
        self.storage_uploads_total = Counter(
            'redis_vault_storage_uploads',
            'Total number of storage upload operations',
            registry=self.registry
        )
        self.storage_deletes_total = Counter(
            'redis_vault_storage_deletes',
            'Total number of storage delete operations',
            registry=self.registry
        )
        self.storage_delete_failures_total = Counter(
            'redis_vault_storage_delete_failures',
            'Total number of storage delete operations that failed',
            registry=self.registry
        )

        # Cleanup operations
        self.cleanup_operations_total = Counter(
            'redis_vault_cleanup_operations',
            'Total number of cleanup operations performed',
            registry=self.registry
        )
        self.backups_deleted_total = Counter(
            'redis_vault_backups_deleted',
            'Total number of old backups deleted during cleanup',
            registry=self.registry
        )

    def gather(self) -> bytes:
        """Render all metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def sample(self, name: str) -> float:
        """
        Current value of a single sample, e.g. 'redis_vault_backups_total'.

        Returns 0.0 when the sample does not exist yet.
        """
        value = self.registry.get_sample_value(name)
        return value if value is not None else 0.0


class MetricsServer:
    """
    Serves the metrics Flask app from a background thread.

    The server only reads from the Metrics registry.
    """

    def __init__(self, app, host: str, port: int):
        self.host = host
        self.port = port
        self._server = make_server(host, port, app, threaded=True)
        self._thread = None

    def start(self):
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name='metrics-server',
            daemon=True
        )
        self._thread.start()
        logger.info(f"Metrics server bound to {self.host}:{self._server.server_port}")

    def stop(self):
        if self._thread is None:
            return

        self._server.shutdown()
        self._thread.join(timeout=5)
        self._thread = None
        logger.info("Metrics server stopped")


def start_metrics_server(metrics: Metrics, host: str, port: int) -> Optional[MetricsServer]:
    """
    Start the metrics HTTP server.

    A bind failure is logged and swallowed: metrics are a side channel and
    must not prevent backups from running.

    Returns:
        The running MetricsServer, or None if it could not be started
    """
    from redis_vault import create_app

    app = create_app(metrics)

    try:
        server = MetricsServer(app, host, port)
    except OSError as e:
        logger.error(f"Metrics server failed: could not bind to {host}:{port}: {e}")
        return None

    server.start()
    return server
