"""
Command line entry point for redis-vault.

Exit codes:
    0  clean shutdown (or a successful --once cycle)
    1  startup failure (storage backend or Redis unavailable) or failed --once cycle
    2  invalid configuration
"""

import argparse
import logging
import signal
import sys
import threading

from redis_vault import __version__, configure_logging
from redis_vault.backup.executor import BackupExecutor
from redis_vault.backup.role import RoleDetector, RoleDetectionError
from redis_vault.backup.storage import StorageError, create_storage
from redis_vault.config import ConfigError, DEFAULT_CONFIG_PATH, load_config
from redis_vault.metrics import Metrics, start_metrics_server
from redis_vault import scheduler


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='redis-vault',
        description='Back up Redis dump files to S3 or GCS on a fixed schedule.'
    )
    parser.add_argument(
        '-c', '--config',
        default=DEFAULT_CONFIG_PATH,
        help=f'path to configuration file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='run a single backup cycle and exit'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)


def install_signal_handlers(stop_event: threading.Event):
    """Set stop_event on SIGTERM/SIGINT so the scheduler loop ends cleanly."""
    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"redis-vault: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        configure_logging(config.logging)
    except ConfigError as e:
        print(f"redis-vault: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logger.debug(f"Config: {config}")

    metrics = Metrics()
    metrics_server = None
    if config.metrics.enabled:
        metrics_server = start_metrics_server(metrics, config.metrics.listen_address, config.metrics.port)
    else:
        logger.info("Metrics server disabled")

    try:
        try:
            storage = create_storage(config.storage)
        except StorageError as e:
            logger.error(f"Failed to initialize {e.backend or 'storage'} backend: {e}")
            return EXIT_FAILURE

        role_detector = RoleDetector(config.redis.connection_string)
        if config.redis.role_detection_required:
            try:
                role_detector.check_connection()
            except RoleDetectionError as e:
                logger.error(f"Role detection is required but {e}")
                return EXIT_FAILURE

        executor = BackupExecutor(config, storage, metrics, role_detector=role_detector)

        logger.info(
            f"Backing up {config.dump_path} as node {config.redis.node_name} "
            f"to {config.storage.kind}://{config.storage.bucket}/{config.storage.clean_prefix}"
        )

        stop_event = threading.Event()
        install_signal_handlers(stop_event)

        try:
            succeeded = scheduler.run(
                executor,
                interval=config.backup.interval,
                initial_delay=config.backup.initial_delay,
                once=args.once,
                stop_event=stop_event
            )
        except ConfigError as e:
            logger.error(f"Invalid schedule: {e}")
            return EXIT_CONFIG_ERROR

        return EXIT_OK if succeeded else EXIT_FAILURE

    finally:
        if metrics_server is not None:
            metrics_server.stop()


if __name__ == '__main__':
    sys.exit(main())
