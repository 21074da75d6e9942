import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from pythonjsonlogger.json import JsonFormatter

from redis_vault.config import ConfigError


__version__ = '0.3.0'

TEXT_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
JSON_FIELDS = ['asctime', 'levelname', 'name', 'message', 'module', 'funcName', 'lineno']


LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL,
}


def configure_logging(logging_config):
    """
    Configure application logging.

    Third-party libraries log at WARNING; redis_vault itself logs at the
    configured level.
    """
    log_level = LOG_LEVELS.get(logging_config.level.lower(), logging.INFO)

    if logging_config.format == 'json':
        formatter = JsonFormatter(' '.join(f'%({name})s' for name in JSON_FIELDS))
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    # File handler
    if logging_config.file:
        try:
            file_handler = RotatingFileHandler(
                logging_config.file,
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
        except OSError as e:
            raise ConfigError(f"Cannot open log file {logging_config.file}: {e}")
        if logging_config.format == 'json':
            file_handler.setFormatter(formatter)
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=logging.WARNING, handlers=handlers, force=True)

    logging.getLogger('redis_vault').setLevel(log_level)
    logging.getLogger('redis_vault').info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(metrics):
    """
    Flask application factory for the metrics endpoint.

    Args:
        metrics: Metrics instance to expose
    """
    app = Flask(__name__)
    app.config['METRICS'] = metrics

    from redis_vault.routes import metrics_routes
    app.register_blueprint(metrics_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        from redis_vault.scheduler import get_scheduled_jobs, is_scheduler_running
        jobs = get_scheduled_jobs()
        return {
            'status': 'healthy',
            'scheduler': 'running' if is_scheduler_running() else 'stopped',
            'next_backup': jobs[0]['next_run'] if jobs else None
        }, 200

    return app
