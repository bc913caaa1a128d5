"""
app/utils/logging.py
───────────────────
Configures structured logging for the billing app.

Engine modules log through logging.getLogger(__name__) (names like
'app.billing.store') and propagate into app.logger ('app'), so one
set of handlers covers Flask and the checkout engine alike.
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import has_request_context, request


class RequestFormatter(logging.Formatter):
    """
    Custom formatter that injects request info (IP, URL) into logs
    when a request context is available.
    """
    def format(self, record):
        if has_request_context():
            record.url = request.url
            record.remote_addr = request.remote_addr
        else:
            record.url = None
            record.remote_addr = None
        return super().format(record)


def setup_logging(app):
    """
    Configure rotating file logging: logs/app.log
    Max size: 5MB
    Backup count: 5 files
    Format: timestamp | level | module | message
    """
    # create_app() can run many times in one process (tests); start clean
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)

    # 1. File Logger (skipped when the filesystem is read-only)
    if app.config.get('LOG_TO_FILE', True):
        try:
            log_dir = os.path.join(app.root_path, '..', 'logs')
            os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'app.log'),
                maxBytes=5 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(RequestFormatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(remote_addr)s | %(url)s | %(message)s'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)
        except OSError as exc:
            app.logger.warning(f'File logging disabled: {exc}')

    # 2. Stdout Logger
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))
    stream_handler.setLevel(logging.INFO)
    app.logger.addHandler(stream_handler)

    app.logger.setLevel(logging.INFO)
    app.logger.info("Billing checkout startup")
