"""Centralized logging configuration with editor session ID support."""

import logging
import sys
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger

session_id_var: ContextVar[str] = ContextVar('session_id', default='')


class SessionIdFilter(logging.Filter):
    """Adds session_id to all log records"""

    def filter(self, record):
        record.session_id = session_id_var.get('')
        return True


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """Sets up JSON logging with session ID support"""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(session_id)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'name': 'logger',
            'levelname': 'level',
        }
    )

    json_handler.setFormatter(formatter)
    json_handler.addFilter(SessionIdFilter())
    logger.addHandler(json_handler)
    logging.info(f"{service_name} logging configured with JSON format and session ID support")


def set_session_id(session_id: str) -> None:
    session_id_var.set(session_id)
