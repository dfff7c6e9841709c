# =============================================================================
# File: wabridge/config/logging_config.py
# Description: Logging configuration using Rich framework
# =============================================================================

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, '').lower()
    return value in ('true', '1', 'yes', 'on') if value else default


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


WABRIDGE_THEME = Theme({
    "logging.level.debug": "magenta dim",
    "logging.level.info": "green",
    "logging.level.warning": "dark_goldenrod",
    "logging.level.error": "red",
    "logging.level.critical": "bold red",
    "log.time": "grey70",
    "log.path": "grey35",
})

PLAIN_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)-40s] %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ProductionFormatter(logging.Formatter):
    """JSON formatter for production environments"""

    # Attributes callers attach via `extra=` that are worth keeping in JSON logs
    EXTRA_FIELDS = ("instance", "event_kind", "event_id", "recipient_url", "operation")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if get_env_bool('LOG_JSON_INCLUDE_EXTRAS', True):
            for attr in self.EXTRA_FIELDS:
                if hasattr(record, attr):
                    log_obj[attr] = getattr(record, attr)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def get_logger_level_from_env(logger_name: str, default_level: int) -> int:
    """Get logger level from environment variable."""
    # e.g., "wabridge.webhooks.dispatcher" -> "LOGLEVEL_WABRIDGE_WEBHOOKS_DISPATCHER"
    env_name = f"LOGLEVEL_{logger_name.replace('.', '_').upper()}"

    level_str = os.getenv(env_name, '').upper()
    if level_str:
        level_map = {
            'DEBUG': logging.DEBUG,
            'INFO': logging.INFO,
            'WARNING': logging.WARNING,
            'WARN': logging.WARNING,
            'ERROR': logging.ERROR,
            'CRITICAL': logging.CRITICAL,
        }
        return level_map.get(level_str, default_level)

    return default_level


# Third-party loggers are quiet by default; wabridge components can be tuned
# individually through LOGLEVEL_<LOGGER_NAME> (dots become underscores).
COMPONENT_LEVELS = {
    "asyncio": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "prometheus_client": logging.WARNING,
    "wabridge.events.normalizer": logging.INFO,
    "wabridge.identity.resolver": logging.INFO,
    "wabridge.webhooks.dispatcher": logging.INFO,
    "wabridge.infra.reliability.retry": logging.WARNING,
}


def _console_handler(enable_json: bool, rich_tracebacks: bool) -> logging.Handler:
    force_color = get_env_bool("FORCE_COLOR", False)
    if not enable_json and (sys.stdout.isatty() or force_color):
        console = Console(
            theme=WABRIDGE_THEME,
            force_terminal=force_color,
            width=get_env_int("LOG_CONSOLE_WIDTH", 0) or None,
        )
        return RichHandler(
            console=console,
            rich_tracebacks=rich_tracebacks,
            show_path=False,
            log_time_format="[%X]",
        )

    handler = logging.StreamHandler(sys.stdout)
    if enable_json:
        handler.setFormatter(ProductionFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def _file_handler(path: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=get_env_int("LOG_MAX_SIZE_MB", 100) * 1024 * 1024,
        backupCount=get_env_int("LOG_BACKUP_COUNT", 5),
        encoding="utf-8",
    )
    # Files stay plain text whatever the console uses
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def setup_logging(
        service_name: str = "wabridge",
        log_level: Optional[str] = None,
        log_file: Optional[str] = None,
        enable_json: Optional[bool] = None,
        rich_tracebacks: bool = True,
) -> None:
    """
    Configure the root logger for a wabridge process.

    Console output is rich on a TTY (or with FORCE_COLOR), JSON lines with
    LOG_JSON_FORMAT=true, plain text otherwise. LOG_FILE adds a rotating
    plain-text file.
    """
    if enable_json is None:
        enable_json = get_env_bool("LOG_JSON_FORMAT", False)

    root = logging.getLogger()
    root.setLevel((log_level or os.getenv("LOG_LEVEL", "INFO")).upper())
    root.handlers.clear()
    root.addHandler(_console_handler(enable_json, rich_tracebacks))

    log_file = log_file or os.getenv("LOG_FILE")
    if log_file:
        root.addHandler(_file_handler(log_file))

    for logger_name, default_level in COMPONENT_LEVELS.items():
        logging.getLogger(logger_name).setLevel(get_logger_level_from_env(logger_name, default_level))

    logging.getLogger(f"{service_name}.startup").info(
        f"Logging configured for {service_name} (json={enable_json}, file={log_file or '-'})"
    )


def get_logger(name: str) -> logging.Logger:
    """Logger in the wabridge.<area> hierarchy."""
    return logging.getLogger(name)
