"""
Logging infrastructure for the Gmail MCP bridge.

Console output goes through Rich, file output through a rotating
handler; both can emit JSON records carrying the ``extra`` context
that modules attach (user ids, cache kinds, keys).
"""

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

# Attributes every LogRecord carries; anything else came in via ``extra``.
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "getMessage", "exc_info",
    "exc_text", "stack_info", "taskName", "message", "asctime",
})

HTTP_LOGGERS = ("aiohttp", "aiohttp.access", "httpx", "httpcore", "urllib3")


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single JSON line."""
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(_extra_fields(record))
        return json.dumps(log_entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends ``extra`` context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _extra_fields(record)
        if not context:
            return base
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{base} | {pairs}"


class BridgeLogger:
    """Logging manager for the bridge process."""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._setup_done = False

    @property
    def configured(self) -> bool:
        return self._setup_done

    def setup_logging(
        self,
        level: Union[str, int] = logging.INFO,
        console_level: Union[str, int] = logging.INFO,
        log_file: Optional[Path] = None,
        format_type: str = "text",
        enable_rich: bool = True,
        max_bytes: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 5,
        suppress_http: bool = True,
        force: bool = False,
    ) -> None:
        """
        Configure the root logger.

        Args:
            level: File logging level
            console_level: Console logging level
            log_file: Path to log file (optional)
            format_type: Format type ('text', 'json')
            enable_rich: Use Rich for console output
            max_bytes: Maximum log file size before rotation
            backup_count: Number of backup files to keep
            suppress_http: Raise HTTP client loggers to WARNING
            force: Reconfigure even if logging was already set up
        """
        if self._setup_done and not force:
            return

        if isinstance(level, str):
            level = getattr(logging, level.upper())
        if isinstance(console_level, str):
            console_level = getattr(logging, console_level.upper())

        root_logger = logging.getLogger()
        root_logger.setLevel(min(level, console_level))
        root_logger.handlers.clear()

        if enable_rich and format_type != "json":
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                markup=False,
                show_path=False,
            )
        else:
            console_handler = logging.StreamHandler(sys.stderr)
            if format_type == "json":
                console_handler.setFormatter(JSONFormatter())
            else:
                console_handler.setFormatter(ContextFormatter(
                    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
                ))
        console_handler.setLevel(console_level)
        root_logger.addHandler(console_handler)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            if format_type == "json":
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(ContextFormatter(
                    "%(asctime)s | %(levelname)s | %(name)s | "
                    "%(module)s:%(funcName)s:%(lineno)d | %(message)s"
                ))
            file_handler.setLevel(level)
            root_logger.addHandler(file_handler)

        if suppress_http:
            for logger_name in HTTP_LOGGERS:
                logging.getLogger(logger_name).setLevel(logging.WARNING)

        self._setup_done = True

    def get_logger(self, name: str) -> logging.Logger:
        """Get or create a logger instance."""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


_logger_manager = BridgeLogger()

setup_logging = _logger_manager.setup_logging
get_logger = _logger_manager.get_logger


def setup_logging_from_config(config, force: bool = False) -> None:
    """Configure logging from a loaded ``Config`` object."""
    setup_logging(
        level=config.logging.level,
        console_level=config.logging.console_level,
        log_file=config.get_log_file(),
        format_type=config.logging.format_type,
        enable_rich=config.logging.enable_rich,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        suppress_http=config.logging.suppress_http,
        force=force,
    )
