#!/usr/bin/env python3
"""
Structured logging for the Jira ↔ planning mirror.

Provides context-aware logging with optional rotation and sanitization.
"""

import os
import sys
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Any, Optional


SENSITIVE_KEYS = ('token', 'password', 'secret', 'auth')


class SyncLogger:
    """Structured logger for mirror operations."""

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        debug: bool = False,
        console_output: bool = True
    ):
        """
        Initialize sync logger.

        Args:
            log_dir: Directory for log files (default: .popsync/logs/ when a
                .popsync directory exists above the working directory)
            debug: Enable debug mode with verbose logging
            console_output: Also output to console
        """
        if log_dir is None:
            current_dir = Path.cwd()
            while current_dir != current_dir.parent:
                if (current_dir / '.popsync').is_dir():
                    log_dir = current_dir / '.popsync' / 'logs'
                    break
                current_dir = current_dir.parent

        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        self.debug_enabled = debug or os.getenv('DEBUG', '').lower() in ('true', '1', 'yes')

        self.logger = logging.getLogger('popsync')
        self.logger.setLevel(logging.DEBUG if self.debug_enabled else logging.INFO)
        self.logger.propagate = False
        self.logger.handlers.clear()

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.DEBUG if self.debug_enabled else logging.INFO)
            console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
            self.logger.addHandler(console_handler)

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = self.log_dir / 'popsync.log'

            # 10MB max, keep 30 backups
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=30
            )
            file_handler.setLevel(logging.DEBUG if self.debug_enabled else logging.INFO)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(file_handler)

    def _format_context(self, context: Dict[str, Any]) -> str:
        """Format context dictionary as structured data."""
        if not context:
            return ''

        sanitized = {}
        for key, value in context.items():
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                sanitized[key] = '<REDACTED>'
            else:
                sanitized[key] = value

        return ' | ' + json.dumps(sanitized, separators=(',', ':'), default=str)

    def info(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Log informational message.

        Args:
            message: Log message
            context: Optional context data (dict)
        """
        self.logger.info(message + self._format_context(context or {}))

    def debug(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log debug message (only if debug mode enabled)."""
        if self.debug_enabled:
            self.logger.debug(message + self._format_context(context or {}))

    def warning(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log warning message."""
        self.logger.warning(message + self._format_context(context or {}))

    def error(
        self,
        message: str,
        error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log error message with exception details.

        Args:
            message: Log message
            error: Optional exception object
            context: Optional context data (dict)
        """
        msg = message
        if error:
            msg += f" | Error: {type(error).__name__}: {str(error)}"

        msg += self._format_context(context or {})
        self.logger.error(msg, exc_info=error if self.debug_enabled else None)

    def log_sync_operation(
        self,
        operation: str,
        result: str,
        duration: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a mirror operation with structured metadata.

        Args:
            operation: Operation name (e.g., 'process_issues', 'update_issue')
            result: Result status ('success', 'failure', 'partial')
            duration: Operation duration in seconds
            context: Optional context data (dict)
        """
        ctx = dict(context or {})
        ctx['operation'] = operation
        ctx['result'] = result

        if duration is not None:
            ctx['duration_sec'] = round(duration, 3)

        level = logging.INFO if result == 'success' else logging.ERROR
        msg = f"Operation: {operation} | Result: {result}"

        if duration is not None:
            msg += f" | Duration: {duration:.3f}s"

        msg += self._format_context(ctx)
        self.logger.log(level, msg)

    def log_file_change(
        self,
        action: str,
        path: Path,
        dry_run: bool = False,
        reason: Optional[str] = None
    ) -> None:
        """
        Log a change to the local mirror.

        Args:
            action: What happened to the path ('wrote', 'removed', 'relocated', 'pruned')
            path: File or directory affected
            dry_run: The change was only planned, nothing touched disk
            reason: Optional explanation appended to the message
        """
        prefix = '[dry-run] ' if dry_run else ''
        msg = f"{prefix}{action.capitalize()} {path}"
        if reason:
            msg += f" ({reason})"

        ctx = {'action': action, 'path': str(path), 'dry_run': dry_run}
        if action == 'wrote':
            self.debug(msg, ctx)
        else:
            self.info(msg, ctx)

    def log_http_request(
        self,
        method: str,
        url: str,
        status_code: Optional[int] = None,
        duration: Optional[float] = None
    ) -> None:
        """Log HTTP request details (debug mode only)."""
        if not self.debug_enabled:
            return

        # Drop query parameters, they may carry credentials
        from urllib.parse import urlparse
        parsed = urlparse(url)
        sanitized_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"

        self.debug(f"HTTP {method} {sanitized_url}", {
            'method': method,
            'url': sanitized_url,
            'status_code': status_code,
            'duration_sec': round(duration, 3) if duration else None
        })


_logger: Optional[SyncLogger] = None


def get_logger(
    log_dir: Optional[Path] = None,
    debug: bool = False,
    console_output: bool = True
) -> SyncLogger:
    """
    Get or create the process logger.

    Args:
        log_dir: Directory for log files
        debug: Enable debug mode with verbose logging
        console_output: Also output to console

    Returns:
        SyncLogger instance
    """
    global _logger

    if _logger is None:
        _logger = SyncLogger(
            log_dir=log_dir,
            debug=debug,
            console_output=console_output
        )

    return _logger
