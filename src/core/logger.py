"""Operation logging for orchestration components.

OperationLogger wraps a standard library logger and adds the
per-environment prefix and process/command events emitted by the
orchestration engine. Instances are passed explicitly to the
components that log; none of them share mutable logger state.
"""

import json
import logging
import os
import sys
from typing import Any, Optional


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Install a console handler on the root logger.

    Args:
        level: Log level name; falls back to LOG_LEVEL env var, then INFO
    """
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))


class OperationLogger:
    """Structured logger for orchestration events.

    Args:
        logger: Standard library logger to write through; defaults to
            this module's logger
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return self._logger.name

    @staticmethod
    def _format(message: str, prefix: Optional[str]) -> str:
        if prefix:
            return f"[{prefix}] {message}"
        return message

    def info(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.info(self._format(message, prefix))

    def warn(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.warning(self._format(message, prefix))

    def error(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.error(self._format(message, prefix))

    def debug(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.debug(self._format(message, prefix))

    def process_start(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.info(self._format(f"Process started: {message}", prefix))

    def process_end(self, message: str, prefix: Optional[str] = None) -> None:
        self._logger.info(self._format(f"Process completed: {message}", prefix))

    def dry_run(
        self,
        command: str,
        parameters: Optional[Any] = None,
        prefix: Optional[str] = None,
    ) -> None:
        """Record a mutating command that dry-run mode skipped."""
        self._logger.info(
            self._format(f"Dry run is true, so not executing {command}", prefix)
        )
        if parameters is not None:
            self._logger.info(self._format(
                f"Would have executed {command} with arguments: "
                f"{json.dumps(parameters, default=str)}",
                prefix,
            ))

    def command_execution(self, command: str, prefix: Optional[str] = None) -> None:
        self._logger.info(self._format(f"Executing {command}", prefix))

    def command_success(self, command: str, prefix: Optional[str] = None) -> None:
        self._logger.info(self._format(f"Successfully executed {command}", prefix))
