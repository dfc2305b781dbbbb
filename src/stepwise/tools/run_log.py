"""Per-run audit log written under the state directory."""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from ..utils.slug import slugify, timestamp_token

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"


class RunLog:
    """Attach a file handler to a run-specific logger.

    Records still propagate to the ``stepwise`` logger hierarchy so console
    output configured by the CLI keeps working.
    """

    def __init__(self, log_dir: Path, plan_name: str) -> None:
        token = timestamp_token()
        slug = slugify(plan_name, fallback="plan")
        log_dir.mkdir(parents=True, exist_ok=True)
        self.path = log_dir / f"{slug}-{token}.log"
        self.logger = logging.getLogger(f"stepwise.run.{slug}.{token}")
        self.logger.setLevel(logging.DEBUG)
        self._handler: Optional[logging.Handler] = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger.addHandler(self._handler)

    def __enter__(self) -> "RunLog":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.close()

    def info(self, message: str, *args: object) -> None:
        self.logger.info(message, *args)

    def warning(self, message: str, *args: object) -> None:
        self.logger.warning(message, *args)

    def error(self, message: str, *args: object) -> None:
        self.logger.error(message, *args)

    def critical(self, message: str, *args: object) -> None:
        self.logger.critical(message, *args)

    def output(self, step_id: str, line: str) -> None:
        """Record one line of child-process output."""
        self.logger.info("[%s] %s", step_id, line)

    def close(self) -> None:
        if self._handler is None:
            return
        self.logger.removeHandler(self._handler)
        self._handler.close()
        self._handler = None


__all__ = ["LOG_FORMAT", "RunLog"]
