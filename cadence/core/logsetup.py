"""
Logging setup — console + dated file handler, and a JSONL event log.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from cadence.core.events import Event


def setup_logging(
    log_dir: Path,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Configure the "cadence" logger.

    Args:
        log_dir: Directory for the daemon log file
        console_level: Minimum level for console output
        file_level: Minimum level for file output

    Returns:
        The configured logger
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("cadence")
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(console_handler)

    log_file = log_dir / f"cadence_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(file_handler)

    logger.debug(f"Logging initialized. File: {log_file}")
    return logger


class EventLogger:
    """
    Appends every bus event to events_<date>.jsonl.

    Usage:
        event_logger = EventLogger(paths.logs_dir)
        bus.on("*", event_logger.handle)
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        self._logger = logging.getLogger("cadence.events")

    @property
    def events_file(self) -> Path:
        return self._log_dir / f"events_{datetime.now().strftime('%Y%m%d')}.jsonl"

    async def handle(self, event: Event) -> None:
        self._logger.debug(f"[{event.type}] source={event.source}")
        record = {
            "timestamp": datetime.fromtimestamp(event.timestamp).isoformat(),
            "id": event.id,
            "type": event.type,
            "source": event.source,
            "data": self._safe_serialize(event.data),
        }
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.events_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            self._logger.warning(f"Failed to write event log: {e}")

    @staticmethod
    def _safe_serialize(data: dict) -> dict:
        result = {}
        for key, value in data.items():
            try:
                json.dumps(value)
                result[key] = value
            except (TypeError, ValueError):
                result[key] = str(value)
        return result
