from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class DiagnosticRecord:
    logged_at: datetime
    level: str
    logger: str
    message: str


class DiagnosticLogHandler(logging.Handler):
    """Keep the most recent warning and error records for the status API."""

    def __init__(self, capacity: int = 200, level: int = logging.WARNING) -> None:
        super().__init__(level=level)
        self._records: deque[DiagnosticRecord] = deque(maxlen=max(1, capacity))
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        entry = DiagnosticRecord(
            logged_at=datetime.fromtimestamp(record.created, timezone.utc),
            level=record.levelname,
            logger=record.name,
            message=message,
        )
        with self._lock:
            self._records.append(entry)

    def records(self) -> list[DiagnosticRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


def install_diagnostic_log(
    capacity: int = 200,
    level: int = logging.WARNING,
    formatter: logging.Formatter | None = None,
) -> DiagnosticLogHandler:
    handler = DiagnosticLogHandler(capacity=capacity, level=level)
    handler.setFormatter(formatter or logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)
    logging.getLogger(__name__).debug(
        "Diagnostic log installed capacity=%d level=%s",
        capacity,
        logging.getLevelName(level),
    )
    return handler


__all__ = ["DiagnosticLogHandler", "DiagnosticRecord", "install_diagnostic_log"]
