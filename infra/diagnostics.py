from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import uuid6

from core.time_utils import utc_now

logger = logging.getLogger("Diagnostics")

_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR}


@dataclass(frozen=True, slots=True, kw_only=True)
class DiagnosticRecord:
    diagnostic_id: str
    session_id: Optional[str]
    turn_id: Optional[str]
    level: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


class DiagnosticSink(Protocol):
    async def insert_records(self, records: List[DiagnosticRecord]) -> int: ...


class DiagnosticBuffer:
    """Per-invocation diagnostic log, written out once at the end of a hop.

    Entries are also mirrored to the process logger. Flushing is best effort:
    a failing sink is logged and the buffer is discarded.
    """

    def __init__(
        self,
        sink: Optional[DiagnosticSink],
        *,
        session_id: Optional[str] = None,
        turn_id: Optional[str] = None,
    ) -> None:
        self._sink = sink
        self.session_id = session_id
        self.turn_id = turn_id
        self._records: List[DiagnosticRecord] = []
        self._flushed = False

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[DiagnosticRecord]:
        return list(self._records)

    def add(self, level: str, message: str, **data: Any) -> None:
        if self._flushed:
            logger.debug("Diagnostic after flush dropped: %s", message)
            return
        self._records.append(
            DiagnosticRecord(
                diagnostic_id=uuid6.uuid7().hex,
                session_id=self.session_id,
                turn_id=self.turn_id,
                level=level.upper(),
                message=message,
                data=dict(data),
            )
        )
        logger.log(_LEVELS.get(level.upper(), logging.INFO), "[session=%s turn=%s] %s", self.session_id, self.turn_id, message)

    def info(self, message: str, **data: Any) -> None:
        self.add("info", message, **data)

    def warning(self, message: str, **data: Any) -> None:
        self.add("warning", message, **data)

    def error(self, message: str, **data: Any) -> None:
        self.add("error", message, **data)

    async def flush(self) -> int:
        if self._flushed:
            return 0
        self._flushed = True
        if not self._records or self._sink is None:
            return 0
        records, self._records = self._records, []
        try:
            return int(await self._sink.insert_records(records) or 0)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Diagnostic flush failed session=%s turn=%s (%s records): %s",
                self.session_id,
                self.turn_id,
                len(records),
                exc,
            )
            return 0
