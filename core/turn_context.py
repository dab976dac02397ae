from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True, slots=True)
class TurnContext:
    """Identity/trace context for a single turn-scoped notification."""

    session_id: str
    turn_id: str
    trace_id: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def publish_headers(self) -> Dict[str, str]:
        headers = dict(self.headers or {})
        if self.trace_id:
            headers.setdefault("TR-Trace-Id", self.trace_id)
        headers.setdefault("TR-Turn-Id", self.turn_id)
        return headers
