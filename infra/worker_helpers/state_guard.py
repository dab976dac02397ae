from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.state import SessionState


@dataclass(frozen=True)
class HopGuard:
    """Resumption guard for one hop delivery (turn id + expected status + cycle)."""

    turn_id: str
    cycle_count: int
    expect_status: str

    def matches(self, state: Optional[SessionState]) -> bool:
        if state is None:
            return False
        return (
            state.current_turn_id == self.turn_id
            and state.status == self.expect_status
            and state.cycle_count == self.cycle_count
        )

    def mismatch_detail(self, state: Optional[SessionState]) -> str:
        if state is None:
            return f"hop(turn={self.turn_id},cycle={self.cycle_count}) state(missing)"
        return (
            f"hop(turn={self.turn_id},status={self.expect_status},cycle={self.cycle_count}) "
            f"state(turn={state.current_turn_id},status={state.status},cycle={state.cycle_count})"
        )
