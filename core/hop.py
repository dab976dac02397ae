"""Value types exchanged between hops of a turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import (
    ACTION_EXECUTION_FAILED,
    InputValidationError,
    classify_exception,
)

HOP_REQUEST_MSG_TYPE = "hop_request"
MSG_TYPE_KEY = "__msg_type__"


class HopKind(str, Enum):
    ACTION = "action"
    FOLLOW_UP = "follow_up"


class Capability(BaseModel):
    """Descriptor of the capability an action hop runs."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    capability_id: Optional[str] = None
    name: Optional[str] = None
    config_json: Optional[str] = None
    pre_hook: Optional[str] = None
    post_hook: Optional[str] = None


class HopRequest(BaseModel):
    """Payload of one dispatched hop.

    `cycle_count` is the cycle the session must be at for this delivery to be
    processed. Together with `turn_id` and the expected status it forms the
    key that drops duplicate and out-of-order deliveries.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    session_id: str = Field(min_length=1)
    turn_id: str = Field(min_length=1)
    cycle_count: int = Field(ge=1)
    hop_kind: HopKind
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    agent_config_id: Optional[str] = None
    related_record_id: Optional[str] = None
    trace_id: Optional[str] = None
    # action hop only
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    arguments_json: Optional[str] = None
    capability: Optional[Capability] = None

    def to_message(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data[MSG_TYPE_KEY] = HOP_REQUEST_MSG_TYPE
        return data

    @classmethod
    def from_message(cls, data: Mapping[str, Any]) -> "HopRequest":
        if not isinstance(data, Mapping):
            raise InputValidationError("hop request must be a mapping")
        msg_type = data.get(MSG_TYPE_KEY)
        if msg_type != HOP_REQUEST_MSG_TYPE:
            raise InputValidationError(f"unexpected message type: {msg_type!r}")
        body = {k: v for k, v in data.items() if k != MSG_TYPE_KEY}
        try:
            return cls.model_validate(body)
        except ValidationError as exc:
            raise InputValidationError("invalid hop request", detail=exc.errors()) from exc

    def next_follow_up(self, cycle_count: int) -> "HopRequest":
        return self.model_copy(
            update={
                "hop_kind": HopKind.FOLLOW_UP,
                "cycle_count": cycle_count,
                "tool_call_id": None,
                "tool_name": None,
                "arguments_json": None,
                "capability": None,
            }
        )

    def tool_label(self) -> str:
        if self.capability is not None and self.capability.name:
            return self.capability.name
        return self.tool_name or "action"


@dataclass(frozen=True, slots=True, kw_only=True)
class ActionContext:
    """Read-only context handed to an action executor."""

    session_id: str
    turn_id: str
    cycle_count: int
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    agent_config_id: Optional[str] = None
    capability_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    related_record_id: Optional[str] = None
    pre_hook: Optional[str] = None
    post_hook: Optional[str] = None

    @classmethod
    def from_request(cls, request: HopRequest) -> "ActionContext":
        cap = request.capability or Capability()
        return cls(
            session_id=request.session_id,
            turn_id=request.turn_id,
            cycle_count=request.cycle_count,
            user_id=request.user_id,
            agent_id=request.agent_id,
            agent_config_id=request.agent_config_id,
            capability_id=cap.capability_id,
            tool_call_id=request.tool_call_id,
            related_record_id=request.related_record_id,
            pre_hook=cap.pre_hook,
            post_hook=cap.post_hook,
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class HopResult:
    """Outcome of one unit of hop work.

    `output` is what gets fed back to the model; `internal_detail` stays in
    diagnostics only.
    """

    success: bool
    output: Optional[str] = None
    internal_detail: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, output: Optional[str] = None, *, internal_detail: Optional[str] = None) -> "HopResult":
        return cls(success=True, output=output, internal_detail=internal_detail)

    @classmethod
    def failure(
        cls,
        error_code: str,
        output: Optional[str] = None,
        *,
        internal_detail: Optional[str] = None,
    ) -> "HopResult":
        return cls(success=False, output=output, internal_detail=internal_detail, error_code=error_code)

    @classmethod
    def from_exception(cls, exc: BaseException, *, error_code: str = ACTION_EXECUTION_FAILED) -> "HopResult":
        if isinstance(exc, Exception):
            _, message, _ = classify_exception(exc)
        else:
            message = type(exc).__name__
        return cls.failure(
            error_code,
            output=f"Error: {message}",
            internal_detail=f"{type(exc).__name__}: {exc}",
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "internal_detail": self.internal_detail,
            "error_code": self.error_code,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class ProviderResult:
    """Parsed model response handed from the LLM collaborator to the orchestrator."""

    message_id: Optional[str] = None
    content: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


FollowUpOutcome = Literal["complete", "action", "fail"]


@dataclass(frozen=True, slots=True, kw_only=True)
class FollowUpDecision:
    """What the orchestrator wants after a model response.

    `complete` ends the turn, `action` pauses for a tool call described by
    the tool fields, `fail` terminates with `error_code`.
    """

    outcome: FollowUpOutcome
    final_result_ref: Optional[str] = None
    final_message: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    arguments_json: Optional[str] = None
    capability: Optional[Capability] = None
    interim_message: Optional[str] = None
    interim_message_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def complete(cls, final_result_ref: Optional[str], final_message: Optional[str] = None) -> "FollowUpDecision":
        return cls(outcome="complete", final_result_ref=final_result_ref, final_message=final_message)

    @classmethod
    def action(
        cls,
        *,
        tool_name: str,
        tool_call_id: Optional[str] = None,
        arguments_json: Optional[str] = None,
        capability: Optional[Capability] = None,
        interim_message: Optional[str] = None,
        interim_message_id: Optional[str] = None,
    ) -> "FollowUpDecision":
        return cls(
            outcome="action",
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            arguments_json=arguments_json,
            capability=capability,
            interim_message=interim_message,
            interim_message_id=interim_message_id,
        )

    @classmethod
    def fail(cls, message: str, error_code: str) -> "FollowUpDecision":
        return cls(outcome="fail", error_message=message, error_code=error_code)

    def action_request(self, request: HopRequest) -> HopRequest:
        return request.model_copy(
            update={
                "hop_kind": HopKind.ACTION,
                "tool_call_id": self.tool_call_id,
                "tool_name": self.tool_name,
                "arguments_json": self.arguments_json,
                "capability": self.capability,
            }
        )
