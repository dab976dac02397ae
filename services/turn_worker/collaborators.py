"""Interfaces the turn engine consumes, plus the loader that wires them in."""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from core.errors import ConfigError
from core.hop import ActionContext, FollowUpDecision, HopRequest, HopResult, ProviderResult


class ActionExecutor(Protocol):
    async def execute(
        self,
        config_json: Optional[str],
        arguments_json: Optional[str],
        context: ActionContext,
    ) -> Optional[HopResult]: ...


class LLMInteraction(Protocol):
    async def call(
        self,
        *,
        session_id: str,
        user_id: Optional[str],
        agent_config_id: Optional[str],
        turn_id: str,
        cycle_count: int,
        related_record_id: Optional[str] = None,
    ) -> ProviderResult: ...


class FollowUpOrchestrator(Protocol):
    async def decide(self, request: HopRequest, provider_result: ProviderResult) -> FollowUpDecision: ...


class HopResultSink(Protocol):
    async def save_hop_result(
        self,
        *,
        session_id: str,
        turn_id: str,
        cycle_count: int,
        hop_kind: str,
        result_key: str,
        success: bool,
        payload: Dict[str, Any],
        conn: Any = None,
    ) -> bool: ...


@dataclass(frozen=True, slots=True, kw_only=True)
class Collaborators:
    action_executor: ActionExecutor
    llm: LLMInteraction
    orchestrator: FollowUpOrchestrator
    # None means "use the Postgres hop result store"
    result_sink: Optional[HopResultSink] = None


def load_collaborators(factory_path: str, **factory_kwargs: Any) -> Collaborators:
    """Resolve `module:callable` and call it to build the collaborator bundle."""
    module_name, sep, attr = (factory_path or "").partition(":")
    if not module_name or not sep or not attr:
        raise ConfigError(f"worker.collaborators must look like 'package.module:factory', got {factory_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import collaborators module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{factory_path!r} is not callable")
    bundle = factory(**factory_kwargs)
    if not isinstance(bundle, Collaborators):
        raise ConfigError(f"{factory_path!r} returned {type(bundle).__name__}, expected Collaborators")
    return bundle
