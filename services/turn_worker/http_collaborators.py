"""Default collaborator bundle that talks to the provider service over HTTP.

Provider contract:

    POST /v1/turns/complete    -> {"message_id", "content", "tool_call"?: {...}, "error"?: str}
    POST /v1/actions/execute   -> {"success", "output", "internal_detail"?, "error_code"?}
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from core.app_config import AppConfig
from core.errors import ACTION_EXECUTION_FAILED, LLM_CALL_FAILED
from core.hop import ActionContext, Capability, FollowUpDecision, HopRequest, HopResult, ProviderResult
from infra.provider_client import HttpLLMInteraction, ProviderHttpClient

from .collaborators import Collaborators


class HttpActionExecutor:
    def __init__(self, client: ProviderHttpClient, *, path: str = "/v1/actions/execute") -> None:
        self._client = client
        self._path = path

    async def execute(
        self,
        config_json: Optional[str],
        arguments_json: Optional[str],
        context: ActionContext,
    ) -> Optional[HopResult]:
        data = await self._client.post_json(
            self._path,
            {"config_json": config_json, "arguments_json": arguments_json, "context": asdict(context)},
        )
        if not data:
            return None
        success = bool(data.get("success"))
        return HopResult(
            success=success,
            output=data.get("output"),
            internal_detail=data.get("internal_detail"),
            error_code=None if success else (data.get("error_code") or ACTION_EXECUTION_FAILED),
        )


class ToolCallOrchestrator:
    """Turn a provider response into the next step: a tool call, an error or a final answer."""

    async def decide(self, request: HopRequest, provider_result: ProviderResult) -> FollowUpDecision:
        raw: Dict[str, Any] = provider_result.raw or {}
        error = raw.get("error")
        if error:
            return FollowUpDecision.fail(f"Provider reported an error: {error}", LLM_CALL_FAILED)

        tool_call = raw.get("tool_call")
        if isinstance(tool_call, dict) and tool_call.get("name"):
            arguments = tool_call.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                arguments = json.dumps(arguments, ensure_ascii=False)
            capability = tool_call.get("capability")
            return FollowUpDecision.action(
                tool_name=str(tool_call["name"]),
                tool_call_id=tool_call.get("id"),
                arguments_json=arguments,
                capability=Capability.model_validate(capability) if isinstance(capability, dict) else None,
                interim_message=provider_result.content or None,
                interim_message_id=provider_result.message_id,
            )

        return FollowUpDecision.complete(provider_result.message_id, provider_result.content)


def build(*, config: AppConfig) -> Collaborators:
    client = ProviderHttpClient.from_config(config)
    return Collaborators(
        action_executor=HttpActionExecutor(client),
        llm=HttpLLMInteraction(client),
        orchestrator=ToolCallOrchestrator(),
    )
