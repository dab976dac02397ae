from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from core.errors import ProviderCallError
from core.hop import ProviderResult
from infra.retry import RetryConfig, RetryExecutor

logger = logging.getLogger("ProviderClient")


class ProviderHttpClient:
    """JSON-over-HTTP transport to the model provider, with retry/backoff."""

    def __init__(
        self,
        *,
        base_url: str,
        retry_config: RetryConfig,
        timeout_seconds: float = 120.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
        )
        self._executor = executor or RetryExecutor(self._client)
        self._retry_config = retry_config

    @classmethod
    def from_config(cls, cfg: Any) -> "ProviderHttpClient":
        provider = cfg.provider
        api_key = os.environ.get(provider.api_key_env) if provider.api_key_env else None
        return cls(
            base_url=provider.base_url,
            timeout_seconds=float(provider.timeout_seconds),
            api_key=api_key,
            retry_config=RetryConfig.from_settings(cfg.retry),
        )

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        request = self._client.build_request("POST", path, json=payload)
        outcome = await self._executor.execute_with_retry(request, self._retry_config)
        if outcome.attempts > 1:
            logger.info(
                "Provider call %s succeeded after %s attempts (%.0fms)",
                path,
                outcome.attempts,
                outcome.total_duration_ms,
            )
        try:
            data = outcome.response.json()
        except ValueError as exc:
            raise ProviderCallError(
                f"provider returned non-JSON body for {path}",
                status_code=outcome.response.status_code,
                attempts=outcome.attempts,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderCallError(
                f"provider returned {type(data).__name__} for {path}, expected object",
                status_code=outcome.response.status_code,
                attempts=outcome.attempts,
            )
        return data

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class HttpLLMInteraction:
    """LLM collaborator that delegates prompt building to the provider endpoint.

    The provider owns history and payload formatting; this side only sends
    the turn coordinates and reads back the assistant message.
    """

    def __init__(self, client: ProviderHttpClient, *, path: str = "/v1/turns/complete") -> None:
        self._client = client
        self._path = path

    async def call(
        self,
        *,
        session_id: str,
        user_id: Optional[str],
        agent_config_id: Optional[str],
        turn_id: str,
        cycle_count: int,
        related_record_id: Optional[str] = None,
    ) -> ProviderResult:
        data = await self._client.post_json(
            self._path,
            {
                "session_id": session_id,
                "user_id": user_id,
                "agent_config_id": agent_config_id,
                "turn_id": turn_id,
                "cycle_count": cycle_count,
                "related_record_id": related_record_id,
            },
        )
        return ProviderResult(
            message_id=data.get("message_id"),
            content=data.get("content"),
            raw=data,
        )

    async def close(self) -> None:
        await self._client.close()
