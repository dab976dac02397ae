import json

import httpx
import pytest

from core.errors import ProviderCallError
from infra.provider_client import HttpLLMInteraction, ProviderHttpClient
from infra.retry import RetryConfig


def _provider(handler) -> ProviderHttpClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://provider")
    return ProviderHttpClient(base_url="http://provider", retry_config=RetryConfig(max_attempts=0), client=client)


@pytest.mark.asyncio
async def test_llm_interaction_posts_turn_coordinates() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"message_id": "msg_1", "content": "hi", "tool_call": None})

    llm = HttpLLMInteraction(_provider(handler))
    result = await llm.call(
        session_id="s1",
        user_id="u1",
        agent_config_id="cfg",
        turn_id="t1",
        cycle_count=2,
    )

    assert result.message_id == "msg_1"
    assert result.content == "hi"
    assert result.raw["tool_call"] is None
    path, body = seen[0]
    assert path == "/v1/turns/complete"
    assert body["turn_id"] == "t1"
    assert body["cycle_count"] == 2
    assert body["related_record_id"] is None


@pytest.mark.asyncio
async def test_post_json_rejects_non_object_body() -> None:
    provider = _provider(lambda request: httpx.Response(200, json=["not", "a", "dict"]))

    with pytest.raises(ProviderCallError) as excinfo:
        await provider.post_json("/v1/turns/complete", {})

    assert excinfo.value.status_code == 200


@pytest.mark.asyncio
async def test_post_json_rejects_non_json_body() -> None:
    provider = _provider(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(ProviderCallError):
        await provider.post_json("/v1/turns/complete", {})


@pytest.mark.asyncio
async def test_post_json_surfaces_provider_error_status() -> None:
    provider = _provider(lambda request: httpx.Response(401, json={"error": "bad key"}))

    with pytest.raises(ProviderCallError) as excinfo:
        await provider.post_json("/v1/turns/complete", {})

    assert excinfo.value.status_code == 401
    assert excinfo.value.attempts == 1
