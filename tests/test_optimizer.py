"""Tests for the prompt optimizer."""

import asyncio

import httpx
import pytest

from conftest import json_response, text_response
from image_engine.errors import ProviderHTTPError
from image_engine.optimizer import SYSTEM_PROMPT, TEMPERATURE, optimize_prompt

CHAT_PATH = "/v1/chat/completions"


def completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
    }


def optimize(prompt, provider, model, transport):
    async def scenario():
        async with httpx.AsyncClient(transport=transport) as http_client:
            return await optimize_prompt(prompt, provider, model, http_client=http_client)

    return asyncio.run(scenario())


class TestOptimizePrompt:
    """Tests for optimize_prompt."""

    def test_returns_trimmed_answer(self, provider, handler, transport):
        handler.queue(CHAT_PATH, json_response(completion("  A majestic fox, golden hour light  ")))

        result = optimize("fox", provider, "gpt-4o-mini", transport)

        assert result == "A majestic fox, golden hour light"
        body = handler.bodies(CHAT_PATH)[0]
        assert body["model"] == "gpt-4o-mini"
        assert body["temperature"] == TEMPERATURE
        assert body["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "Original Prompt: fox"},
        ]

    def test_injected_client_stays_open(self, provider, handler, transport):
        handler.queue(CHAT_PATH, json_response(completion("better fox")))

        async def scenario():
            async with httpx.AsyncClient(transport=transport) as http_client:
                await optimize_prompt("fox", provider, "gpt-4o-mini", http_client=http_client)
                assert http_client.is_closed is False
                response = await http_client.get("https://relay.example.com/v1/chat/completions")
                return response.status_code

        assert asyncio.run(scenario()) == 200

    def test_missing_model(self, provider, transport):
        with pytest.raises(ValueError, match="请先设置提示词优化模型"):
            optimize("fox", provider, "  ", transport)

    def test_empty_prompt(self, provider, transport):
        with pytest.raises(ValueError):
            optimize("", provider, "gpt-4o-mini", transport)

    def test_status_error_is_not_retried(self, provider, handler, transport):
        handler.queue(CHAT_PATH, text_response("invalid api key", 401))

        with pytest.raises(ProviderHTTPError) as exc_info:
            optimize("fox", provider, "gpt-4o-mini", transport)

        assert exc_info.value.status_code == 401
        assert handler.calls(CHAT_PATH) == 1

    def test_empty_answer(self, provider, handler, transport):
        handler.queue(CHAT_PATH, json_response(completion("   ")))

        with pytest.raises(RuntimeError, match="No response from optimization model"):
            optimize("fox", provider, "gpt-4o-mini", transport)
