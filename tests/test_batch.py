"""Tests for batch prompt parsing and execution."""

import asyncio
import json

import httpx

from conftest import json_response, text_response
from image_engine.batch import (
    BATCH_CANCELLED_MESSAGE,
    clamp_batch_prompts,
    clamp_concurrency,
    clamp_count_per_prompt,
    parse_prompts_to_batch,
    run_batch,
)
from image_engine.cancellation import CancelToken

IMAGES_PATH = "/v1/images/generations"


class TestParsePrompts:
    """Tests for parse_prompts_to_batch."""

    def test_plain_newlines_stay_in_one_prompt(self):
        assert parse_prompts_to_batch("a cat\nwearing a hat\n") == ["a cat\nwearing a hat"]

    def test_separator_lines_split(self):
        text = "a cat\n---\na dog\n-----\n\n---\na bird\n---"
        assert parse_prompts_to_batch(text) == ["a cat", "a dog", "a bird"]

    def test_empty_input(self):
        assert parse_prompts_to_batch("   \n ") == []
        assert parse_prompts_to_batch(None) == []


class TestClamps:
    """Tests for batch limits."""

    def test_count_per_prompt(self):
        assert clamp_count_per_prompt(0) == 1
        assert clamp_count_per_prompt("3") == 3
        assert clamp_count_per_prompt(99) == 4
        assert clamp_count_per_prompt("many") == 1

    def test_concurrency(self):
        assert clamp_concurrency(None) == 1
        assert clamp_concurrency(20) == 8

    def test_total_limit_truncates_prompts(self):
        prompts = [f"prompt {index}" for index in range(40)]

        assert len(clamp_batch_prompts(prompts, 1)) == 32
        assert clamp_batch_prompts(prompts, 4) == prompts[:8]
        assert clamp_batch_prompts(prompts[:3], 4) == prompts[:3]


class TestRunBatch:
    """Tests for run_batch."""

    def test_results_follow_prompt_order(self, make_request, provider, handler, transport, png_b64):
        def by_prompt(request):
            if json.loads(request.content)["prompt"] == "bad":
                return httpx.Response(400, text="rejected")
            return httpx.Response(200, json={"data": [{"b64_json": png_b64}]})

        handler.queue(IMAGES_PATH, by_prompt)
        updates = []

        results = asyncio.run(run_batch(
            ["good", "bad", "good"], make_request(), provider,
            concurrency=3, on_update=updates.append, transport=transport,
        ))

        assert [result.prompt for result in results] == ["good", "bad", "good"]
        assert [result.status for result in results] == ["success", "error", "success"]
        assert results[1].error == "API error 400: rejected"
        assert all(result.completed_at for result in results)
        assert [update.status for update in updates].count("running") == 3

    def test_partial_failure_keeps_images(self, make_request, provider, handler, transport, png_b64):
        handler.queue(
            IMAGES_PATH,
            json_response({"data": [{"b64_json": png_b64}]}),
            text_response("nope", 400),
        )

        results = asyncio.run(run_batch(
            ["a lighthouse"], make_request(), provider,
            count_per_prompt=2, transport=transport, max_concurrency=1,
        ))

        assert results[0].status == "success"
        assert len(results[0].images) == 1
        assert results[0].error == "部分失败：API error 400: nope"
        assert results[0].to_dict()["images"][0]["params"]["count"] == 2

    def test_cancelled_batch_marks_every_task(self, make_request, provider, handler, transport):
        token = CancelToken()
        token.cancel()

        results = asyncio.run(run_batch(
            ["one", "two"], make_request(), provider, token, transport=transport,
        ))

        assert [result.error for result in results] == [BATCH_CANCELLED_MESSAGE] * 2
        assert all(result.status == "error" for result in results)
        assert handler.requests == []
