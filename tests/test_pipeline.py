"""
Tests for the transcript pipeline: rules first, then optional refinement.
"""

import pytest
import asyncio
from unittest.mock import Mock
from pathlib import Path

import httpx
import openai

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from tidytalk.config import AppConfig, RefinementConfig
from tidytalk.cleanup.cleaner import TranscriptPipeline
from tidytalk.cleanup.guard import RefinementCancelled, RefinementGuard, RejectionReason
from tidytalk.cleanup.providers import LocalLlamaClient, MockLanguageModelClient


def pipeline_with(client, **config):
    return TranscriptPipeline(guard=RefinementGuard(client, RefinementConfig(**config)))


class TestPipelineConstruction:

    def test_from_config_with_refinement(self):
        client = MockLanguageModelClient()
        pipeline = TranscriptPipeline.from_config(AppConfig(), client=client)

        assert pipeline.guard is not None
        assert pipeline.guard.client is client

    def test_from_config_default_client(self):
        pipeline = TranscriptPipeline.from_config(AppConfig())
        assert isinstance(pipeline.guard.client, LocalLlamaClient)

    def test_from_config_without_refinement(self):
        config = AppConfig(refinement=RefinementConfig(enabled=False))
        assert TranscriptPipeline.from_config(config).guard is None

    def test_format_is_rules_only(self):
        pipeline = TranscriptPipeline()
        assert pipeline.format("hello comma world period") == "Hello, world."


@pytest.mark.asyncio
class TestPipelineProcess:

    async def test_rules_only(self):
        result = await TranscriptPipeline().process("hello comma world period")

        assert result.raw_text == "hello comma world period"
        assert result.soft_text == "Hello, world."
        assert result.final_text == "Hello, world."
        assert result.refinement is None
        assert not result.refined

    async def test_refined_output_used(self):
        client = MockLanguageModelClient(response="Hello,\nworld.")
        result = await pipeline_with(client).process("hello world")

        assert result.soft_text == "Hello world"
        assert result.final_text == "Hello,\nworld."
        assert result.refined

    async def test_guard_receives_raw_and_soft(self):
        client = MockLanguageModelClient()
        await pipeline_with(client).process("hello comma world")

        request = client.requests[0]
        assert request.raw_text == "hello comma world"
        assert request.soft_candidate == "Hello, world"

    async def test_rejected_output_falls_back_to_rules(self):
        client = MockLanguageModelClient(response="Hi there, world.")
        result = await pipeline_with(client).process("hello world")

        assert result.final_text == result.soft_text == "Hello world"
        assert result.refinement.reason == RejectionReason.WORD_MISMATCH
        assert not result.refined

    async def test_refine_disabled_per_call(self):
        client = MockLanguageModelClient()
        result = await pipeline_with(client).process("hello world", refine=False)

        assert result.final_text == "Hello world"
        assert client.requests == []

    async def test_empty_transcript(self):
        client = MockLanguageModelClient()
        result = await pipeline_with(client).process("   ")

        assert result.final_text == ""
        assert client.requests == []

    async def test_non_string_transcript(self):
        result = await TranscriptPipeline().process(None)
        assert result.raw_text == ""
        assert result.final_text == ""

    async def test_unreachable_server_returns_rules_exactly(self):
        sdk = Mock()
        sdk.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "http://127.0.0.1:8089/v1/chat/completions")
        )
        client = LocalLlamaClient(client=sdk)
        result = await pipeline_with(client).process("so comma what now question mark")

        assert result.final_text == result.soft_text == "So, what now?"
        assert result.refinement.reason == RejectionReason.TRANSPORT_FAILURE

    async def test_slow_server_returns_rules(self):
        client = MockLanguageModelClient(response="So, what now?", delay=1.0)
        result = await pipeline_with(client, timeout=0.05).process("so comma what now question mark")

        assert result.final_text == "So, what now?"
        assert result.refinement.reason == RejectionReason.TIMEOUT

    async def test_cancellation_propagates(self):
        client = MockLanguageModelClient(delay=1.0)
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

        with pytest.raises(RefinementCancelled):
            await pipeline_with(client).process("hello world", cancel_event=cancel_event)
