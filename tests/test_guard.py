"""
Tests for guarded LLM refinement: content validation, fallback and
cancellation.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from tidytalk.config import RefinementConfig
from tidytalk.cleanup.guard import (
    SYSTEM_PROMPT,
    RefinementCancelled,
    RefinementGuard,
    RejectionReason,
    ValidationResult,
    normalize_words,
    validate_content,
    validate_word_ratio,
)
from tidytalk.cleanup.providers import (
    LanguageModelClient,
    LanguageModelError,
    MockLanguageModelClient,
)


class TestNormalizeWords:

    def test_strips_punctuation_and_case(self):
        assert normalize_words("Hello, World!  don't_") == ["hello", "world", "dont"]

    def test_bullets_and_numbers(self):
        assert normalize_words("• Item 1.\n• Item 2.") == ["item", "1", "item", "2"]

    def test_empty(self):
        assert normalize_words("") == []
        assert normalize_words(None) == []


class TestStrictValidation:
    """Word-sequence equality between raw text and model output."""

    def test_reflexive(self):
        raw = "so the plan is simple we ship on friday"
        assert validate_content(raw, raw).accepted

    def test_punctuation_and_case_accepted(self):
        result = validate_content("the cat sat", "The cat sat.")
        assert result.accepted
        assert result.reason is None

    def test_structure_accepted(self):
        raw = "groceries milk eggs bread"
        assert validate_content(raw, "Groceries:\n• Milk\n• Eggs\n• Bread")

    def test_apostrophes_normalized(self):
        assert validate_content("dont stop", "Don't stop.").accepted

    def test_substitution_rejected(self):
        result = validate_content("the cat sat", "The dog sat.")

        assert not result.accepted
        assert result.reason == RejectionReason.WORD_MISMATCH
        assert result.mismatch_index == 1

    def test_deletion_rejected(self):
        result = validate_content("the cat sat down", "The cat sat.")

        assert not result
        assert result.reason == RejectionReason.WORD_MISMATCH
        assert result.mismatch_index == 3

    def test_addition_rejected(self):
        raw = "the cat sat"
        result = validate_content(raw, raw + " extra word")

        assert not result.accepted
        assert result.mismatch_index == 3

    def test_reorder_rejected(self):
        result = validate_content("one two three", "One three two.")
        assert result.mismatch_index == 1

    def test_empty_output_rejected(self):
        result = validate_content("the cat sat", "...")
        assert result.reason == RejectionReason.EMPTY_OUTPUT


class TestRatioValidation:
    """Loose word-count drift check."""

    def test_small_drift_accepted(self):
        assert validate_word_ratio("a b c d e", "a b c d").accepted

    def test_large_drift_rejected(self):
        result = validate_word_ratio("a b c d e", "a b")

        assert not result.accepted
        assert result.reason == RejectionReason.LENGTH_RATIO

    def test_empty_output_rejected(self):
        result = validate_word_ratio("a b c", "")
        assert result.reason == RejectionReason.EMPTY_OUTPUT

    def test_custom_tolerance(self):
        assert not validate_word_ratio("a b c d e", "a b c d", tolerance=0.1).accepted


class TestRequestBuilding:

    def test_request_with_hint(self):
        guard = RefinementGuard(MockLanguageModelClient())
        request = guard.build_request("hello comma world", "Hello, world")

        assert request.system_prompt == SYSTEM_PROMPT
        assert request.raw_text == "hello comma world"
        assert request.soft_candidate == "Hello, world"
        assert request.temperature == 0.1
        assert request.max_output_tokens == 2048

    def test_request_without_hint(self):
        config = RefinementConfig(include_hint=False, temperature=0.0, max_tokens=256)
        request = RefinementGuard(MockLanguageModelClient(), config).build_request("raw", "Soft")

        assert request.soft_candidate is None
        assert request.temperature == 0.0
        assert request.max_output_tokens == 256

    def test_custom_system_prompt(self):
        config = RefinementConfig(system_prompt="Only add punctuation.")
        guard = RefinementGuard(MockLanguageModelClient(), config)
        assert guard.build_request("raw").system_prompt == "Only add punctuation."

    def test_system_prompt_forbids_word_changes(self):
        for rule in ("add words", "remove words", "reorder words", "rephrase"):
            assert rule in SYSTEM_PROMPT


@pytest.mark.asyncio
class TestRefine:
    """RefinementGuard.refine outcomes."""

    async def test_accepts_valid_output(self):
        client = MockLanguageModelClient(response="The cat sat.")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert outcome.accepted
        assert outcome.text == "The cat sat."
        assert outcome.model_output == "The cat sat."
        assert len(client.requests) == 1

    async def test_rejects_changed_words(self):
        client = MockLanguageModelClient(response="The dog sat.")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert not outcome.accepted
        assert outcome.text == "The cat sat"
        assert outcome.reason == RejectionReason.WORD_MISMATCH
        assert outcome.validation.mismatch_index == 1
        assert outcome.model_output == "The dog sat."

    async def test_validates_against_raw_not_hint(self):
        client = MockLanguageModelClient(response="Hello, world.")
        outcome = await RefinementGuard(client).refine("hello world", "Completely different hint")

        assert outcome.accepted
        assert outcome.text == "Hello, world."

    async def test_timeout_falls_back(self):
        client = MockLanguageModelClient(response="The cat sat.", delay=1.0)
        guard = RefinementGuard(client, RefinementConfig(timeout=0.05))
        outcome = await guard.refine("the cat sat", "The cat sat")

        assert outcome.text == "The cat sat"
        assert outcome.reason == RejectionReason.TIMEOUT

    async def test_transport_failure_falls_back(self):
        client = MockLanguageModelClient(should_fail=True)
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert outcome.text == "The cat sat"
        assert outcome.reason == RejectionReason.TRANSPORT_FAILURE

    async def test_unexpected_error_falls_back(self):
        client = AsyncMock(spec=LanguageModelClient)
        client.complete.side_effect = RuntimeError("boom")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert outcome.text == "The cat sat"
        assert outcome.reason == RejectionReason.TRANSPORT_FAILURE
        assert "boom" in outcome.validation.detail

    async def test_language_model_error_detail(self):
        client = AsyncMock(spec=LanguageModelClient)
        client.complete.side_effect = LanguageModelError("Server status 503")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert outcome.validation.detail == "Server status 503"

    async def test_blank_output_falls_back(self):
        client = MockLanguageModelClient(response="   ")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat")

        assert outcome.text == "The cat sat"
        assert outcome.reason == RejectionReason.EMPTY_OUTPUT

    async def test_blank_raw_skips_request(self):
        client = MockLanguageModelClient()
        outcome = await RefinementGuard(client).refine("  ", "")

        assert outcome.text == ""
        assert outcome.reason == RejectionReason.EMPTY_OUTPUT
        assert client.requests == []

    async def test_ratio_policy(self):
        client = MockLanguageModelClient(response="The cat sat down.")
        strict = RefinementGuard(client)
        loose = RefinementGuard(client, RefinementConfig(validation_policy="ratio"))

        assert not (await strict.refine("the cat sat", "The cat sat")).accepted
        assert (await loose.refine("the cat sat", "The cat sat")).accepted

    async def test_improve_returns_text(self):
        guard = RefinementGuard(MockLanguageModelClient(should_fail=True))
        assert await guard.improve("the cat sat", "The cat sat") == "The cat sat"


@pytest.mark.asyncio
class TestCancellation:
    """Abandoning an in-flight refinement."""

    async def test_cancel_during_request(self):
        client = MockLanguageModelClient(response="The cat sat.", delay=1.0)
        guard = RefinementGuard(client)
        cancel_event = asyncio.Event()

        asyncio.get_running_loop().call_later(0.01, cancel_event.set)
        with pytest.raises(RefinementCancelled):
            await guard.refine("the cat sat", "The cat sat", cancel_event)

    async def test_late_answer_discarded(self):
        # The answer is ready, but the transcript is already stale
        client = MockLanguageModelClient(response="The cat sat.")
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(RefinementCancelled):
            await RefinementGuard(client).refine("the cat sat", "The cat sat", cancel_event)

    async def test_unset_event_does_not_interfere(self):
        client = MockLanguageModelClient(response="The cat sat.")
        outcome = await RefinementGuard(client).refine("the cat sat", "The cat sat", asyncio.Event())
        assert outcome.accepted

    async def test_task_cancellation_propagates(self):
        client = MockLanguageModelClient(delay=1.0)
        task = asyncio.create_task(RefinementGuard(client).refine("the cat sat", "The cat sat"))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


def test_validation_result_truthiness():
    assert ValidationResult.accept()
    assert not ValidationResult.reject(RejectionReason.TIMEOUT, "slow")
