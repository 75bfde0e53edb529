"""
Guarded LLM refinement.

Asks a local language model to add structure (punctuation, line and paragraph
breaks, lists) to a raw transcript, then checks that the model kept every
spoken word in order. Any failure, timeout or rejected answer falls back to
the rule-based text; nothing here raises to the caller except cancellation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import asyncio
import re
import time
import logging

from ..config import RefinementConfig
from .providers import (
    LanguageModelClient,
    LanguageModelError,
    LanguageModelTimeout,
    RefinementRequest
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a text structure judge.

Rules:
- You MUST preserve every word exactly as provided.
- You may ONLY add:
  - punctuation
  - line breaks
  - paragraph breaks
  - bullet/list structure
- You MUST NOT:
  - add words
  - remove words
  - reorder words
  - rephrase
  - fix grammar
  - change tense
  - change capitalization except where required by punctuation
- If uncertain, do nothing.
- Output the full final text only."""

# Everything that is not a letter, digit or whitespace (underscore counts as
# punctuation here, apostrophes too: "don't" and "dont" compare equal)
_NON_WORD = re.compile(r"[^\w\s]|_")


class RefinementCancelled(Exception):
    """Raised when the caller abandons an in-flight refinement."""
    pass


class RejectionReason(str, Enum):
    """Why model output was not used."""
    LENGTH_RATIO = "length_ratio"
    WORD_MISMATCH = "word_mismatch"
    EMPTY_OUTPUT = "empty_output"
    TRANSPORT_FAILURE = "transport_failure"
    TIMEOUT = "timeout"


@dataclass
class ValidationResult:
    """Accept/reject decision for a model answer."""
    accepted: bool
    reason: Optional[RejectionReason] = None
    mismatch_index: Optional[int] = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(accepted=True)

    @classmethod
    def reject(
        cls,
        reason: RejectionReason,
        detail: str = "",
        mismatch_index: Optional[int] = None
    ) -> "ValidationResult":
        return cls(accepted=False, reason=reason, mismatch_index=mismatch_index, detail=detail)


@dataclass
class RefinementOutcome:
    """Result of one refinement attempt."""
    text: str
    validation: ValidationResult
    model_output: Optional[str] = None
    processing_time: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.validation.accepted

    @property
    def reason(self) -> Optional[RejectionReason]:
        return self.validation.reason


def normalize_words(text: Optional[str]) -> List[str]:
    """Lower-case, strip punctuation and split into words."""
    if not text:
        return []
    return _NON_WORD.sub("", text.lower()).split()


def validate_content(raw_text: str, candidate: str) -> ValidationResult:
    """
    Strict check: the candidate must contain exactly the raw words, in order.

    Only case, punctuation and whitespace may differ.

    Example:
        >>> validate_content("the cat sat", "The cat sat.").accepted
        True
        >>> validate_content("the cat sat", "The dog sat.").mismatch_index
        1
    """
    raw_words = normalize_words(raw_text)
    candidate_words = normalize_words(candidate)

    if raw_words and not candidate_words:
        return ValidationResult.reject(RejectionReason.EMPTY_OUTPUT, "model returned no words")

    for index, (expected, actual) in enumerate(zip(raw_words, candidate_words)):
        if expected != actual:
            return ValidationResult.reject(
                RejectionReason.WORD_MISMATCH,
                f'word mismatch at index {index}: "{expected}" vs "{actual}"',
                mismatch_index=index
            )

    if len(raw_words) != len(candidate_words):
        index = min(len(raw_words), len(candidate_words))
        return ValidationResult.reject(
            RejectionReason.WORD_MISMATCH,
            f"word count mismatch: raw={len(raw_words)}, model={len(candidate_words)}",
            mismatch_index=index
        )

    return ValidationResult.accept()


def validate_word_ratio(raw_text: str, candidate: str, tolerance: float = 0.4) -> ValidationResult:
    """Loose check: word counts may drift by at most ``tolerance`` of the raw count."""
    raw_count = len((raw_text or "").split())
    candidate_count = len((candidate or "").split())

    if candidate_count == 0 and raw_count > 0:
        return ValidationResult.reject(RejectionReason.EMPTY_OUTPUT, "model returned no words")

    drift = abs(raw_count - candidate_count) / max(raw_count, 1)
    if drift > tolerance:
        return ValidationResult.reject(
            RejectionReason.LENGTH_RATIO,
            f"word count drift {drift:.2f} exceeds {tolerance:.2f} "
            f"(raw={raw_count}, model={candidate_count})"
        )

    return ValidationResult.accept()


class RefinementGuard:
    """
    Best-effort LLM refinement with a content-preservation check.

    Each call is one request, raced against the configured timeout and an
    optional cancellation event. The model answer is validated against the
    raw transcript, never against the rule-based hint.
    """

    def __init__(
        self,
        client: LanguageModelClient,
        config: Optional[RefinementConfig] = None
    ):
        self.client = client
        self.config = config or RefinementConfig()

    @property
    def system_prompt(self) -> str:
        return self.config.system_prompt or SYSTEM_PROMPT

    def build_request(self, raw_text: str, soft_candidate: Optional[str] = None) -> RefinementRequest:
        """Build the completion request for a transcript."""
        return RefinementRequest(
            system_prompt=self.system_prompt,
            raw_text=raw_text,
            soft_candidate=soft_candidate if self.config.include_hint else None,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_tokens,
            top_p=self.config.top_p
        )

    def validate(self, raw_text: str, candidate: str) -> ValidationResult:
        """Validate model output with the configured policy."""
        if self.config.validation_policy == "ratio":
            return validate_word_ratio(raw_text, candidate, self.config.ratio_tolerance)
        return validate_content(raw_text, candidate)

    async def refine(
        self,
        raw_text: str,
        fallback: str,
        cancel_event: Optional[asyncio.Event] = None
    ) -> RefinementOutcome:
        """
        Try to refine ``raw_text``; return ``fallback`` on any failure.

        Args:
            raw_text: Verbatim transcript the answer is validated against
            fallback: Rule-based text, also sent as a hint if configured
            cancel_event: When set, the request is abandoned

        Returns:
            RefinementOutcome with the text to use and why.

        Raises:
            RefinementCancelled: If ``cancel_event`` fires first.
        """
        start_time = time.time()

        if not raw_text or not raw_text.strip():
            return RefinementOutcome(
                text=fallback,
                validation=ValidationResult.reject(RejectionReason.EMPTY_OUTPUT, "empty transcript")
            )

        logger.info("Starting refinement pass...")
        request = self.build_request(raw_text, fallback)

        try:
            model_output = await self._request(request, cancel_event)
        except LanguageModelTimeout as e:
            return self._fallback(fallback, RejectionReason.TIMEOUT, str(e), start_time)
        except LanguageModelError as e:
            return self._fallback(fallback, RejectionReason.TRANSPORT_FAILURE, str(e), start_time)
        except (RefinementCancelled, asyncio.CancelledError):
            logger.info("Refinement cancelled; discarding any late response")
            raise
        except Exception as e:
            logger.exception("Unexpected error from language model client")
            return self._fallback(fallback, RejectionReason.TRANSPORT_FAILURE, str(e), start_time)

        processing_time = time.time() - start_time
        logger.info(f"LLM responded in {processing_time * 1000:.0f}ms")

        if not model_output.strip():
            validation = ValidationResult.reject(RejectionReason.EMPTY_OUTPUT, "model returned no text")
        else:
            validation = self.validate(raw_text, model_output)

        if validation.accepted:
            logger.info("Validation passed")
            return RefinementOutcome(
                text=model_output,
                validation=validation,
                model_output=model_output,
                processing_time=processing_time
            )

        logger.warning(f"Validation failed ({validation.reason.value}: {validation.detail}). Falling back to rules.")
        logger.debug(f'Rejected model output: "{model_output}"')
        return RefinementOutcome(
            text=fallback,
            validation=validation,
            model_output=model_output,
            processing_time=processing_time
        )

    async def improve(
        self,
        raw_text: str,
        fallback: str,
        cancel_event: Optional[asyncio.Event] = None
    ) -> str:
        """Return the refined text, or ``fallback`` if refinement fails."""
        outcome = await self.refine(raw_text, fallback, cancel_event)
        return outcome.text

    async def _request(
        self,
        request: RefinementRequest,
        cancel_event: Optional[asyncio.Event]
    ) -> str:
        """Race the model call against the timeout and the cancel event."""
        call = asyncio.ensure_future(self.client.complete(request))
        waiters = {call}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
            # A cancelled transcript is stale even if the answer already arrived
            if cancel_event is not None and cancel_event.is_set():
                raise RefinementCancelled("Refinement abandoned by caller")
            if call in done:
                return call.result()
            raise LanguageModelTimeout(f"Request timed out after {self.config.timeout}s")
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

    def _fallback(
        self,
        fallback: str,
        reason: RejectionReason,
        detail: str,
        start_time: float
    ) -> RefinementOutcome:
        logger.warning(f"Refinement failed ({reason.value}): {detail}. Falling back to rules.")
        return RefinementOutcome(
            text=fallback,
            validation=ValidationResult.reject(reason, detail),
            processing_time=time.time() - start_time
        )
