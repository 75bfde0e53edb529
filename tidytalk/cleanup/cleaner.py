"""
Transcript cleanup orchestration.

Composes the rule-based formatter with the optional LLM refinement guard:
raw transcript -> rule-based soft candidate -> (guarded refinement) -> final.
"""

from typing import Optional
from dataclasses import dataclass
import asyncio
import time
import logging

from ..config import AppConfig
from .formatter import RuleFormatter
from .guard import RefinementGuard, RefinementOutcome
from .providers import LanguageModelClient, LocalLlamaClient

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Raw and final text for one transcription event."""
    raw_text: str
    soft_text: str
    final_text: str
    refinement: Optional[RefinementOutcome] = None
    processing_time: float = 0.0

    @property
    def refined(self) -> bool:
        """True if the final text came from the language model."""
        return self.refinement is not None and self.refinement.accepted


class TranscriptPipeline:
    """
    Turns a raw transcript into final text.

    The formatter always runs. Refinement runs only when a guard is
    configured and ``refine`` is not disabled for the call; its failures
    never reach the caller.
    """

    def __init__(
        self,
        formatter: Optional[RuleFormatter] = None,
        guard: Optional[RefinementGuard] = None
    ):
        self.formatter = formatter or RuleFormatter()
        self.guard = guard

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        client: Optional[LanguageModelClient] = None
    ) -> "TranscriptPipeline":
        """Build a pipeline from application configuration."""
        formatter = RuleFormatter(config.formatting)
        guard = None
        if config.refinement.enabled:
            client = client or LocalLlamaClient.from_config(config.refinement)
            guard = RefinementGuard(client, config.refinement)
        return cls(formatter=formatter, guard=guard)

    def format(self, raw_text: str) -> str:
        """Rule-based formatting only."""
        return self.formatter.format(raw_text)

    async def process(
        self,
        raw_text: str,
        refine: bool = True,
        cancel_event: Optional[asyncio.Event] = None
    ) -> PipelineResult:
        """
        Produce final text for a raw transcript.

        Args:
            raw_text: Verbatim speech-to-text output
            refine: Attempt LLM refinement if a guard is configured
            cancel_event: Set to abandon an in-flight refinement

        Returns:
            PipelineResult with both raw and final text.

        Raises:
            RefinementCancelled: If ``cancel_event`` fires during refinement.
        """
        start_time = time.time()
        raw_text = raw_text if isinstance(raw_text, str) else ""
        soft_text = self.format(raw_text)

        outcome = None
        final_text = soft_text
        if refine and self.guard is not None and soft_text:
            outcome = await self.guard.refine(raw_text, soft_text, cancel_event)
            final_text = outcome.text

        result = PipelineResult(
            raw_text=raw_text,
            soft_text=soft_text,
            final_text=final_text,
            refinement=outcome,
            processing_time=time.time() - start_time
        )
        source = "llm" if result.refined else "rules"
        logger.info(f"Pipeline finished in {result.processing_time:.2f}s (final text from {source})")
        return result
