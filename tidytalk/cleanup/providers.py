"""
Language model client abstractions for transcript refinement.

Provides a small interface for chat-completion backends and an implementation
for a local llama.cpp ``llama-server`` exposing its OpenAI-compatible API.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
import asyncio
import time
import logging

import httpx
import openai

logger = logging.getLogger(__name__)

# llama-server does not check the key, but the SDK insists on one
LOCAL_API_KEY = "sk-no-key-required"


class LanguageModelError(Exception):
    """Raised when the language model cannot produce a usable completion."""
    pass


class LanguageModelTimeout(LanguageModelError):
    """Raised when the language model does not answer in time."""
    pass


@dataclass(frozen=True)
class RefinementRequest:
    """A single chat-completion request for structuring a transcript."""
    system_prompt: str
    raw_text: str
    soft_candidate: Optional[str] = None
    temperature: float = 0.1
    max_output_tokens: int = 2048
    top_p: float = 1.0

    def user_message(self) -> str:
        """Render the user turn, with the soft candidate as a hint if present."""
        if self.soft_candidate is None:
            return (
                f"RAW TEXT:\n{self.raw_text}\n\n"
                "TASK:\nReturn the same text with improved structure only."
            )
        return (
            f"RAW TEXT:\n{self.raw_text}\n\n"
            f"SOFT STRUCTURE SUGGESTIONS:\n{self.soft_candidate}\n\n"
            "TASK:\nReturn the same text with improved structure only."
        )

    def to_messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_message()},
        ]


class LanguageModelClient(ABC):
    """Abstract base class for language model backends."""

    def __init__(self, name: str):
        self.name = name
        self.usage_stats = {
            'requests': 0,
            'successful': 0,
            'failed': 0,
            'total_tokens': 0
        }

    @abstractmethod
    async def complete(self, request: RefinementRequest) -> str:
        """Return the generated text, or raise LanguageModelError."""
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """Get the name of this backend."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is configured and usable."""
        pass

    def update_usage_stats(self, success: bool, tokens: int = 0):
        """Update usage statistics."""
        self.usage_stats['requests'] += 1
        if success:
            self.usage_stats['successful'] += 1
        else:
            self.usage_stats['failed'] += 1
        self.usage_stats['total_tokens'] += tokens

    def get_usage_stats(self) -> Dict[str, Any]:
        """Get current usage statistics."""
        return self.usage_stats.copy()


class LocalLlamaClient(LanguageModelClient):
    """
    Client for a local llama-server speaking the OpenAI chat-completions API.

    The synchronous SDK call runs in the default executor so the event loop
    stays free while a CPU-bound model generates. Retries are disabled: a
    slow local server should fail fast, not be asked twice.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8089/v1",
        model: str = "local",
        timeout: float = 2.5,
        client: Optional[openai.OpenAI] = None
    ):
        super().__init__("llama-server")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config) -> "LocalLlamaClient":
        """Create a client from a RefinementConfig."""
        return cls(base_url=config.base_url, model=config.model, timeout=config.timeout)

    @property
    def server_root(self) -> str:
        """Server URL without the OpenAI ``/v1`` suffix."""
        if self.base_url.endswith("/v1"):
            return self.base_url[:-len("/v1")]
        return self.base_url

    def get_provider_name(self) -> str:
        """Get the name of this backend."""
        return "llama-server"

    def is_available(self) -> bool:
        """A local server needs no credentials; only a URL."""
        return bool(self.base_url)

    async def is_ready(self) -> bool:
        """Return True if the server's /health endpoint answers 200."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.get(f"{self.server_root}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed for {self.server_root}: {e}")
            return False

    async def complete(self, request: RefinementRequest) -> str:
        """Send the request and return the generated message content."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sync_complete, request)

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(
                base_url=self.base_url,
                api_key=LOCAL_API_KEY,
                timeout=self.timeout,
                max_retries=0
            )
        return self._client

    def _sync_complete(self, request: RefinementRequest) -> str:
        """Synchronous completion to be run in an executor."""
        client = self._get_client()
        start_time = time.time()

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=request.to_messages(),
                temperature=request.temperature,
                top_p=request.top_p,
                max_tokens=request.max_output_tokens,
                stream=False
            )
        except openai.APITimeoutError as e:
            self.update_usage_stats(success=False)
            raise LanguageModelTimeout(f"Request timed out after {self.timeout}s") from e
        except openai.APIStatusError as e:
            self.update_usage_stats(success=False)
            raise LanguageModelError(f"Server status {e.status_code}") from e
        except openai.APIError as e:
            self.update_usage_stats(success=False)
            raise LanguageModelError(f"Request failed: {e}") from e
        except ValueError as e:
            # Body that is not JSON at all
            self.update_usage_stats(success=False)
            raise LanguageModelError("Invalid JSON response") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            self.update_usage_stats(success=False)
            raise LanguageModelError("Invalid response body") from e

        if content is not None and not isinstance(content, str):
            self.update_usage_stats(success=False)
            raise LanguageModelError("Invalid response body")

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        self.update_usage_stats(success=True, tokens=tokens)

        logger.debug(f"llama-server answered in {time.time() - start_time:.2f}s ({tokens} tokens)")
        return (content or "").strip()


class MockLanguageModelClient(LanguageModelClient):
    """Mock backend for testing and offline use."""

    def __init__(
        self,
        response: Optional[str] = None,
        should_fail: bool = False,
        delay: float = 0.0
    ):
        super().__init__("mock")
        self.response = response
        self.should_fail = should_fail
        self.delay = delay
        self.requests: List[RefinementRequest] = []

    def get_provider_name(self) -> str:
        """Get the name of this backend."""
        return "Mock"

    def is_available(self) -> bool:
        """Mock is always available unless configured to fail."""
        return not self.should_fail

    async def complete(self, request: RefinementRequest) -> str:
        """Return the canned response, or echo the raw text."""
        self.requests.append(request)

        if self.delay > 0:
            await asyncio.sleep(self.delay)

        if self.should_fail:
            self.update_usage_stats(success=False)
            raise LanguageModelError("Mock backend configured to fail")

        self.update_usage_stats(success=True)
        if self.response is not None:
            return self.response
        return request.raw_text
