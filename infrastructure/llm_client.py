"""
LLM Client: Vendor API Access with Fault Tolerance

Abstraction over the LLM vendor implementing:
- Ordered system segments with per-segment cache-boundary markers
- Retry with exponential backoff for transient transport failures
- Mapping of vendor failure codes onto the domain error taxonomy
- Four-bucket token usage reporting (input, cache-write, cache-read, output)
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx
from anthropic import (
    AnthropicError,
    APIConnectionError,
    APITimeoutError,
    AsyncAnthropic,
    BadRequestError,
    InternalServerError,
    RateLimitError,
)
from loguru import logger
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import LLMSettings, get_settings
from core.exceptions import (
    VendorError,
    VendorRateLimitedError,
    VendorTimeoutError,
    VendorTokenError,
)
from core.models import CompletionResult, ContextSegment, UsageRecord
from infrastructure.monitoring import MetricsCollector

_TOKEN_ERROR_MARKERS = ("prompt is too long", "too many tokens", "max_tokens", "context length")


def to_vendor_blocks(segments: Sequence[ContextSegment]) -> list[dict[str, Any]]:
    """Render segments as vendor ``system`` blocks, marking each cache boundary."""
    blocks = []
    for segment in segments:
        block: dict[str, Any] = {"type": "text", "text": segment.text}
        if segment.cacheable:
            block["cache_control"] = {"type": "ephemeral"}
        blocks.append(block)
    return blocks


def _retry_after_seconds(error: RateLimitError) -> Optional[int]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    header = response.headers.get("retry-after")
    try:
        return int(float(header)) if header is not None else None
    except ValueError:
        return None


class AbstractLLMClient(ABC):
    """Vendor capability: ``complete(system_segments, messages) -> text + usage``."""

    @abstractmethod
    async def complete(
        self,
        system_segments: Sequence[ContextSegment],
        messages: Sequence[dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """Run one completion."""


class AnthropicClient(AbstractLLMClient):
    """
    Anthropic Messages API client.

    Usage:
        client = AnthropicClient(settings.llm)
        result = await client.complete(segments, [{"role": "user", "content": "..."}])
    """

    def __init__(
        self,
        llm_settings: Optional[LLMSettings] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self._settings = llm_settings or get_settings().llm
        self._metrics = metrics_collector
        api_key = (
            self._settings.anthropic_api_key.get_secret_value()
            if self._settings.anthropic_api_key
            else None
        )
        self._client = client or AsyncAnthropic(
            api_key=api_key,
            timeout=httpx.Timeout(self._settings.timeout_seconds),
            max_retries=0,  # tenacity owns retries
        )
        self.model = self._settings.model
        self.max_retries = self._settings.max_retries

        logger.info(
            f"AnthropicClient initialized | model={self.model} | max_retries={self.max_retries}"
        )

    async def complete(
        self,
        system_segments: Sequence[ContextSegment],
        messages: Sequence[dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """
        Execute a completion with retry on transient failures.

        Raises:
            VendorRateLimitedError: vendor returned 429
            VendorTokenError: request rejected for its token count
            VendorTimeoutError: retries exhausted on timeouts/connection errors
            VendorError: any other vendor failure
        """

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(
                (APITimeoutError, APIConnectionError, InternalServerError)
            ),
            before_sleep=before_sleep_log(logger, "WARNING"),
            reraise=True,
        )
        async def _execute():
            return await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens or self._settings.max_tokens_per_request,
                temperature=self._settings.temperature,
                system=to_vendor_blocks(system_segments),
                messages=list(messages),
            )

        start_time = time.perf_counter()
        try:
            response = await _execute()
        except RateLimitError as e:
            self._record_failure("rate_limited")
            raise VendorRateLimitedError(
                f"Vendor rate limit exceeded: {e}", retry_after=_retry_after_seconds(e), cause=e
            ) from e
        except BadRequestError as e:
            self._record_failure("bad_request")
            if any(marker in str(e).lower() for marker in _TOKEN_ERROR_MARKERS):
                raise VendorTokenError(f"Vendor rejected token count: {e}", cause=e) from e
            raise VendorError(f"Vendor rejected request: {e}", cause=e) from e
        except (APITimeoutError, APIConnectionError) as e:
            self._record_failure("timeout")
            raise VendorTimeoutError(f"Vendor unreachable: {e}", cause=e) from e
        except AnthropicError as e:
            self._record_failure("error")
            raise VendorError(f"Vendor error: {e}", cause=e) from e

        latency = time.perf_counter() - start_time
        usage = UsageRecord(
            input_tokens=response.usage.input_tokens or 0,
            cache_write_tokens=getattr(response.usage, "cache_creation_input_tokens", 0) or 0,
            cache_read_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            output_tokens=response.usage.output_tokens or 0,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

        if self._metrics:
            self._metrics.record_llm_call(self.model, "success", usage, latency)

        logger.debug(
            f"Completion done | model={self.model} | latency={latency:.2f}s | "
            f"input={usage.input_tokens} | cache_write={usage.cache_write_tokens} | "
            f"cache_read={usage.cache_read_tokens} | output={usage.output_tokens}"
        )

        return CompletionResult(
            text=text, usage=usage, model=self.model, stop_reason=response.stop_reason
        )

    def _record_failure(self, status: str) -> None:
        if self._metrics:
            self._metrics.record_llm_call(self.model, status, UsageRecord(), 0.0)

    async def close(self) -> None:
        await self._client.close()


def get_llm_client(
    settings=None,
    metrics_collector: Optional[MetricsCollector] = None,
) -> AbstractLLMClient:
    """Factory used by the container; only the Anthropic vendor is supported."""
    settings = settings or get_settings()
    return AnthropicClient(llm_settings=settings.llm, metrics_collector=metrics_collector)
