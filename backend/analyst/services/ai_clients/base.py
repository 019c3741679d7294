"""
Base provider client for structured JSON extraction.

Defines the invocation types shared by every provider and the engine that
performs one attempt: an HTTP POST with a hard deadline, classification of
failures, tolerant JSON decoding, and an inner retry loop with capped
exponential backoff for error classes the provider marks as transient.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from analyst.config import Settings
from analyst.services.extraction.attempt_planner import ProviderSpec
from analyst.services.extraction.error_classifier import (
    ClassifiedError,
    Classifier,
    ErrorClass,
)
from analyst.utils.json_utils import ModelJSONError, decode_model_json

logger = logging.getLogger(__name__)


# =============================================================================
# Invocation types
# =============================================================================


@dataclass(frozen=True)
class ContentPart:
    """
    One structured content part of a request.

    Exactly one of `text` or `data` is set. `data` is base64 without
    the data-URI prefix.

    Attributes:
        text: Plain text part
        data: Base64 payload of an inline attachment
        mime_type: MIME type of the attachment
    """

    text: str | None = None
    data: str | None = None
    mime_type: str = "image/jpeg"

    @classmethod
    def from_data_uri(cls, value: str, default_mime: str = "image/jpeg") -> "ContentPart":
        """
        Build an inline part from a data URI or bare base64 string.

        Example:
            >>> ContentPart.from_data_uri("data:image/png;base64,AAAA").mime_type
            'image/png'
        """
        value = value.strip()
        comma = value.find(",")
        if comma < 0:
            return cls(data=value, mime_type=default_mime)

        header = value[:comma]
        mime = default_mime
        if header.startswith("data:"):
            declared = header[5:].split(";", 1)[0].strip()
            mime = declared or default_mime
        return cls(data=value[comma + 1 :], mime_type=mime)

    @property
    def is_inline(self) -> bool:
        return self.data is not None


@dataclass
class InvocationRequest:
    """
    Everything one attempt sends upstream.

    Attributes:
        prompt: User prompt text
        response_schema: JSON shape constraint for the response
        request_id: Correlation id used in log lines across retries and providers
        parts: Extra content parts (inline images) after the prompt
        system_prompt: Optional system instruction
    """

    prompt: str
    response_schema: dict[str, Any]
    request_id: str
    parts: list[ContentPart] = field(default_factory=list)
    system_prompt: str | None = None


@dataclass(frozen=True)
class InvocationOutcome:
    """
    Result of one attempt: a decoded JSON value or a classified error, never both.

    Attributes:
        provider: Provider name
        model: Model used
        value: Decoded JSON value on success
        error: Classified failure
        tries: HTTP calls made inside this attempt
        elapsed: Wall time of the attempt in seconds
    """

    provider: str
    model: str
    value: Any = None
    error: ClassifiedError | None = None
    tries: int = 1
    elapsed: float = 0.0

    def __post_init__(self):
        if self.error is not None and self.value is not None:
            raise ValueError("InvocationOutcome holds either a value or an error")

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class ProviderClient(Protocol):
    """
    Protocol for provider clients used by the orchestrator.

    Example:
        async def run(client: ProviderClient, request: InvocationRequest):
            outcome = await client.invoke("gemini-2.5-flash", request)
    """

    name: str

    async def invoke(self, model: str, request: InvocationRequest) -> InvocationOutcome:
        """Run one attempt (including inner retries) against a model."""
        ...


# =============================================================================
# Errors
# =============================================================================


class AIClientError(Exception):
    """
    Base exception for provider client errors.

    Attributes:
        message: Error description
        provider: Provider name (gemini, openrouter)
        model: Model involved, if any
        original_error: Underlying exception if available
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        original_error: Exception | None = None,
    ):
        self.message = message
        self.provider = provider
        self.model = model
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.model:
            parts.append(f"model={self.model}")
        return " | ".join(parts)


class MissingCredentialError(AIClientError):
    """Raised when a provider's API key is not configured."""

    pass


class UpstreamCallError(AIClientError):
    """
    One HTTP call failed; carries the classification.

    Used inside the retry loop only; invoke() turns it into an
    InvocationOutcome.
    """

    def __init__(self, classified: ClassifiedError, **kwargs):
        super().__init__(classified.message, **kwargs)
        self.classified = classified


# =============================================================================
# Backoff
# =============================================================================


class wait_capped_exponential_jitter(wait_base):
    """
    Wait min(cap, base * 2**(n-1)) plus uniform jitter up to a third of it.

    n is the number of the try that just failed (1-based).

    Args:
        base: Base delay in seconds
        cap: Maximum delay before jitter in seconds
        rng: Random source (seedable in tests)
    """

    def __init__(self, base: float, cap: float, rng: random.Random | None = None):
        self.base = base
        self.cap = cap
        self.rng = rng or random.Random()

    def delay_for(self, attempt_number: int) -> float:
        delay = min(self.cap, self.base * (2 ** max(0, attempt_number - 1)))
        return delay + self.rng.uniform(0, delay / 3)

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)


# =============================================================================
# Client base
# =============================================================================


class BaseProviderClient(ABC):
    """
    Abstract provider client with the shared invocation engine.

    Subclasses describe the wire format only:
        - _build_call(): url, params, headers and JSON payload
        - _extract_text(): model text from a success body
        - _extract_error_message(): message from an error body

    Example:
        async with GeminiClient.from_settings(spec, settings) as client:
            outcome = await client.invoke("gemini-2.5-flash", request)
            if outcome.ok:
                print(outcome.value)
    """

    provider_label = "Model"

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str | None,
        timeout: float = 120.0,
        retry_base: float = 1.0,
        retry_cap: float = 90.0,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        classifier: Classifier | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize provider client.

        Args:
            spec: Provider topology entry
            api_key: Credential, None when not configured
            timeout: Hard deadline per HTTP call in seconds
            retry_base: Base backoff delay in seconds
            retry_cap: Backoff cap in seconds
            max_attempts: Tries per attempt, defaults to spec.max_attempts
            transport: Optional httpx transport (tests use httpx.MockTransport)
            classifier: Error classifier, defaults to the built-in rule table
            rng: Random source for jitter
        """
        self.spec = spec
        self.name = spec.name
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts or spec.max_attempts)
        self.wait = wait_capped_exponential_jitter(retry_base, retry_cap, rng)
        self.classifier = classifier or Classifier()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        spec: ProviderSpec,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> "BaseProviderClient":
        """
        Create client from application settings.

        Args:
            spec: Provider topology entry
            settings: Application settings
            transport: Optional httpx transport

        Returns:
            Configured client instance
        """
        max_attempts = min(spec.max_attempts, settings.retry_max_attempts)
        return cls(
            spec,
            api_key=settings.api_key_for(spec.credential_env),
            timeout=settings.request_timeout_sec,
            retry_base=settings.retry_base_ms / 1000,
            retry_cap=settings.retry_cap_ms / 1000,
            max_attempts=max_attempts,
            transport=transport,
            **kwargs,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            # Deadline is enforced per call with asyncio.wait_for
            self._client = httpx.AsyncClient(timeout=None, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BaseProviderClient":
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        await self.close()

    # -------------------------------------------------------------------------
    # Wire format hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _build_call(
        self,
        model: str,
        request: InvocationRequest,
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        """Return (url, params, headers, payload) for one call."""
        pass

    @abstractmethod
    def _extract_text(self, body: Any) -> str:
        """Return model text from a success body ("" when absent)."""
        pass

    @abstractmethod
    def _extract_error_message(self, body: Any, status_code: int) -> str:
        """Return a human-readable message from an error body."""
        pass

    def _extract_inline_error(self, body: Any) -> tuple[str, int | None] | None:
        """Return (message, status) when a 2xx body actually reports an error."""
        return None

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    async def invoke(
        self,
        model: str,
        request: InvocationRequest,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> InvocationOutcome:
        """
        Run one attempt against a model, retrying transient failures.

        Only error classes listed in the provider's retryable set are
        retried here; everything else is returned to the orchestrator
        after the first failure.

        Args:
            model: Model name
            request: Invocation request
            max_attempts: Override tries for this call (health checks use 1)
            timeout: Override hard deadline in seconds

        Returns:
            InvocationOutcome with decoded JSON or classified error

        Raises:
            MissingCredentialError: API key is not configured
        """
        if not self.api_key:
            raise MissingCredentialError(
                f"Server is missing {self.spec.credential_env}.",
                provider=self.name,
                model=model,
            )

        tries_allowed = max(1, max_attempts or self.max_attempts)
        deadline = timeout or self.timeout
        started = time.monotonic()
        tries = 0

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            classified = getattr(error, "classified", None)
            reason = classified.error_class.value if classified else type(error).__name__
            wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"[{request.request_id}] {self.name}/{model} "
                f"try {retry_state.attempt_number}/{tries_allowed} failed: {reason}, "
                f"retrying in {wait:.1f}s"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(tries_allowed),
            wait=self.wait,
            retry=retry_if_exception(self._is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    tries = attempt.retry_state.attempt_number
                    value = await self._call_once(model, request, deadline)
        except UpstreamCallError as e:
            elapsed = time.monotonic() - started
            logger.warning(
                f"[{request.request_id}] {self.name}/{model} "
                f"try {tries}/{tries_allowed} failed: {e.classified.error_class.value} "
                f"- {e.classified.message[:200]}"
            )
            return InvocationOutcome(
                provider=self.name,
                model=model,
                error=e.classified,
                tries=tries,
                elapsed=elapsed,
            )

        elapsed = time.monotonic() - started
        logger.info(
            f"[{request.request_id}] {self.name}/{model} "
            f"try {tries}/{tries_allowed} ok in {elapsed:.1f}s"
        )
        return InvocationOutcome(
            provider=self.name,
            model=model,
            value=value,
            tries=tries,
            elapsed=elapsed,
        )

    def _is_retryable(self, error: BaseException) -> bool:
        if not isinstance(error, UpstreamCallError):
            return False
        return error.classified.error_class in self.spec.retryable_classes

    async def _call_once(self, model: str, request: InvocationRequest, deadline: float) -> Any:
        """
        Issue one POST and decode the model's JSON.

        Raises:
            UpstreamCallError: Any classified failure
        """
        url, params, headers, payload = self._build_call(model, request)

        try:
            response = await asyncio.wait_for(
                self._http().post(url, params=params, headers=headers, json=payload),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise self._failure(
                ClassifiedError(
                    ErrorClass.TIMEOUT,
                    f"{self.provider_label} request timed out after {deadline:.0f}s.",
                ),
                model,
                e,
            )
        except httpx.TransportError as e:
            raise self._failure(
                ClassifiedError(
                    ErrorClass.TRANSIENT_UPSTREAM,
                    f"{self.provider_label} connection failed: {e or type(e).__name__}",
                ),
                model,
                e,
            )

        body = self._safe_json(response)

        if response.status_code >= 400:
            message = self._extract_error_message(body, response.status_code)
            classified = self.classifier.classify(
                message,
                response.status_code,
                response.headers.get("retry-after"),
            )
            raise self._failure(classified, model)

        inline_error = self._extract_inline_error(body)
        if inline_error is not None:
            message, status = inline_error
            raise self._failure(self.classifier.classify(message, status), model)

        try:
            return decode_model_json(self._extract_text(body), self.provider_label)
        except ModelJSONError as e:
            raise self._failure(
                ClassifiedError(ErrorClass.STRUCTURED_OUTPUT_INVALID, str(e)),
                model,
                e,
            )

    def _failure(
        self,
        classified: ClassifiedError,
        model: str,
        original_error: Exception | None = None,
    ) -> UpstreamCallError:
        return UpstreamCallError(
            classified,
            provider=self.name,
            model=model,
            original_error=original_error,
        )

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None
