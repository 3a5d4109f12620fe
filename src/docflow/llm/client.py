"""Async OpenAI-compatible LLM client for Docflow.

Works with any OpenAI-compatible API:
- DeepSeek (default)
- OpenAI
- Groq
- Local vLLM instances

Transient failures (rate limits, connection errors, timeouts, empty or
non-JSON bodies) are retried with exponential backoff and surface as
TransientIOError once retries run out. A response that parses but does not
match its schema raises ValidationError and is not retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from docflow.core.errors import TransientIOError, ValidationError
from docflow.llm.cache import ResponseCache, compute_cache_key

if TYPE_CHECKING:
    from docflow.config import Settings

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    asyncio.TimeoutError,
)


@dataclass
class LLMConfig:
    """Configuration for an OpenAI-compatible LLM API."""

    api_key: str
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    timeout: float = 120.0
    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used."""
        return self.input_tokens + self.output_tokens


@dataclass
class ModelMetadata:
    """Usage details attached to a structured response."""

    model: str
    purpose: str
    input_tokens: int = 0
    output_tokens: int = 0
    attempts: int = 1
    cached: bool = False
    duration_seconds: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StructuredResponse(Generic[SchemaT]):
    """A schema-validated response with its model metadata."""

    data: SchemaT
    metadata: ModelMetadata


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating code fences.

    Raises:
        ValueError: If the content is empty or not a JSON object.
    """
    body = content.strip()
    if body.startswith("```"):
        body = body.split("\n", 1)[1] if "\n" in body else ""
        if body.rstrip().endswith("```"):
            body = body.rstrip()[:-3]
        body = body.strip()
    if not body:
        msg = "Empty response body"
        raise ValueError(msg)
    payload = json.loads(body)
    if not isinstance(payload, dict):
        msg = f"Expected a JSON object, got {type(payload).__name__}"
        raise ValueError(msg)
    return payload


def schema_instructions(schema: type[BaseModel]) -> str:
    """Instruction block describing the expected JSON response."""
    return (
        "Respond with a single JSON object that validates against this JSON schema. "
        "Do not wrap it in prose.\n"
        f"{json.dumps(schema.model_json_schema(), indent=2)}"
    )


@dataclass
class LLMClient:
    """Async client for OpenAI-compatible APIs with structured output."""

    config: LLMConfig
    cache: ResponseCache | None = None
    usage: dict[str, int] = field(default_factory=dict)  # tokens per purpose
    _client: AsyncOpenAI = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize the OpenAI client; retries are handled here, not by the SDK."""
        self._client = AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None) -> LLMClient:
        """Create client from Docflow settings."""
        if settings is None:
            from docflow.config import get_settings

            settings = get_settings()
        if not settings.llm_api_key:
            msg = "DOCFLOW_LLM_API_KEY not configured"
            raise ValueError(msg)

        config = LLMConfig(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            model=settings.classification_model,
            timeout=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
            retry_delay=settings.llm_retry_delay_seconds,
        )
        cache = ResponseCache(settings.cache_dir) if settings.llm_cache_enabled else None
        return cls(config=config, cache=cache)

    async def _backoff(self, attempt: int) -> None:
        delay = self.config.retry_delay * 2**attempt
        if delay > 0:
            await asyncio.sleep(delay)

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.2,
        timeout: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a completion, retrying transient failures.

        Args:
            prompt: User prompt to complete.
            system_prompt: Optional system prompt.
            model: Model override (default: config model).
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.
            timeout: Per-attempt timeout in seconds (default: config timeout).
            json_mode: Ask the API for a JSON object response.

        Returns:
            LLMResponse with content and token counts.

        Raises:
            TransientIOError: If the API keeps failing or returns an error.
        """
        model = model or self.config.model
        timeout = timeout if timeout is not None else self.config.timeout

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        attempts = self.config.max_retries + 1
        last_error: BaseException | None = None
        for attempt in range(attempts):
            logger.debug(
                "LLM request: model=%s, messages=%d, attempt=%d",
                model,
                len(messages),
                attempt + 1,
            )
            try:
                response = await asyncio.wait_for(
                    self._client.chat.completions.create(**kwargs),
                    timeout=timeout,
                )
            except _TRANSIENT_ERRORS as exc:
                last_error = exc
                if attempt + 1 < attempts:
                    logger.warning(
                        "Transient LLM error (attempt %d/%d): %s",
                        attempt + 1,
                        attempts,
                        exc or type(exc).__name__,
                    )
                    await self._backoff(attempt)
                continue
            except openai.APIError as exc:
                msg = f"LLM API error: {exc}"
                raise TransientIOError(msg) from exc

            choice = response.choices[0]
            content = choice.message.content or ""
            usage = response.usage
            input_tokens = usage.prompt_tokens if usage else 0
            output_tokens = usage.completion_tokens if usage else 0

            logger.debug(
                "LLM response: tokens=%d+%d, content_len=%d",
                input_tokens,
                output_tokens,
                len(content),
            )
            return LLMResponse(
                content=content,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        msg = f"LLM request failed after {attempts} attempts: {last_error or 'timeout'}"
        raise TransientIOError(msg) from last_error

    async def request_structured_json(
        self,
        prompt: str,
        schema: type[SchemaT],
        purpose: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
    ) -> StructuredResponse[SchemaT]:
        """Request a JSON response and validate it against ``schema``.

        Args:
            prompt: User prompt.
            schema: Pydantic model the response must satisfy.
            purpose: Usage tag for accounting and cache partitioning.
            system_prompt: Task instructions; schema instructions are appended.
            model: Model override (default: config model).
            max_tokens: Maximum tokens in response.

        Returns:
            StructuredResponse with the validated data and model metadata.

        Raises:
            TransientIOError: API failures or unparseable bodies after retries.
            ValidationError: The parsed body does not match the schema.
        """
        model = model or self.config.model
        full_system = "\n\n".join(p for p in (system_prompt, schema_instructions(schema)) if p)
        started = time.monotonic()

        cache_key = None
        if self.cache is not None:
            cache_key = compute_cache_key(model, purpose, prompt, full_system)
            entry = self.cache.get(purpose, cache_key)
            if entry is not None:
                try:
                    data = schema.model_validate(entry["data"])
                except PydanticValidationError:
                    logger.warning("Cached %s response no longer matches schema, refetching", purpose)
                else:
                    logger.debug("LLM cache hit: purpose=%s key=%s", purpose, cache_key[:12])
                    return StructuredResponse(
                        data=data,
                        metadata=ModelMetadata(model=model, purpose=purpose, cached=True),
                    )

        attempts = self.config.max_retries + 1
        input_tokens = output_tokens = 0
        payload: dict[str, Any] | None = None
        last_error: Exception | None = None
        attempt = 0
        for attempt in range(attempts):
            response = await self.complete(
                prompt,
                system_prompt=full_system,
                model=model,
                max_tokens=max_tokens,
                json_mode=True,
            )
            input_tokens += response.input_tokens
            output_tokens += response.output_tokens
            try:
                payload = parse_json_object(response.content)
                break
            except ValueError as exc:
                last_error = exc
                logger.warning(
                    "Malformed %s response (attempt %d/%d): %s",
                    purpose,
                    attempt + 1,
                    attempts,
                    exc,
                )
                if attempt + 1 < attempts:
                    await self._backoff(attempt)

        self.usage[purpose] = self.usage.get(purpose, 0) + input_tokens + output_tokens

        if payload is None:
            msg = f"No parseable {purpose} response after {attempts} attempts: {last_error}"
            raise TransientIOError(msg) from last_error

        try:
            data = schema.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"{purpose} response failed {schema.__name__} validation: {exc}"
            raise ValidationError(msg) from exc

        if self.cache is not None and cache_key is not None:
            self.cache.put(
                purpose,
                cache_key,
                data.model_dump(mode="json"),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return StructuredResponse(
            data=data,
            metadata=ModelMetadata(
                model=model,
                purpose=purpose,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                attempts=attempt + 1,
                duration_seconds=time.monotonic() - started,
            ),
        )
