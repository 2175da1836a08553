"""Provider adapters for the three model roles used by the pipeline.

- synthesizer / classifier / planner: Anthropic messages API
- fact-checker: OpenAI-compatible chat completions
- search-grounded researcher: Perplexity chat completions over httpx

Every adapter exposes ``generate(prompt, options) -> GenerationResult`` and
retries 429/5xx/transport failures itself; phases only see ``ProviderError``
once retries are exhausted.
"""
from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import anthropic
import httpx
import openai
from loguru import logger

from deepresearch.config import Settings, settings as default_settings
from deepresearch.exceptions import ProviderError
from deepresearch.services import logger as log_service
from deepresearch.tools.web_utils import extract_json_object

T = TypeVar("T")


@dataclass(slots=True)
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass(slots=True)
class GenerateOptions:
    instructions: str | None = None
    temperature: float = 0.1
    max_tokens: int = 1000
    model: str | None = None
    caller: str = "pipeline"
    request_id: str | None = None
    # Provider-specific request fields (e.g. Perplexity search filters).
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationResult:
    text: str
    usage: TokenUsage
    model: str
    cost_usd: float | None = None
    citations: list[dict[str, Any]] = field(default_factory=list)
    search_results: list[dict[str, Any]] = field(default_factory=list)


class Provider(Protocol):
    name: str
    model: str

    async def generate(self, prompt: str, options: GenerateOptions) -> GenerationResult: ...


async def call_with_retries(
    provider_name: str,
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    base_delay: float,
    max_delay: float,
) -> T:
    """Run ``fn`` with exponential backoff on retryable ``ProviderError``s."""
    attempt = 0
    while True:
        try:
            return await fn()
        except ProviderError as exc:
            if attempt >= max_retries or not exc.retryable:
                raise
            delay = min(base_delay * (2**attempt), max_delay)
            logger.warning(
                f"{provider_name} call failed (status={exc.status_code}), "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})"
            )
            await asyncio.sleep(delay)
            attempt += 1


class _BaseProvider:
    name = "base"

    def __init__(
        self,
        model: str,
        *,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
    ):
        self.model = model
        self.max_retries = default_settings.provider_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            default_settings.provider_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = (
            default_settings.provider_retry_max_delay if retry_max_delay is None else retry_max_delay
        )

    async def _request(self, prompt: str, options: GenerateOptions, model: str) -> GenerationResult:
        raise NotImplementedError

    async def generate(self, prompt: str, options: GenerateOptions) -> GenerationResult:
        model = options.model or self.model
        t0 = time.monotonic()
        try:
            result = await call_with_retries(
                self.name,
                lambda: self._request(prompt, options, model),
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
            )
        except ProviderError as exc:
            log_service.log_llm_call(
                model=model,
                caller=options.caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
                request_id=options.request_id,
            )
            raise
        log_service.log_llm_call(
            model=model,
            caller=options.caller,
            input_tokens=result.usage.input,
            output_tokens=result.usage.output,
            duration_ms=int((time.monotonic() - t0) * 1000),
            request_id=options.request_id,
        )
        return result


class AnthropicProvider(_BaseProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, *, client: Any | None = None, timeout: float = 60.0, **kwargs: Any):
        super().__init__(model, **kwargs)
        # Retries are handled by call_with_retries.
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def _request(self, prompt: str, options: GenerateOptions, model: str) -> GenerationResult:
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.instructions:
            kwargs["system"] = options.instructions
        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise ProviderError(self.name, str(exc), exc.status_code) from exc
        except anthropic.APIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        text = "\n".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        ).strip()
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                input=getattr(usage, "input_tokens", 0) or 0,
                output=getattr(usage, "output_tokens", 0) or 0,
            ),
            model=model,
        )


class OpenAIProvider(_BaseProvider):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        client: Any | None = None,
        timeout: float = 60.0,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )

    async def _request(self, prompt: str, options: GenerateOptions, model: str) -> GenerationResult:
        messages: list[dict[str, str]] = []
        if options.instructions:
            messages.append({"role": "system", "content": options.instructions})
        messages.append({"role": "user", "content": prompt})
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                **options.extra,
            )
        except openai.APIStatusError as exc:
            raise ProviderError(self.name, str(exc), exc.status_code) from exc
        except openai.APIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        choices = getattr(response, "choices", None) or []
        text = ""
        if choices:
            text = getattr(choices[0].message, "content", None) or ""
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text.strip(),
            usage=TokenUsage(
                input=getattr(usage, "prompt_tokens", 0) or 0,
                output=getattr(usage, "completion_tokens", 0) or 0,
            ),
            model=model,
        )


def _coerce_citations(raw: Any) -> list[dict[str, Any]]:
    """Perplexity returns citations either as URL strings or as objects."""
    citations: list[dict[str, Any]] = []
    if not isinstance(raw, list):
        return citations
    for item in raw:
        if isinstance(item, str):
            citations.append({"url": item})
        elif isinstance(item, dict):
            citations.append(item)
    return citations


def _as_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class PerplexityProvider(_BaseProvider):
    name = "perplexity"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str = "https://api.perplexity.ai",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    async def _request(self, prompt: str, options: GenerateOptions, model: str) -> GenerationResult:
        messages: list[dict[str, str]] = []
        if options.instructions:
            messages.append({"role": "system", "content": options.instructions})
        messages.append({"role": "user", "content": prompt})
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "return_citations": True,
            **options.extra,
        }

        async def _do_request(client: httpx.AsyncClient) -> dict[str, Any]:
            try:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=self.timeout,
                )
            except httpx.TransportError as exc:
                raise ProviderError(self.name, f"transport error: {exc}") from exc
            if response.status_code >= 400:
                raise ProviderError(
                    self.name, f"HTTP {response.status_code}: {response.text[:300]}", response.status_code
                )
            try:
                payload = response.json()
            except json.JSONDecodeError as exc:
                raise ProviderError(self.name, "invalid JSON response", response.status_code) from exc
            return payload if isinstance(payload, dict) else {}

        if self.http_client is None:
            async with httpx.AsyncClient() as client:
                data = await _do_request(client)
        else:
            data = await _do_request(self.http_client)

        choices = data.get("choices")
        text = ""
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                text = str(message.get("content") or "")
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        cost = usage.get("cost")
        cost_usd = _as_float(cost.get("total_cost")) if isinstance(cost, dict) else None
        search_results = data.get("search_results")
        if not isinstance(search_results, list):
            search_results = []
        return GenerationResult(
            text=text.strip(),
            usage=TokenUsage(
                input=_as_count(usage.get("prompt_tokens")),
                output=_as_count(usage.get("completion_tokens")),
            ),
            model=model,
            cost_usd=cost_usd,
            citations=_coerce_citations(data.get("citations")),
            search_results=[r for r in search_results if isinstance(r, dict)],
        )


async def complete_json(
    provider: Provider,
    prompt: str,
    options: GenerateOptions,
    default: dict[str, Any],
) -> tuple[dict[str, Any], GenerationResult]:
    """Generate and parse a JSON object, falling back to ``default`` on bad output.

    Provider errors still propagate; only malformed model output is absorbed.
    """
    result = await provider.generate(prompt, options)
    try:
        data = extract_json_object(result.text)
    except json.JSONDecodeError as exc:
        log_service.log_event(
            event_type="json_parse_fallback",
            message=f"Unparseable JSON from {options.caller}",
            level="WARNING",
            request_id=options.request_id,
            error=str(exc),
            preview=result.text[:200],
        )
        data = dict(default)
    return data, result


@dataclass(slots=True)
class Providers:
    synthesizer: Provider
    researcher: Provider
    fact_checker: Provider


def build_providers(config: Settings | None = None) -> Providers:
    """Construct fresh adapters for one run from settings."""
    config = config or default_settings
    retry_kwargs = {
        "max_retries": config.provider_max_retries,
        "retry_base_delay": config.provider_retry_base_delay,
        "retry_max_delay": config.provider_retry_max_delay,
    }
    return Providers(
        synthesizer=AnthropicProvider(
            config.anthropic_api_key,
            config.claude_model,
            timeout=config.provider_timeout_seconds,
            **retry_kwargs,
        ),
        researcher=PerplexityProvider(
            config.perplexity_api_key,
            config.perplexity_model,
            base_url=config.perplexity_base_url,
            timeout=config.provider_timeout_seconds,
            **retry_kwargs,
        ),
        fact_checker=OpenAIProvider(
            config.openai_api_key,
            config.openai_model_claim_decomposition,
            base_url=config.openai_base_url,
            timeout=config.provider_timeout_seconds,
            **retry_kwargs,
        ),
    )
