from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from deepresearch.llm_client import GenerateOptions, GenerationResult, Provider, complete_json
from deepresearch.models.research import Phase
from deepresearch.services.budget import TokenBudgetManager
from deepresearch.services.usage_tracker import UsageTracker

ProgressCallback = Callable[[int, int, str], Awaitable[None]]


@dataclass(slots=True)
class AgentContext:
    """Per-run collaborators shared by every phase agent."""

    request_id: str
    budget: TokenBudgetManager | None = None
    usage: UsageTracker | None = None
    language: str = "en"

    def record(self, phase: Phase, result: GenerationResult) -> None:
        if self.budget is not None:
            self.budget.record_usage(
                phase,
                result.model,
                result.usage.input,
                result.usage.output,
                result.cost_usd,
            )
        if self.usage is not None:
            self.usage.add_usage(result.model, result.usage.input, result.usage.output)

    def max_tokens(self, call_type: str, default: int) -> int:
        if self.budget is None:
            return default
        return self.budget.get_max_tokens_for_call(call_type)


class BaseAgent:
    """Base for the phase agents: one provider role plus shared run context.

    Subclasses set ``name`` and ``phase``; ``_complete_json`` handles the
    budget-aware options, usage recording and JSON fallback in one place.
    """

    name: str = "base"
    phase: Phase = Phase.TRIAGE

    def __init__(self, provider: Provider, context: AgentContext):
        self.provider = provider
        self.context = context

    def _options(
        self,
        call_type: str,
        *,
        default_max_tokens: int,
        temperature: float = 0.1,
        instructions: str | None = None,
        model: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> GenerateOptions:
        return GenerateOptions(
            instructions=instructions,
            temperature=temperature,
            max_tokens=self.context.max_tokens(call_type, default_max_tokens),
            model=model,
            caller=f"{self.name}.{call_type}",
            request_id=self.context.request_id,
            extra=extra or {},
        )

    async def _complete_json(
        self,
        prompt: str,
        options: GenerateOptions,
        default: dict[str, Any],
        *,
        phase: Phase | None = None,
    ) -> tuple[dict[str, Any], GenerationResult]:
        data, result = await complete_json(self.provider, prompt, options, default)
        self.context.record(phase or self.phase, result)
        return data, result
