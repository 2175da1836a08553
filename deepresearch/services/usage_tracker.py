from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class BillingUsage:
    items: list[dict[str, Any]] = field(default_factory=list)


class BillingHold(Protocol):
    """Funds reserved before a run; exactly one of these is called after it."""

    async def commit(self, usage: BillingUsage) -> None: ...

    async def rollback(self, reason: str) -> None: ...


class UsageTracker:
    """Accumulates input/output tokens per model for billing."""

    def __init__(self) -> None:
        self._usage: dict[str, ModelUsage] = {}

    def add_usage(self, model: str, input_tokens: int, output_tokens: int) -> None:
        entry = self._usage.setdefault(model, ModelUsage())
        entry.input_tokens += max(0, int(input_tokens or 0))
        entry.output_tokens += max(0, int(output_tokens or 0))

    def get_usage(self) -> dict[str, ModelUsage]:
        return {model: ModelUsage(u.input_tokens, u.output_tokens) for model, u in self._usage.items()}

    def get_total_tokens(self) -> tuple[int, int]:
        total_in = sum(u.input_tokens for u in self._usage.values())
        total_out = sum(u.output_tokens for u in self._usage.values())
        return total_in, total_out

    def to_billing_usage(self) -> BillingUsage:
        return BillingUsage(
            items=[
                {
                    "type": "text_tokens",
                    "model": model,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                }
                for model, usage in self._usage.items()
            ]
        )
