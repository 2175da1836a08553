from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from deepresearch.config import settings


# --- Requests ---


class ResearchOptions(BaseModel):
    mode: Literal["auto", "simple", "standard", "deep"] = "auto"
    include_unverified: bool = False
    confidence_threshold: float = Field(
        default_factory=lambda: settings.default_confidence_threshold, ge=0.0, le=1.0
    )
    language: str = "en"
    max_cost_usd: float | None = None


# --- Responses ---


class UsageSummary(BaseModel):
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    by_model: list[dict[str, Any]] = []


class RunResult(BaseModel):
    research_id: str
    user_id: str
    query: str
    status: Literal["completed", "failed", "clarification_needed"]
    clarified_query: str | None = None
    mode: str | None = None
    output: dict[str, Any] | None = None
    partial_completion: dict[str, Any] | None = None
    budget: dict[str, Any] | None = None
    clarification_questions: list[str] = []
    usage: UsageSummary = Field(default_factory=UsageSummary)
    error: str | None = None
    error_code: str | None = None
    created_at: str
    completed_at: str | None = None
    duration_ms: int | None = None
