"""Error types raised inside the research pipeline.

Budget exhaustion is not an error here: it is reported through
``TokenBudgetManager.can_continue`` and never raised.
"""
from __future__ import annotations


class ResearchError(Exception):
    """Base error carrying a stable error code for RunResult / error events."""

    code = "RESEARCH_FAILED"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ProviderError(ResearchError):
    """A provider call failed after the adapter exhausted its retries."""

    code = "AI_PROVIDER_ERROR"

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"AI provider error ({provider}): {message}")
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class PhaseTransitionError(ResearchError):
    """A phase was entered out of order."""

    code = "INVALID_PHASE_TRANSITION"


class ResearchCancelledError(ResearchError):
    code = "RESEARCH_CANCELLED"

    def __init__(self, message: str = "Research was cancelled"):
        super().__init__(message)


class NoResearchResultsError(ResearchError):
    code = "NO_RESEARCH_RESULTS"

    def __init__(self, message: str = "Research produced no answers"):
        super().__init__(message)
