from __future__ import annotations

import pytest

from deepresearch.models.research import BudgetLimits, Phase, ResearchMode, VerificationLevel
from deepresearch.services.budget import TokenBudgetManager
from deepresearch.services.verification_level import select_level


def _budget(mode: ResearchMode, max_tokens: int = 200_000, max_cost: float = 1.0) -> TokenBudgetManager:
    return TokenBudgetManager(mode, BudgetLimits(max_tokens=max_tokens, max_cost_usd=max_cost))


def test_without_budget_returns_mode_base_level():
    assert select_level("simple", None, 10) == VerificationLevel.SIMPLIFIED
    assert select_level("standard", None, 10) == VerificationLevel.FULL
    assert select_level(ResearchMode.DEEP, None, 10) == VerificationLevel.FULL


@pytest.mark.parametrize(
    ("phase", "tokens", "cost", "expected"),
    [
        (None, 0, 0.0, VerificationLevel.SIMPLIFIED),
        # 8k of an 11.5k phase budget: reduce, with 84% of the run left.
        (Phase.VERIFICATION, 8_000, 0.0, VerificationLevel.SIMPLIFIED),
        (Phase.RESEARCH, 0, 0.216, VerificationLevel.SIMPLIFIED),
        (Phase.RESEARCH, 0, 0.29, VerificationLevel.SKIPPED),
    ],
    ids=["ample", "reduce", "warning", "stop"],
)
def test_simple_mode_is_never_elevated_above_simplified(phase, tokens, cost, expected):
    budget = _budget(ResearchMode.SIMPLE, 50_000, 0.30)
    if phase is not None:
        budget.record_usage(phase, "gpt-4.1-nano", tokens, 0, direct_cost_usd=cost)
    assert select_level(ResearchMode.SIMPLE, budget, 3) == expected


def test_stop_decision_skips_verification():
    budget = _budget(ResearchMode.STANDARD)
    budget.record_usage(Phase.RESEARCH, "sonar-pro", 0, 0, direct_cost_usd=0.95)
    assert select_level(ResearchMode.STANDARD, budget, 5) == VerificationLevel.SKIPPED


def test_reduce_under_warning_lowers_to_simplified_without_elevation():
    budget = _budget(ResearchMode.STANDARD)
    budget.record_usage(Phase.RESEARCH, "sonar-pro", 0, 0, direct_cost_usd=0.72)
    # 28% remaining is below the 35% floor for elevation.
    assert select_level(ResearchMode.STANDARD, budget, 5) == VerificationLevel.SIMPLIFIED


def test_reduce_is_elevated_one_step_when_budget_allows():
    budget = _budget(ResearchMode.STANDARD)
    budget.start_phase(Phase.VERIFICATION)
    # 40k of a 62k phase budget: over the reduce threshold, 80% of the run left.
    budget.record_usage(Phase.VERIFICATION, "gpt-4.1-nano", 40_000, 0, direct_cost_usd=0.0)

    assert select_level(ResearchMode.STANDARD, budget, 5, adaptive_enabled=False) == VerificationLevel.SIMPLIFIED
    assert select_level(ResearchMode.STANDARD, budget, 5) == VerificationLevel.FULL


def test_elevation_requires_cost_for_outstanding_claims():
    budget = _budget(ResearchMode.STANDARD)
    budget.start_phase(Phase.VERIFICATION)
    budget.record_usage(Phase.VERIFICATION, "gpt-4.1-nano", 40_000, 0, direct_cost_usd=0.0)

    level = select_level(ResearchMode.STANDARD, budget, 5, per_claim_cost_usd=1.0)
    assert level == VerificationLevel.SIMPLIFIED
