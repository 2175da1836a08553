from __future__ import annotations

from loguru import logger

from deepresearch.models.research import (
    LEVEL_ORDER,
    BudgetDecision,
    Phase,
    ResearchMode,
    VerificationLevel,
)
from deepresearch.services.budget import TokenBudgetManager

BASE_LEVELS = {
    ResearchMode.SIMPLE: VerificationLevel.SIMPLIFIED,
    ResearchMode.STANDARD: VerificationLevel.FULL,
    ResearchMode.DEEP: VerificationLevel.FULL,
}


def _weaker(a: VerificationLevel, b: VerificationLevel) -> VerificationLevel:
    return a if LEVEL_ORDER.index(a) >= LEVEL_ORDER.index(b) else b


def select_level(
    mode: ResearchMode | str,
    budget: TokenBudgetManager | None,
    outstanding_claims: int,
    *,
    adaptive_enabled: bool = True,
    min_remaining_ratio: float = 0.35,
    per_claim_cost_usd: float = 0.0004,
) -> VerificationLevel:
    """Pick the verification level for the current run state.

    Starts from the mode's base level, lowers it on budget pressure, then
    (if adaptive) raises it at most one step when enough budget remains for
    ``outstanding_claims``. Simple mode never rises above simplified and a
    skipped level is never raised.
    """
    mode = ResearchMode(mode)
    base = BASE_LEVELS[mode]
    if budget is None:
        return base

    level = base
    decision = budget.can_continue(Phase.VERIFICATION)
    if decision == BudgetDecision.STOP:
        level = VerificationLevel.SKIPPED
    elif decision == BudgetDecision.REDUCE:
        level = _weaker(level, VerificationLevel.SIMPLIFIED)

    if not adaptive_enabled or level == VerificationLevel.SKIPPED:
        return level

    current_rank = LEVEL_ORDER.index(level)
    if current_rank == 0:
        return level

    remaining_ratio = 1.0 - budget.get_total_spent_pct()
    required_cost = 2 * per_claim_cost_usd * max(outstanding_claims, 1)
    if remaining_ratio <= min_remaining_ratio or budget.get_remaining_cost() < required_cost:
        return level

    elevated = LEVEL_ORDER[current_rank - 1]
    if mode == ResearchMode.SIMPLE:
        elevated = _weaker(elevated, VerificationLevel.SIMPLIFIED)
    if elevated != level:
        logger.info(
            f"Verification level elevated {level.value} -> {elevated.value} "
            f"(remaining={remaining_ratio:.2f}, outstanding={outstanding_claims})"
        )
    return elevated
