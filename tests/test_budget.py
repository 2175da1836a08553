from __future__ import annotations

import pytest

from deepresearch.exceptions import PhaseTransitionError
from deepresearch.models.research import BreakerLevel, BudgetDecision, BudgetLimits, Phase, ResearchMode
from deepresearch.services.budget import TokenBudgetManager, calculate_cost


def _standard() -> TokenBudgetManager:
    return TokenBudgetManager(
        ResearchMode.STANDARD,
        BudgetLimits(max_tokens=200_000, max_cost_usd=1.00),
        warning_pct=70,
        critical_pct=85,
        stop_pct=93,
    )


def test_standard_research_scenario_reduces_then_stops():
    budget = _standard()
    budget.start_phase("research")

    assert budget.get_phase_token_budget(Phase.RESEARCH) == pytest.approx(100_000)
    assert budget.can_continue(Phase.RESEARCH) == BudgetDecision.PROCEED

    budget.record_usage(Phase.RESEARCH, "sonar-pro", 60_000, 30_000, direct_cost_usd=0.0)
    assert budget.can_continue(Phase.RESEARCH) == BudgetDecision.REDUCE

    budget.record_usage(Phase.RESEARCH, "sonar-pro", 30_000, 11_000, direct_cost_usd=0.0)
    assert budget.get_total_tokens_spent() == 131_000
    assert budget.circuit_breaker.level == BreakerLevel.NONE
    assert budget.can_continue(Phase.RESEARCH) == BudgetDecision.STOP


def test_usage_is_monotonic_and_negative_counts_are_clamped():
    budget = _standard()
    budget.start_phase(Phase.TRIAGE)
    budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 500, 100)
    before_tokens = budget.get_total_tokens_spent()
    before_cost = budget.get_total_cost_spent()

    budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", -400, -50)

    assert budget.get_total_tokens_spent() == before_tokens
    assert budget.get_total_cost_spent() == before_cost
    assert budget.get_phase_usage(Phase.TRIAGE).calls == 2


def test_direct_cost_overrides_price_table():
    budget = _standard()
    budget.record_usage(Phase.RESEARCH, "sonar-pro", 1000, 1000, direct_cost_usd=0.0123)
    assert budget.get_total_cost_spent() == pytest.approx(0.0123)


def test_unknown_model_uses_default_price():
    assert calculate_cost("some-new-model", 1_000_000, 0) == pytest.approx(3.0)
    assert calculate_cost("gpt-4.1-nano", 1_000_000, 1_000_000) == pytest.approx(0.5)


def test_unspent_phase_budget_is_transferred_forward_once():
    budget = _standard()
    budget.start_phase(Phase.TRIAGE)
    budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 1000, 0, direct_cost_usd=0.005)

    budget.start_phase(Phase.PLANNING)
    bonus = budget.get_phase_bonus(Phase.PLANNING)
    assert bonus.tokens == pytest.approx(4000 - 1000)
    assert bonus.cost_usd == pytest.approx(0.02 - 0.005)

    # Re-entering the current phase is a no-op.
    budget.start_phase(Phase.PLANNING)
    assert budget.get_phase_bonus(Phase.PLANNING).tokens == pytest.approx(3000)
    assert budget.get_phase_token_budget(Phase.PLANNING) == pytest.approx(20_000 + 3000)


def test_overspent_phase_transfers_nothing():
    budget = _standard()
    budget.start_phase(Phase.TRIAGE)
    budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 9000, 0, direct_cost_usd=0.5)
    budget.start_phase(Phase.PLANNING)

    bonus = budget.get_phase_bonus(Phase.PLANNING)
    assert bonus.tokens == 0
    assert bonus.cost_usd == 0


def test_moving_backwards_raises():
    budget = _standard()
    budget.start_phase(Phase.VERIFICATION)
    with pytest.raises(PhaseTransitionError) as exc_info:
        budget.start_phase(Phase.RESEARCH)
    assert exc_info.value.code == "INVALID_PHASE_TRANSITION"


class TestCircuitBreaker:
    def test_levels_escalate_and_never_drop(self):
        budget = _standard()
        budget.record_usage(Phase.RESEARCH, "sonar-pro", 142_000, 0, direct_cost_usd=0.0)
        assert budget.circuit_breaker.level == BreakerLevel.WARNING
        assert budget.circuit_breaker.triggered is True
        assert budget.circuit_breaker.triggered_at_pct == pytest.approx(71.0)

        budget.record_usage(Phase.RESEARCH, "sonar-pro", 30_000, 0, direct_cost_usd=0.0)
        assert budget.circuit_breaker.level == BreakerLevel.CRITICAL
        assert budget.get_global_status() == "critical"

        budget.record_usage(Phase.VERIFICATION, "gpt-4.1-nano", 0, 0, direct_cost_usd=0.0)
        assert budget.circuit_breaker.level == BreakerLevel.CRITICAL

    def test_jump_straight_to_stop(self):
        budget = _standard()
        budget.record_usage(Phase.OUTPUT, "claude-sonnet-4-20250514", 10, 10, direct_cost_usd=0.95)

        assert budget.circuit_breaker.level == BreakerLevel.STOP
        assert budget.get_total_spent_pct() == pytest.approx(0.95)
        for phase in Phase:
            assert budget.can_continue(phase) == BudgetDecision.STOP

    def test_critical_stops_research_and_verification_only(self):
        budget = _standard()
        budget.start_phase(Phase.VERIFICATION)
        budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 0, 0, direct_cost_usd=0.86)

        assert budget.circuit_breaker.level == BreakerLevel.CRITICAL
        assert budget.can_continue(Phase.RESEARCH) == BudgetDecision.STOP
        assert budget.can_continue(Phase.VERIFICATION) == BudgetDecision.STOP
        assert budget.can_continue(Phase.OUTPUT) == BudgetDecision.PROCEED

    def test_warning_reduces_fresh_phase(self):
        budget = _standard()
        budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 0, 0, direct_cost_usd=0.72)
        assert budget.circuit_breaker.level == BreakerLevel.WARNING
        assert budget.can_continue(Phase.OUTPUT) == BudgetDecision.REDUCE


class TestMaxTokensForCall:
    def test_uses_call_type_cap_when_budget_is_fresh(self):
        budget = _standard()
        assert budget.get_max_tokens_for_call("deep_check") == 500
        assert budget.get_max_tokens_for_call("output") == 8000
        assert budget.get_max_tokens_for_call("unknown_call") == 4000

    def test_limited_by_phase_overshoot_ceiling(self):
        budget = _standard()
        # triage: 4000 * 1.3 = 5200 ceiling
        budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 4900, 0, direct_cost_usd=0.0)
        assert budget.get_max_tokens_for_call("triage") == 300

    def test_never_below_floor(self):
        budget = _standard()
        budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 10_000, 0, direct_cost_usd=0.0)
        assert budget.get_max_tokens_for_call("triage") == 100


def test_degradations_are_deduplicated_in_order():
    budget = _standard()
    budget.add_degradation("search_context_reduced")
    budget.add_degradation("questions_truncated")
    budget.add_degradation("search_context_reduced")
    assert budget.degradations == ["search_context_reduced", "questions_truncated"]


def test_snapshot_is_serializable():
    budget = _standard()
    budget.start_phase(Phase.RESEARCH)
    budget.record_usage(Phase.RESEARCH, "sonar-pro", 1000, 1000, direct_cost_usd=0.01)
    budget.add_degradation("questions_truncated")

    snapshot = budget.get_snapshot().to_dict()

    assert snapshot["mode"] == "standard"
    assert snapshot["limits"] == {"max_tokens": 200_000, "max_cost_usd": 1.0}
    assert snapshot["total_tokens"] == 2000
    assert snapshot["spent_pct"] == pytest.approx(1.0)
    assert snapshot["by_phase"]["research"]["calls"] == 1
    assert snapshot["by_phase"]["research"]["budget_pct"] == 50
    assert snapshot["circuit_breaker"]["triggered"] is False
    assert snapshot["degradations"] == ["questions_truncated"]
