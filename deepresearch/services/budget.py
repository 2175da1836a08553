"""Per-run token/cost budget with phase allocation and a circuit breaker.

One manager is created per research run and consulted by every phase. It
never raises on exhaustion; callers ask ``can_continue`` and degrade.
"""
from __future__ import annotations

from loguru import logger

from deepresearch.config import settings
from deepresearch.exceptions import PhaseTransitionError
from deepresearch.models.research import (
    BREAKER_ORDER,
    PHASE_ORDER,
    BreakerLevel,
    BudgetDecision,
    BudgetLimits,
    BudgetSnapshot,
    CircuitBreakerState,
    Phase,
    PhaseBonus,
    PhaseSnapshot,
    PhaseUsage,
    ResearchMode,
)
from deepresearch.services import logger as log_service

# Percent of the total budget allotted to each phase.
PHASE_ALLOCATION: dict[str, dict[Phase, float]] = {
    ResearchMode.SIMPLE: {
        Phase.TRIAGE: 3,
        Phase.PLANNING: 12,
        Phase.RESEARCH: 55,
        Phase.VERIFICATION: 23,
        Phase.OUTPUT: 7,
    },
    ResearchMode.STANDARD: {
        Phase.TRIAGE: 2,
        Phase.PLANNING: 10,
        Phase.RESEARCH: 50,
        Phase.VERIFICATION: 31,
        Phase.OUTPUT: 7,
    },
    ResearchMode.DEEP: {
        Phase.TRIAGE: 1,
        Phase.PLANNING: 8,
        Phase.RESEARCH: 52,
        Phase.VERIFICATION: 33,
        Phase.OUTPUT: 6,
    },
}

# call type -> (max tokens per call, phase it is charged to)
CALL_TOKEN_CAPS: dict[str, tuple[int, Phase]] = {
    "triage": (1000, Phase.TRIAGE),
    "planning": (3000, Phase.PLANNING),
    "research": (4000, Phase.RESEARCH),
    "claim_decomposition": (3000, Phase.VERIFICATION),
    "deep_check": (500, Phase.VERIFICATION),
    "output": (8000, Phase.OUTPUT),
    "quality_gate": (2000, Phase.OUTPUT),
}
DEFAULT_CALL_CAP = (4000, Phase.RESEARCH)

DEFAULT_PRICE_MODEL = "claude-sonnet-4-20250514"

# USD per token: (input, output)
MODEL_PRICES: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3 / 1_000_000, 15 / 1_000_000),
    "gpt-4.1-nano": (0.1 / 1_000_000, 0.4 / 1_000_000),
    "gpt-4.1-mini": (0.4 / 1_000_000, 1.6 / 1_000_000),
}

PHASE_OVERSHOOT_FACTOR = 1.3
PHASE_REDUCE_THRESHOLD = 0.6
MIN_CALL_TOKENS = 100


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    price_in, price_out = MODEL_PRICES.get(model, MODEL_PRICES[DEFAULT_PRICE_MODEL])
    return input_tokens * price_in + output_tokens * price_out


class TokenBudgetManager:
    def __init__(
        self,
        mode: ResearchMode | str,
        limits: BudgetLimits | None = None,
        *,
        warning_pct: float | None = None,
        critical_pct: float | None = None,
        stop_pct: float | None = None,
        request_id: str | None = None,
    ):
        self.mode = ResearchMode(mode)
        if limits is None:
            max_tokens, max_cost = settings.budget_limits_for(self.mode)
            limits = BudgetLimits(max_tokens=max_tokens, max_cost_usd=max_cost)
        self.limits = limits
        self.request_id = request_id
        self._thresholds = [
            (BreakerLevel.STOP, stop_pct if stop_pct is not None else settings.circuit_breaker_stop),
            (
                BreakerLevel.CRITICAL,
                critical_pct if critical_pct is not None else settings.circuit_breaker_critical,
            ),
            (
                BreakerLevel.WARNING,
                warning_pct if warning_pct is not None else settings.circuit_breaker_warning,
            ),
        ]

        self._usage: dict[Phase, PhaseUsage] = {phase: PhaseUsage() for phase in PHASE_ORDER}
        self._bonus: dict[Phase, PhaseBonus] = {phase: PhaseBonus() for phase in PHASE_ORDER}
        self._breaker = CircuitBreakerState()
        self._degradations: list[str] = []
        self.current_phase: Phase | None = None

        log_service.log_event(
            event_type="budget_created",
            message="Token budget manager created",
            request_id=request_id,
            mode=self.mode.value,
            max_tokens=limits.max_tokens,
            max_cost_usd=limits.max_cost_usd,
        )

    # --- phases ---

    def start_phase(self, phase: Phase | str) -> None:
        """Enter ``phase``, carrying the previous phase's unspent budget forward."""
        phase = Phase(phase)
        current = self.current_phase
        if current == phase:
            return
        if current is not None:
            if PHASE_ORDER.index(phase) < PHASE_ORDER.index(current):
                raise PhaseTransitionError(
                    f"Cannot move budget phase backwards from {current.value} to {phase.value}"
                )
            self._transfer_remaining(current, phase)
        self.current_phase = phase
        logger.debug(
            f"Budget phase started: {phase.value} (tokens={self.get_phase_token_budget(phase):.0f}, "
            f"cost={self.get_phase_cost_budget(phase):.4f}, spent={self.get_total_spent_pct():.3f})"
        )

    def _transfer_remaining(self, from_phase: Phase, to_phase: Phase) -> None:
        usage = self._usage[from_phase]
        tokens_saved = max(0.0, self.get_phase_token_budget(from_phase) - usage.tokens)
        cost_saved = max(0.0, self.get_phase_cost_budget(from_phase) - usage.cost_usd)
        if tokens_saved > 0 or cost_saved > 0:
            bonus = self._bonus[to_phase]
            bonus.tokens += tokens_saved
            bonus.cost_usd += cost_saved
            logger.debug(
                f"Budget transferred {from_phase.value} -> {to_phase.value}: "
                f"tokens={tokens_saved:.0f} cost={cost_saved:.4f}"
            )

    # --- usage ---

    def record_usage(
        self,
        phase: Phase | str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        direct_cost_usd: float | None = None,
    ) -> None:
        phase = Phase(phase)
        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        if direct_cost_usd is not None:
            cost = max(0.0, float(direct_cost_usd))
        else:
            cost = calculate_cost(model, input_tokens, output_tokens)

        usage = self._usage[phase]
        usage.tokens += input_tokens + output_tokens
        usage.cost_usd += cost
        usage.calls += 1

        self._check_circuit_breaker()
        logger.debug(
            f"Budget usage recorded: phase={phase.value} model={model} in={input_tokens} "
            f"out={output_tokens} cost={cost:.6f} spent={self.get_total_spent_pct():.3f}"
        )

    def _check_circuit_breaker(self) -> None:
        spent_pct = self.get_total_spent_pct() * 100
        current_rank = BREAKER_ORDER.index(self._breaker.level)
        for level, threshold in self._thresholds:
            if spent_pct < threshold:
                continue
            if BREAKER_ORDER.index(level) > current_rank:
                self._breaker.triggered = True
                self._breaker.level = level
                self._breaker.triggered_at_pct = spent_pct
                log_service.log_event(
                    event_type="circuit_breaker",
                    message=f"Circuit breaker {level.value.upper()} triggered",
                    level="WARNING",
                    request_id=self.request_id,
                    spent_pct=round(spent_pct, 2),
                    threshold=threshold,
                )
            return

    # --- decisions ---

    def can_continue(self, phase: Phase | str) -> BudgetDecision:
        phase = Phase(phase)
        level = self._breaker.level
        if level == BreakerLevel.STOP:
            return BudgetDecision.STOP

        used = self.get_phase_used_pct(phase)
        if used > PHASE_OVERSHOOT_FACTOR:
            return BudgetDecision.STOP

        if level == BreakerLevel.CRITICAL and phase in (Phase.RESEARCH, Phase.VERIFICATION):
            return BudgetDecision.STOP

        if used > PHASE_REDUCE_THRESHOLD or level == BreakerLevel.WARNING:
            return BudgetDecision.REDUCE

        return BudgetDecision.PROCEED

    def get_max_tokens_for_call(self, call_type: str) -> int:
        cap, phase = CALL_TOKEN_CAPS.get(call_type, DEFAULT_CALL_CAP)
        phase_remaining = self.get_phase_remaining_tokens(phase)
        global_remaining = max(0, self.limits.max_tokens - self.get_total_tokens_spent())
        return int(max(MIN_CALL_TOKENS, min(cap, phase_remaining, global_remaining)))

    def add_degradation(self, tag: str) -> None:
        if tag in self._degradations:
            return
        self._degradations.append(tag)
        log_service.log_event(
            event_type="budget_degradation",
            message=f"Degradation applied: {tag}",
            request_id=self.request_id,
            degradation=tag,
            total_spent_pct=round(self.get_total_spent_pct(), 4),
        )

    # --- accessors ---

    def get_phase_token_budget(self, phase: Phase | str) -> float:
        phase = Phase(phase)
        pct = PHASE_ALLOCATION[self.mode][phase] / 100
        return self.limits.max_tokens * pct + self._bonus[phase].tokens

    def get_phase_cost_budget(self, phase: Phase | str) -> float:
        phase = Phase(phase)
        pct = PHASE_ALLOCATION[self.mode][phase] / 100
        return self.limits.max_cost_usd * pct + self._bonus[phase].cost_usd

    def get_phase_used_pct(self, phase: Phase | str) -> float:
        """Max of token and cost usage as a fraction of the phase's effective budget."""
        phase = Phase(phase)
        usage = self._usage[phase]
        token_budget = self.get_phase_token_budget(phase)
        cost_budget = self.get_phase_cost_budget(phase)
        token_pct = usage.tokens / token_budget if token_budget > 0 else 0.0
        cost_pct = usage.cost_usd / cost_budget if cost_budget > 0 else 0.0
        return max(token_pct, cost_pct)

    def get_phase_remaining_tokens(self, phase: Phase | str) -> float:
        phase = Phase(phase)
        ceiling = self.get_phase_token_budget(phase) * PHASE_OVERSHOOT_FACTOR
        return max(0.0, ceiling - self._usage[phase].tokens)

    def get_phase_usage(self, phase: Phase | str) -> PhaseUsage:
        usage = self._usage[Phase(phase)]
        return PhaseUsage(tokens=usage.tokens, cost_usd=usage.cost_usd, calls=usage.calls)

    def get_phase_bonus(self, phase: Phase | str) -> PhaseBonus:
        bonus = self._bonus[Phase(phase)]
        return PhaseBonus(tokens=bonus.tokens, cost_usd=bonus.cost_usd)

    def get_total_tokens_spent(self) -> int:
        return sum(usage.tokens for usage in self._usage.values())

    def get_total_cost_spent(self) -> float:
        return sum(usage.cost_usd for usage in self._usage.values())

    def get_remaining_cost(self) -> float:
        return max(0.0, self.limits.max_cost_usd - self.get_total_cost_spent())

    def get_total_spent_pct(self) -> float:
        """Fraction of the run budget consumed (max of tokens and cost)."""
        token_pct = (
            self.get_total_tokens_spent() / self.limits.max_tokens if self.limits.max_tokens > 0 else 0.0
        )
        cost_pct = (
            self.get_total_cost_spent() / self.limits.max_cost_usd if self.limits.max_cost_usd > 0 else 0.0
        )
        return max(token_pct, cost_pct)

    def get_global_status(self) -> str:
        if self._breaker.level == BreakerLevel.NONE:
            return "normal"
        return self._breaker.level.value

    @property
    def circuit_breaker(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            triggered=self._breaker.triggered,
            level=self._breaker.level,
            triggered_at_pct=self._breaker.triggered_at_pct,
        )

    @property
    def degradations(self) -> list[str]:
        return list(self._degradations)

    def get_snapshot(self) -> BudgetSnapshot:
        by_phase: dict[str, PhaseSnapshot] = {}
        for phase in PHASE_ORDER:
            usage = self._usage[phase]
            token_budget = self.get_phase_token_budget(phase)
            by_phase[phase.value] = PhaseSnapshot(
                tokens=usage.tokens,
                cost_usd=usage.cost_usd,
                calls=usage.calls,
                budget_pct=PHASE_ALLOCATION[self.mode][phase],
                used_pct=usage.tokens / token_budget if token_budget > 0 else 0.0,
            )
        return BudgetSnapshot(
            mode=self.mode.value,
            limits=BudgetLimits(self.limits.max_tokens, self.limits.max_cost_usd),
            total_tokens=self.get_total_tokens_spent(),
            total_cost_usd=self.get_total_cost_spent(),
            spent_pct=self.get_total_spent_pct() * 100,
            by_phase=by_phase,
            circuit_breaker=self.circuit_breaker,
            degradations=self.degradations,
        )
