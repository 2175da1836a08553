from __future__ import annotations

import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from loguru import logger

from deepresearch.agents.base import AgentContext
from deepresearch.agents.clarification_agent import ClarificationAgent
from deepresearch.agents.output_agent import OutputAgent, split_sources_section
from deepresearch.agents.planning_agent import PlanningAgent
from deepresearch.agents.quality_gate import QualityGate, downgrade_grade
from deepresearch.agents.research_agent import ResearchAgent
from deepresearch.agents.triage_agent import TriageAgent
from deepresearch.agents.verification_agent import VerificationAgent, apply_source_availability
from deepresearch.config import Settings, settings
from deepresearch.exceptions import NoResearchResultsError, ResearchCancelledError, ResearchError
from deepresearch.llm_client import Providers, build_providers
from deepresearch.models.events import ResearchEvent
from deepresearch.models.research import (
    BudgetLimits,
    PartialCompletion,
    Phase,
    PipelineState,
    QualityGateResult,
    ResearchMode,
    ResearchOutput,
    VerificationLevel,
    VerificationStatus,
)
from deepresearch.models.schemas import ResearchOptions, RunResult, UsageSummary
from deepresearch.services import logger as log_service
from deepresearch.services import streaming
from deepresearch.services.budget import TokenBudgetManager, calculate_cost
from deepresearch.services.source_registry import SourceRegistry, UrlValidator
from deepresearch.services.usage_tracker import BillingHold, UsageTracker

EventCallback = Callable[[ResearchEvent], Awaitable[None] | None]

# Overall progress percent at the start of each state.
STATE_PROGRESS = {
    PipelineState.TRIAGE: 5,
    PipelineState.CLARIFICATION: 12,
    PipelineState.PLANNING: 18,
    PipelineState.RESEARCH: 30,
    PipelineState.VERIFICATION: 62,
    PipelineState.SOURCE_VALIDATION: 82,
    PipelineState.OUTPUT: 85,
    PipelineState.QUALITY_GATE: 95,
    PipelineState.DONE: 100,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _provider_for(model: str) -> str:
    if "sonar" in model:
        return "perplexity"
    if "claude" in model:
        return "anthropic"
    return "openai"


class ResearchOrchestrator:
    """Runs one research request through the full pipeline.

    Flow:
      1. Triage (mode + query type), then build the run's token budget
      2. Clarification check, or apply the caller's clarification answers
      3. Planning into research questions
      4. Search-grounded research, registering cited sources
      5. Claim decomposition and verification at a budget-chosen level
      6. Source URL validation, clamping claims backed only by dead links
      7. Report synthesis and the faithfulness quality gate

    Progress is reported through ``on_event``. Budget, source registry and
    usage tracker live on the instance, so use one orchestrator per run.
    """

    def __init__(
        self,
        providers: Providers | None = None,
        *,
        on_event: EventCallback | None = None,
        billing_hold: BillingHold | None = None,
        url_validator: UrlValidator | None = None,
        request_id: str | None = None,
        config: Settings | None = None,
    ):
        self.config = config or settings
        self.providers = providers
        self.on_event = on_event
        self.billing_hold = billing_hold
        self.request_id = request_id or str(uuid4())
        self.research_id = str(uuid4())
        self.usage = UsageTracker()
        self.registry = SourceRegistry(self.request_id, url_validator)
        self.budget: TokenBudgetManager | None = None
        self.state: PipelineState | None = None
        self.completed_phases: list[str] = []
        self._aborted = False

    def abort(self) -> None:
        """Cancel the run at the next phase boundary."""
        self._aborted = True
        logger.warning(f"Research {self.research_id} abort requested")

    async def _emit(self, event: ResearchEvent) -> None:
        if self.on_event is None:
            return
        try:
            outcome = self.on_event(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            log_service.log_event(
                event_type="event_delivery_error",
                message=f"Failed to deliver {event.event.value} event",
                level="WARNING",
                request_id=self.request_id,
                error=str(exc),
            )

    async def _progress(self, message: str, percent: int, **details: Any) -> None:
        phase = self.state.value if self.state else "pipeline"
        await self._emit(streaming.progress(phase, message, percent, **details))

    async def _enter(self, state: PipelineState, message: str) -> None:
        if self._aborted:
            raise ResearchCancelledError()
        if self.state is not None and self.state.value not in self.completed_phases:
            self.completed_phases.append(self.state.value)
        self.state = state
        budget_phase = {
            PipelineState.TRIAGE: Phase.TRIAGE,
            PipelineState.PLANNING: Phase.PLANNING,
            PipelineState.RESEARCH: Phase.RESEARCH,
            PipelineState.VERIFICATION: Phase.VERIFICATION,
            PipelineState.OUTPUT: Phase.OUTPUT,
        }.get(state)
        if budget_phase is not None and self.budget is not None:
            self.budget.start_phase(budget_phase)
        log_service.log_research_step(self.request_id, state.value, "started")
        await self._progress(message, STATE_PROGRESS.get(state, 0))

    def _create_budget(self, mode: ResearchMode, options: ResearchOptions) -> TokenBudgetManager:
        max_tokens, max_cost = self.config.budget_limits_for(mode)
        if options.max_cost_usd is not None:
            max_cost = options.max_cost_usd
        return TokenBudgetManager(
            mode,
            BudgetLimits(max_tokens=max_tokens, max_cost_usd=max_cost),
            warning_pct=self.config.circuit_breaker_warning,
            critical_pct=self.config.circuit_breaker_critical,
            stop_pct=self.config.circuit_breaker_stop,
            request_id=self.request_id,
        )

    def _usage_summary(self) -> UsageSummary:
        by_model: list[dict[str, Any]] = []
        for model, usage in self.usage.get_usage().items():
            by_model.append(
                {
                    "model": model,
                    "provider": _provider_for(model),
                    "input": usage.input_tokens,
                    "output": usage.output_tokens,
                    "cost": calculate_cost(model, usage.input_tokens, usage.output_tokens),
                }
            )
        total_in, total_out = self.usage.get_total_tokens()
        if self.budget is not None:
            total_cost = self.budget.get_total_cost_spent()
        else:
            total_cost = sum(item["cost"] for item in by_model)
        return UsageSummary(
            total_input_tokens=total_in,
            total_output_tokens=total_out,
            total_cost_usd=round(total_cost, 6),
            by_model=by_model,
        )

    async def _settle_billing(self, status: str, reason: str | None = None) -> None:
        """Commit or roll back the billing hold; failures are logged, never raised."""
        if self.billing_hold is None:
            return
        try:
            if status == "failed":
                await self.billing_hold.rollback(reason or "")
            else:
                await self.billing_hold.commit(self.usage.to_billing_usage())
        except Exception as exc:
            log_service.log_event(
                event_type="billing_settle_error",
                message=f"Billing {'rollback' if status == 'failed' else 'commit'} failed",
                level="ERROR",
                request_id=self.request_id,
                research_id=self.research_id,
                error=str(exc),
            )

    async def execute(
        self,
        query: str,
        user_id: str,
        options: ResearchOptions | None = None,
        clarification_answers: dict[int, str] | list[str] | None = None,
    ) -> RunResult:
        options = options or ResearchOptions()
        created_at = _now()
        started = time.monotonic()
        logger.info(f"Starting research {self.research_id} for user {user_id}: {query[:100]}")

        try:
            result = await self._run(query, user_id, options, clarification_answers, created_at, started)
        except Exception as exc:
            code = exc.code if isinstance(exc, ResearchError) else ResearchError.code
            if isinstance(exc, ResearchError):
                logger.error(f"Research {self.research_id} failed [{code}]: {exc}")
            else:
                logger.exception(f"Research {self.research_id} failed with error: {exc}")
            failed_phase = self.state.value if self.state else None
            self.state = PipelineState.FAILED
            log_service.log_research_step(self.request_id, PipelineState.FAILED.value, "failed", {"error_code": code})
            await self._emit(streaming.error(str(exc), code, failed_phase))
            await self._settle_billing("failed", f"{code}: {exc}")
            return RunResult(
                research_id=self.research_id,
                user_id=user_id,
                query=query,
                status="failed",
                mode=self.budget.mode.value if self.budget else None,
                budget=self.budget.get_snapshot().to_dict() if self.budget else None,
                usage=self._usage_summary(),
                error=str(exc),
                error_code=code,
                created_at=created_at,
                completed_at=_now(),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        await self._settle_billing(result.status)
        return result

    async def _run(
        self,
        query: str,
        user_id: str,
        options: ResearchOptions,
        clarification_answers: dict[int, str] | list[str] | None,
        created_at: str,
        started: float,
    ) -> RunResult:
        providers = self.providers or build_providers(self.config)
        context = AgentContext(request_id=self.request_id, usage=self.usage, language=options.language)

        # The budget depends on the triaged mode; triage usage is replayed into it.
        await self._enter(PipelineState.TRIAGE, "Analyzing query...")
        triage = await TriageAgent(providers.synthesizer, context).run(query, options.mode)
        self.budget = self._create_budget(triage.mode, options)
        self.budget.start_phase(Phase.TRIAGE)
        for model, usage in self.usage.get_usage().items():
            self.budget.record_usage(Phase.TRIAGE, model, usage.input_tokens, usage.output_tokens)
        context.budget = self.budget
        await self._progress(
            "Query analyzed",
            10,
            query_type=triage.query_type.value,
            mode=triage.mode.value,
            mode_source=triage.mode_source,
        )

        await self._enter(PipelineState.CLARIFICATION, "Checking query clarity...")
        clarifier = ClarificationAgent(providers.synthesizer, context)
        clarified_query = query
        if clarification_answers:
            clarified_query = await clarifier.apply(query, clarification_answers)
        else:
            check = await clarifier.check(query)
            if check.needs_clarification:
                self.state = PipelineState.CLARIFICATION_NEEDED
                log_service.log_research_step(
                    self.request_id, self.state.value, "suspended", {"questions": check.questions}
                )
                await self._emit(streaming.clarification_needed(self.research_id, check.questions))
                return RunResult(
                    research_id=self.research_id,
                    user_id=user_id,
                    query=query,
                    status="clarification_needed",
                    mode=triage.mode.value,
                    budget=self.budget.get_snapshot().to_dict(),
                    clarification_questions=check.questions,
                    usage=self._usage_summary(),
                    created_at=created_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

        await self._enter(PipelineState.PLANNING, "Planning research...")
        plan = await PlanningAgent(providers.synthesizer, context).run(clarified_query, triage)
        await self._progress(f"Planned {len(plan.questions)} questions", 25, questions_count=len(plan.questions))

        await self._enter(PipelineState.RESEARCH, "Collecting information...")

        async def on_research(question_id: int, total: int, text: str) -> None:
            percent = 30 + round(question_id / max(total, 1) * 30)
            await self._emit(streaming.progress("research", text, percent, question_id=question_id, total=total))

        answers = await ResearchAgent(providers.researcher, context, self.registry).run(
            plan.questions, triage.mode, on_progress=on_research
        )
        answered = [a for a in answers if a.has_content]
        if not answered:
            raise NoResearchResultsError()
        await self._progress("Information collected", 60, answered=len(answered), sources=self.registry.get_count())

        await self._enter(PipelineState.VERIFICATION, "Verifying facts...")

        async def on_verify(current: int, total: int, text: str) -> None:
            percent = 62 + round(current / max(total, 1) * 20)
            await self._emit(streaming.progress("verification", text, percent, current=current, total=total))

        outcome = await VerificationAgent(providers.fact_checker, context).run(
            answered, triage.mode, on_progress=on_verify
        )

        await self._enter(PipelineState.SOURCE_VALIDATION, "Checking source availability...")
        validation = await self.registry.validate_all(
            max_concurrency=self.config.url_validation_max_concurrency,
            timeout_ms=self.config.url_validation_timeout_ms,
        )
        apply_source_availability(outcome, self.registry, self.config.unavailable_source_confidence_cap)

        await self._enter(PipelineState.OUTPUT, "Writing report...")
        output = await OutputAgent(providers.synthesizer, context).run(
            clarified_query, outcome, self.registry, options, triage.mode
        )
        if validation.unavailable:
            output.warnings.append(f"{validation.unavailable} of {validation.total} sources were unavailable")

        await self._enter(PipelineState.QUALITY_GATE, "Checking report faithfulness...")
        gate_claims = [
            c for c in output.claims if c.status in (VerificationStatus.VERIFIED, VerificationStatus.PARTIALLY_CORRECT)
        ]
        gate = await QualityGate(providers.fact_checker, context).run(
            split_sources_section(output.report), gate_claims, triage.mode
        )
        self._apply_quality_gate(output, gate)

        self.completed_phases.append(self.state.value)
        self.state = PipelineState.DONE
        partial = self._partial_completion(len(answered), len(plan.questions), outcome.level)
        output_dict = output.to_dict()
        log_service.log_research_step(
            self.request_id,
            PipelineState.DONE.value,
            "completed",
            {"grade": output.grade, "score": output.quality.composite_score, "partial": partial is not None},
        )
        await self._progress("Report ready", STATE_PROGRESS[PipelineState.DONE])
        await self._emit(streaming.completed(self.research_id, output_dict))

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Research {self.research_id} complete! Runtime: {duration_ms}ms, "
            f"grade={output.grade}, facts={output.quality.facts_verified}/{output.quality.facts_total}"
        )
        return RunResult(
            research_id=self.research_id,
            user_id=user_id,
            query=query,
            status="completed",
            clarified_query=clarified_query if clarified_query != query else None,
            mode=triage.mode.value,
            output=output_dict,
            partial_completion=partial.to_dict() if partial else None,
            budget=self.budget.get_snapshot().to_dict(),
            usage=self._usage_summary(),
            created_at=created_at,
            completed_at=_now(),
            duration_ms=duration_ms,
        )

    def _apply_quality_gate(self, output: ResearchOutput, gate: QualityGateResult | None) -> None:
        if gate is None:
            return
        output.quality_gate = gate
        if not gate.passed:
            downgraded = downgrade_grade(output.grade)
            output.warnings.append(
                f"Quality gate failed (faithfulness {gate.faithfulness_score:.2f}); "
                f"grade lowered from {output.grade} to {downgraded}"
            )
            output.grade = downgraded

    def _partial_completion(
        self, covered: int, planned: int, level: VerificationLevel
    ) -> PartialCompletion | None:
        breaker = self.budget.circuit_breaker if self.budget else None
        breaker_triggered = bool(breaker and breaker.triggered)
        if covered >= planned and level == VerificationLevel.FULL and not breaker_triggered:
            return None

        skipped: list[str] = []
        if level == VerificationLevel.SKIPPED:
            skipped.append(PipelineState.VERIFICATION.value)
        elif level == VerificationLevel.SIMPLIFIED:
            skipped.append("deep_check")
        return PartialCompletion(
            is_partial=True,
            covered_questions=covered,
            planned_questions=planned,
            completed_phases=list(self.completed_phases),
            skipped_phases=skipped,
            verification_level=level,
            circuit_breaker_triggered=breaker_triggered,
            circuit_breaker_level=breaker.level if breaker_triggered else None,
        )
