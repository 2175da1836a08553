from __future__ import annotations

from loguru import logger

from deepresearch.agents.base import AgentContext, BaseAgent
from deepresearch.config import settings
from deepresearch.exceptions import ProviderError
from deepresearch.llm_client import Provider
from deepresearch.models.research import Phase, QualityGateResult, ReportClaim, ResearchMode
from deepresearch.services.prompt_store import render_prompt

MAX_UNFAITHFUL_STATEMENTS = 20
_DOWNGRADE = {"A": "B", "B": "C", "C": "F", "F": "F"}


def downgrade_grade(grade: str) -> str:
    return _DOWNGRADE.get(grade, "F")


class QualityGate(BaseAgent):
    """Faithfulness check of the written report against its claims.

    Returns ``None`` whenever the check is skipped or fails; the gate never
    breaks a run.
    """

    name = "quality_gate"
    phase = Phase.OUTPUT

    def __init__(
        self,
        provider: Provider,
        context: AgentContext,
        *,
        enabled: bool | None = None,
        pass_threshold: float | None = None,
        model: str | None = None,
        estimated_cost_usd: float | None = None,
    ):
        super().__init__(provider, context)
        self.enabled = settings.quality_gate_enabled if enabled is None else enabled
        self.pass_threshold = settings.quality_gate_pass_threshold if pass_threshold is None else pass_threshold
        self.model = model or settings.quality_gate_model
        self.estimated_cost_usd = (
            settings.quality_gate_estimated_cost_usd if estimated_cost_usd is None else estimated_cost_usd
        )

    def _skip_reason(self, claims: list[ReportClaim], mode: ResearchMode) -> str | None:
        if mode == ResearchMode.SIMPLE:
            return "simple mode"
        if not self.enabled:
            return "disabled"
        if not claims:
            return "no verified claims"
        budget = self.context.budget
        if budget is not None and budget.get_remaining_cost() < self.estimated_cost_usd * 1.5:
            return f"insufficient budget (${budget.get_remaining_cost():.4f} left)"
        return None

    async def run(self, report: str, claims: list[ReportClaim], mode: ResearchMode) -> QualityGateResult | None:
        reason = self._skip_reason(claims, mode)
        if reason:
            logger.info(f"Quality gate skipped: {reason}")
            return None

        claims_text = "\n".join(f"- {c.text} (confidence: {c.confidence:.2f})" for c in claims)
        options = self._options("quality_gate", default_max_tokens=2000, model=self.model)
        try:
            data, result = await self._complete_json(
                render_prompt("quality_gate.user", claims=claims_text, report=report),
                options,
                default={"faithfulness_score": 1.0, "unfaithful_statements": []},
            )
        except ProviderError as exc:
            logger.error(f"Quality gate failed, skipping: {exc}")
            return None

        raw_score = data.get("faithfulness_score")
        if isinstance(raw_score, (int, float)) and not isinstance(raw_score, bool):
            score = max(0.0, min(1.0, float(raw_score)))
        else:
            score = 1.0

        statements: list[dict[str, str]] = []
        raw_statements = data.get("unfaithful_statements")
        for item in raw_statements if isinstance(raw_statements, list) else []:
            if isinstance(item, dict) and item.get("text"):
                statements.append({"text": str(item["text"]), "reason": str(item.get("reason") or "")})
            if len(statements) >= MAX_UNFAITHFUL_STATEMENTS:
                break

        gate = QualityGateResult(
            passed=score >= self.pass_threshold,
            faithfulness_score=score,
            unfaithful_statements=statements,
            input_tokens=result.usage.input,
            output_tokens=result.usage.output,
        )
        logger.info(
            f"Quality gate result: passed={gate.passed} score={gate.faithfulness_score:.2f} "
            f"threshold={self.pass_threshold:.2f} unfaithful={len(gate.unfaithful_statements)}"
        )
        return gate
