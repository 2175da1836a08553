from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class ResearchMode(StrEnum):
    SIMPLE = "simple"
    STANDARD = "standard"
    DEEP = "deep"


MODE_ORDER = [ResearchMode.SIMPLE, ResearchMode.STANDARD, ResearchMode.DEEP]


class Phase(StrEnum):
    TRIAGE = "triage"
    PLANNING = "planning"
    RESEARCH = "research"
    VERIFICATION = "verification"
    OUTPUT = "output"


PHASE_ORDER = [Phase.TRIAGE, Phase.PLANNING, Phase.RESEARCH, Phase.VERIFICATION, Phase.OUTPUT]


class PipelineState(StrEnum):
    TRIAGE = "triage"
    CLARIFICATION = "clarification"
    PLANNING = "planning"
    RESEARCH = "research"
    VERIFICATION = "verification"
    SOURCE_VALIDATION = "source_validation"
    OUTPUT = "output"
    QUALITY_GATE = "quality_gate"
    DONE = "done"
    FAILED = "failed"
    CLARIFICATION_NEEDED = "clarification_needed"


class BudgetDecision(StrEnum):
    PROCEED = "proceed"
    REDUCE = "reduce"
    STOP = "stop"


class BreakerLevel(StrEnum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    STOP = "stop"


BREAKER_ORDER = [BreakerLevel.NONE, BreakerLevel.WARNING, BreakerLevel.CRITICAL, BreakerLevel.STOP]


class VerificationLevel(StrEnum):
    FULL = "full"
    SIMPLIFIED = "simplified"
    SKIPPED = "skipped"


# Strongest first; "lowering" moves right in this list.
LEVEL_ORDER = [VerificationLevel.FULL, VerificationLevel.SIMPLIFIED, VerificationLevel.SKIPPED]


class QueryType(StrEnum):
    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    SPECULATIVE = "speculative"
    MIXED = "mixed"


class ClaimType(StrEnum):
    FACTUAL = "factual"
    NUMERICAL = "numerical"
    ANALYTICAL = "analytical"
    SPECULATIVE = "speculative"


class VerificationStatus(StrEnum):
    VERIFIED = "verified"
    PARTIALLY_CORRECT = "partially_correct"
    INCORRECT = "incorrect"
    UNVERIFIABLE = "unverifiable"


class SourceStatus(StrEnum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    UNCHECKED = "unchecked"


class ReportFormat(StrEnum):
    NARRATIVE = "narrative"
    BULLET_LIST = "bullet_list"
    MINIMAL = "minimal"


# --- Budget ---


@dataclass(slots=True)
class BudgetLimits:
    max_tokens: int
    max_cost_usd: float


@dataclass(slots=True)
class PhaseUsage:
    tokens: int = 0
    cost_usd: float = 0.0
    calls: int = 0


@dataclass(slots=True)
class PhaseBonus:
    tokens: float = 0.0
    cost_usd: float = 0.0


@dataclass(slots=True)
class CircuitBreakerState:
    triggered: bool = False
    level: BreakerLevel = BreakerLevel.NONE
    triggered_at_pct: float = 0.0


@dataclass(slots=True)
class PhaseSnapshot:
    tokens: int
    cost_usd: float
    calls: int
    budget_pct: float
    used_pct: float


@dataclass(slots=True)
class BudgetSnapshot:
    mode: str
    limits: BudgetLimits
    total_tokens: int
    total_cost_usd: float
    spent_pct: float
    by_phase: dict[str, PhaseSnapshot]
    circuit_breaker: CircuitBreakerState
    degradations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# --- Sources ---


@dataclass(slots=True)
class RegisteredSource:
    id: int
    url: str
    title: str
    domain: str
    authority_score: float
    origin_question_id: int
    added_at: str
    status: SourceStatus = SourceStatus.UNCHECKED
    date: str | None = None

    @property
    def is_available(self) -> bool:
        return self.status != SourceStatus.UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ValidationSummary:
    total: int = 0
    available: int = 0
    unavailable: int = 0


# --- Pipeline phases ---


@dataclass(slots=True)
class TriageResult:
    query_type: QueryType
    mode: ResearchMode
    mode_source: str  # "auto" | "user"
    estimated_questions: int
    estimated_cost: tuple[float, float]
    estimated_duration: tuple[int, int]
    pre_triage_floor: ResearchMode = ResearchMode.SIMPLE
    pre_triage_reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClarificationResult:
    status: str  # "ready" | "needs_clarification"
    questions: list[str] = field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return self.status == "needs_clarification"


@dataclass(slots=True)
class ResearchQuestion:
    id: int
    text: str
    type: ClaimType = ClaimType.FACTUAL
    priority: int = 1
    topic: str = ""
    expected_fact_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class VerificationRequirement:
    min_sources: int
    freshness_required: bool = False
    required_source_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ResearchPlan:
    questions: list[ResearchQuestion]
    scope: str = ""
    fact_types: list[str] = field(default_factory=list)
    verification_strategy: dict[str, VerificationRequirement] = field(default_factory=dict)


@dataclass(slots=True)
class ResearchAnswer:
    question_id: int
    question: str
    response: str
    citations: list[dict[str, Any]] = field(default_factory=list)
    search_results: list[dict[str, Any]] = field(default_factory=list)
    # 1-based citation marker -> registry id
    citation_mapping: dict[int, int] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def has_content(self) -> bool:
        return bool(self.response.strip())

    @property
    def has_grounded_content(self) -> bool:
        return bool(self.citations)


@dataclass(slots=True)
class AtomicClaim:
    id: int
    text: str
    type: ClaimType
    source_question_id: int
    original_context: str = ""
    value: float | None = None
    unit: str | None = None
    source_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class VerificationResult:
    claim_id: int
    status: VerificationStatus
    confidence: float
    explanation: str = ""
    correction: str | None = None


@dataclass(slots=True)
class VerificationOutcome:
    level: VerificationLevel
    claims: list[AtomicClaim] = field(default_factory=list)
    results: list[VerificationResult] = field(default_factory=list)


@dataclass(slots=True)
class PartialCompletion:
    is_partial: bool
    covered_questions: int
    planned_questions: int
    completed_phases: list[str]
    skipped_phases: list[str]
    verification_level: VerificationLevel
    circuit_breaker_triggered: bool
    circuit_breaker_level: BreakerLevel | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# --- Output ---


@dataclass(slots=True)
class ReportClaim:
    id: int
    text: str
    type: ClaimType
    status: VerificationStatus
    confidence: float
    source_ids: list[int] = field(default_factory=list)
    correction: str | None = None
    omit_reason: str | None = None
    value: float | None = None
    unit: str | None = None


@dataclass(slots=True)
class ReportSource:
    id: int
    url: str
    title: str
    domain: str
    authority: float
    is_available: bool
    date: str | None = None
    used_in_claims: list[int] = field(default_factory=list)


@dataclass(slots=True)
class QualityMetrics:
    composite_score: float
    grade: str
    verification_pass_rate: float
    citation_coverage: float
    source_authority_score: float
    correction_rate: float
    omission_rate: float
    facts_total: int = 0
    facts_verified: int = 0
    facts_partially_correct: int = 0
    facts_unverified: int = 0
    facts_omitted: int = 0
    facts_numerical: int = 0
    sources_count: int = 0


@dataclass(slots=True)
class QualityGateResult:
    passed: bool
    faithfulness_score: float
    unfaithful_statements: list[dict[str, str]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class ResearchOutput:
    report: str
    summary: str
    report_format: ReportFormat
    claims: list[ReportClaim]
    omitted_claims: list[ReportClaim]
    sources: list[ReportSource]
    quality: QualityMetrics
    grade: str
    disclaimer: str | None = None
    warnings: list[str] = field(default_factory=list)
    quality_gate: QualityGateResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
