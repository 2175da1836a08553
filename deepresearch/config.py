from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Synthesizer / classifier / planner (Anthropic)
    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-20250514"

    # Fact-checker (OpenAI-compatible)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_claim_decomposition: str = "gpt-4.1-mini"
    openai_model_deep_check: str = "gpt-4.1-nano"

    # Search-grounded researcher (Perplexity)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar-pro"

    # Provider adapter retries
    provider_timeout_seconds: float = 60.0
    provider_max_retries: int = 2
    provider_retry_base_delay: float = 2.0
    provider_retry_max_delay: float = 30.0

    # Budget limits per mode
    budget_simple_max_tokens: int = 50000
    budget_simple_max_cost_usd: float = 0.30
    budget_standard_max_tokens: int = 200000
    budget_standard_max_cost_usd: float = 1.00
    budget_deep_max_tokens: int = 500000
    budget_deep_max_cost_usd: float = 5.00

    # Circuit breaker thresholds (% of total budget)
    circuit_breaker_warning: float = 70
    circuit_breaker_critical: float = 85
    circuit_breaker_stop: float = 93

    # Planning
    max_questions_simple: int = 3
    max_questions_standard: int = 5
    max_questions_deep: int = 10

    # Pre-triage heuristics
    pre_triage_word_count_standard: int = 50
    pre_triage_word_count_deep: int = 150
    pre_triage_question_count_standard: int = 3
    pre_triage_question_count_deep: int = 6

    # Adaptive verification
    adaptive_verification_enabled: bool = True
    adaptive_verification_min_remaining: float = 0.35
    verification_cost_per_claim_usd: float = 0.0004
    unavailable_source_confidence_cap: float = 0.4

    # URL validation
    url_validation_max_concurrency: int = 10
    url_validation_timeout_ms: int = 3000

    # Output
    default_confidence_threshold: float = 0.80
    grade_a_threshold: float = 0.85
    grade_b_threshold: float = 0.65
    grade_c_threshold: float = 0.40
    narrative_threshold_simple: int = 3
    narrative_threshold_standard: int = 5
    narrative_threshold_deep: int = 10

    # Quality gate
    quality_gate_enabled: bool = True
    quality_gate_pass_threshold: float = 0.75
    quality_gate_model: str = "gpt-4.1-mini"
    quality_gate_estimated_cost_usd: float = 0.005

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def budget_limits_for(self, mode: str) -> tuple[int, float]:
        """Return (max_tokens, max_cost_usd) for a research mode."""
        limits = {
            "simple": (self.budget_simple_max_tokens, self.budget_simple_max_cost_usd),
            "standard": (self.budget_standard_max_tokens, self.budget_standard_max_cost_usd),
            "deep": (self.budget_deep_max_tokens, self.budget_deep_max_cost_usd),
        }
        return limits.get(mode, limits["standard"])

    def max_questions_for(self, mode: str) -> int:
        if mode == "simple":
            return self.max_questions_simple
        if mode == "deep":
            return self.max_questions_deep
        return self.max_questions_standard

    def narrative_threshold_for(self, mode: str) -> int:
        if mode == "simple":
            return self.narrative_threshold_simple
        if mode == "deep":
            return self.narrative_threshold_deep
        return self.narrative_threshold_standard


settings = Settings()
