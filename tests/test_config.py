from __future__ import annotations

import os
from unittest.mock import patch

from deepresearch.config import Settings


def test_env_overrides_budget_and_breaker_settings():
    env = {"BUDGET_DEEP_MAX_COST_USD": "7.5", "CIRCUIT_BREAKER_STOP": "90", "MAX_QUESTIONS_DEEP": "12"}
    with patch.dict(os.environ, env, clear=False):
        config = Settings(_env_file=None)

    assert config.budget_limits_for("deep") == (500_000, 7.5)
    assert config.circuit_breaker_stop == 90
    assert config.max_questions_for("deep") == 12


def test_mode_helpers_fall_back_to_standard():
    config = Settings(_env_file=None)
    assert config.budget_limits_for("unknown") == (200_000, 1.0)
    assert config.max_questions_for("simple") == 3
    assert config.max_questions_for("standard") == 5
    assert config.narrative_threshold_for("deep") == 10
