from __future__ import annotations

import allure
import pytest

from repo_review.pipeline.pricing import estimate_cost_usd, lookup_pricing

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Cost Estimation"),
]


def test_default_price_is_flat_per_million_tokens() -> None:
    cost = estimate_cost_usd(model="gpt-4o-mini", prompt_tokens=600_000, completion_tokens=400_000)

    assert cost == pytest.approx(0.375)


def test_configured_model_price_uses_input_and_output_rates(monkeypatch) -> None:
    monkeypatch.setenv("REPO_REVIEW_LLM_PRICING", "gpt-test:1.0:3.0")

    cost = estimate_cost_usd(model="gpt-test", prompt_tokens=1_000_000, completion_tokens=500_000)

    assert cost == pytest.approx(2.5)


def test_wildcard_price_applies_to_unlisted_models(monkeypatch) -> None:
    monkeypatch.setenv("REPO_REVIEW_LLM_PRICING", "gpt-test:1.0:1.0,*:9.0:9.0")

    assert lookup_pricing(model="other").input_per_1m == 9.0
    assert lookup_pricing(model="gpt-test").output_per_1m == 1.0


def test_malformed_pricing_entries_are_ignored(monkeypatch) -> None:
    monkeypatch.setenv("REPO_REVIEW_LLM_PRICING", "broken,gpt-test:x:1.0,gpt-neg:-1:1")

    pricing = lookup_pricing(model="gpt-test")

    assert pricing.input_per_1m == 0.375
    assert lookup_pricing(model="gpt-neg").input_per_1m == 0.375
