"""Token cost estimation helpers for analyzer calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_PRICE_PER_1M_TOKENS = 0.375


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_PRICING = ModelPricing(
    input_per_1m=DEFAULT_PRICE_PER_1M_TOKENS,
    output_per_1m=DEFAULT_PRICE_PER_1M_TOKENS,
)


def estimate_cost_usd(
    *,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> float:
    """Estimate call cost in USD from token usage and configured pricing."""

    pricing = lookup_pricing(model=model)
    return (prompt_tokens / 1_000_000) * pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * pricing.output_per_1m


def lookup_pricing(*, model: str) -> ModelPricing:
    mapping = _parse_pricing_mapping(os.getenv("REPO_REVIEW_LLM_PRICING", ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    wildcard = mapping.get("*")
    if wildcard is not None:
        return wildcard
    return DEFAULT_PRICING


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `REPO_REVIEW_LLM_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model matches any model without its own entry
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[model] = ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
    return parsed
