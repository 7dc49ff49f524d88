"""Token-based credit pricing for completed answer jobs.

Costs are credits per 1000 tokens:

    cost    = input_tokens / 1000 * input_cost_per_1k
            + output_tokens / 1000 * output_cost_per_1k
    base    = ceil(max(cost, minimum_credits) * model_multiplier)
    credits = base * plan credit_multiplier

base_credits() computes the per-call base; the usage ledger applies the
plan multiplier on commit, so a multiplier other than 1.0 yields
fractional credits.
"""

import math
from dataclasses import dataclass

from tutor.db.models import AiModel
from tutor.services.llm.types import LLMUsage


@dataclass(frozen=True)
class TokenPricing:
    """Per-model price sheet."""

    input_cost_per_1k: float
    output_cost_per_1k: float
    minimum_credits: float = 1.0
    model_multiplier: float = 1.0


DEFAULT_TOKEN_PRICING: dict[str, TokenPricing] = {
    # OpenAI
    "gpt-4o": TokenPricing(2.5, 10.0),
    "gpt-4o-mini": TokenPricing(0.15, 0.6),
    "gpt-4-turbo": TokenPricing(5.0, 15.0),
    "gpt-3.5-turbo": TokenPricing(0.25, 0.75),
    # Anthropic
    "claude-3-opus": TokenPricing(7.5, 37.5, minimum_credits=2.0),
    "claude-3-5-sonnet": TokenPricing(1.5, 7.5),
    "claude-3-sonnet": TokenPricing(1.5, 7.5),
    "claude-3-haiku": TokenPricing(0.125, 0.625),
    # Fallback
    "default": TokenPricing(1.0, 3.0),
}


def pricing_for_model(model: AiModel | None) -> TokenPricing:
    """Resolve the price sheet for a model.

    Database pricing wins when both per-token costs are set; otherwise the
    built-in table is consulted by model name, then the default entry.
    """
    if model is None:
        return DEFAULT_TOKEN_PRICING["default"]

    if model.input_cost_per_1k is not None and model.output_cost_per_1k is not None:
        return TokenPricing(
            input_cost_per_1k=model.input_cost_per_1k,
            output_cost_per_1k=model.output_cost_per_1k,
            minimum_credits=model.minimum_credits if model.minimum_credits is not None else 1.0,
            model_multiplier=model.model_multiplier or 1.0,
        )

    table_pricing = DEFAULT_TOKEN_PRICING.get(model.model_name, DEFAULT_TOKEN_PRICING["default"])
    return TokenPricing(
        input_cost_per_1k=table_pricing.input_cost_per_1k,
        output_cost_per_1k=table_pricing.output_cost_per_1k,
        minimum_credits=(
            model.minimum_credits
            if model.minimum_credits is not None
            else table_pricing.minimum_credits
        ),
        model_multiplier=model.model_multiplier or table_pricing.model_multiplier,
    )


def base_credits(usage: LLMUsage | None, pricing: TokenPricing) -> int:
    """Whole credits charged for one inference call before the plan multiplier."""
    input_tokens = (usage.prompt_tokens or 0) if usage else 0
    output_tokens = (usage.completion_tokens or 0) if usage else 0

    cost = (input_tokens * pricing.input_cost_per_1k) / 1000 + (
        output_tokens * pricing.output_cost_per_1k
    ) / 1000
    return math.ceil(max(cost, pricing.minimum_credits) * pricing.model_multiplier)
