"""
Pricing calculations and rate management.

Handles cost computations for the supported generation models.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K input tokens
    completion_cost_per_1k: Decimal  # Cost per 1K output tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gemini-2.0-flash": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00010"),
        completion_cost_per_1k=Decimal("0.00040")
    ),
    "gemini-1.5-flash": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.00060")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.00060")
    )
})

# Per-exchange costs are fractions of a cent; keep micro-dollar precision.
COST_QUANTUM = Decimal("0.000001")


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in USD rounded UP to the micro-dollar

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    # Always round UP so the budget guard never under-counts spend
    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)

    return float(rounded_cost)
