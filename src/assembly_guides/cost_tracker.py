"""Token pricing and per-job cost accounting.

Create one CostTracker per generation job; every model call in the job
records its token usage with a label such as `page_7_content_escalation`
or `illustration_step_3_complex`.
"""

import time

from .logging_config import get_logger
from .models import CostEntry

logger = get_logger(__name__)

# USD per 1M tokens
MODEL_PRICING = {
    # Gemini
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "gemini-2.0-flash-lite": {"input": 0.075, "output": 0.30},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.60},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    # Image models (billed per image upstream; token rates used as an estimate)
    "gemini-2.5-flash-image": {"input": 0.15, "output": 0.60},
    "gemini-3-pro-image-preview": {"input": 1.25, "output": 10.00},
    # OpenAI
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    # OpenRouter ids
    "google/gemini-3-flash-preview": {"input": 0.50, "output": 3.00},
    "google/gemini-3-pro-preview": {"input": 2.00, "output": 12.00},
    "google/gemini-2.5-flash-preview": {"input": 0.15, "output": 0.60},
    "google/gemini-2.5-pro-preview": {"input": 1.25, "output": 10.00},
}


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost of one call in USD. Unknown models cost 0 and log a warning."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        logger.warning("Unknown model pricing: %s. Cost set to $0.", model)
        return 0.0
    return (
        input_tokens * pricing["input"] + output_tokens * pricing["output"]
    ) / 1_000_000


class CostTracker:
    def __init__(self, job_id: str | None = None):
        self.job_id = job_id
        self._entries: list[CostEntry] = []

    def record(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        label: str | None = None,
    ) -> CostEntry:
        entry = CostEntry(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(model, input_tokens, output_tokens),
            timestamp=time.time(),
            label=label,
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> list[CostEntry]:
        return list(self._entries)

    @property
    def total_cost_usd(self) -> float:
        return sum(e.cost_usd for e in self._entries)

    @property
    def total_input_tokens(self) -> int:
        return sum(e.input_tokens for e in self._entries)

    @property
    def total_output_tokens(self) -> int:
        return sum(e.output_tokens for e in self._entries)

    @property
    def call_count(self) -> int:
        return len(self._entries)

    def summary(self) -> dict:
        """Totals plus a per-model breakdown, for the job record."""
        by_model: dict[str, dict] = {}
        for entry in self._entries:
            row = by_model.setdefault(entry.model, {"model": entry.model, "calls": 0, "cost_usd": 0.0})
            row["calls"] += 1
            row["cost_usd"] += entry.cost_usd

        return {
            "total_cost_usd": self.total_cost_usd,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "call_count": self.call_count,
            "breakdown": list(by_model.values()),
        }

    def reset(self) -> None:
        self._entries.clear()
