"""
Usage Tracker Module

Per-stage accounting of transform traffic: calls, retries, failures by
error kind, tokens, latency and an estimated cost. Region tasks record into
it concurrently, so every access goes through one lock.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional
import threading


# USD per 1M (input, output) tokens; unknown models use the default entry
PRICE_PER_MILLION = {
    "gemini-3-pro-preview": (2.00, 12.00),
    "gemini-3-pro-image-preview": (2.00, 120.00),
    "default": (0.15, 0.60),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = PRICE_PER_MILLION.get(model, PRICE_PER_MILLION["default"])
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass
class StageUsage:
    """Running totals for one pipeline stage."""
    calls: int = 0
    retries: int = 0
    failures: Counter = field(default_factory=Counter)
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: float = 0.0
    cost: float = 0.0
    models: set = field(default_factory=set)

    @property
    def failed(self) -> int:
        return sum(self.failures.values())

    def to_dict(self) -> dict:
        return {
            "calls": self.calls,
            "retries": self.retries,
            "failed": self.failed,
            "failures_by_kind": dict(self.failures),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "duration_ms": round(self.duration_ms, 2),
            "cost": round(self.cost, 6),
            "models": sorted(self.models),
        }


class UsageTracker:
    """Aggregates transform usage per stage."""

    def __init__(self):
        self._stages: dict[str, StageUsage] = {}
        self._lock = threading.Lock()

    def _stage(self, stage: str) -> StageUsage:
        return self._stages.setdefault(stage or "transform", StageUsage())

    def add_call(
        self,
        stage: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float,
        error_kind: Optional[str] = None,
    ):
        """Record one transform call; `error_kind` is set when it failed."""
        with self._lock:
            usage = self._stage(stage)
            usage.calls += 1
            usage.models.add(model)
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            usage.duration_ms += duration_ms
            usage.cost += estimate_cost(model, input_tokens, output_tokens)
            if error_kind is not None:
                usage.failures[error_kind] += 1

    def add_retry(self, stage: str):
        with self._lock:
            self._stage(stage).retries += 1

    def get_stage_summary(self) -> dict[str, dict]:
        with self._lock:
            return {name: usage.to_dict() for name, usage in self._stages.items()}

    def _sum(self, attribute: str):
        with self._lock:
            return sum(getattr(usage, attribute) for usage in self._stages.values())

    @property
    def total_calls(self) -> int:
        return self._sum("calls")

    @property
    def failed_calls(self) -> int:
        return self._sum("failed")

    @property
    def total_retries(self) -> int:
        return self._sum("retries")

    @property
    def total_tokens(self) -> int:
        return self._sum("input_tokens") + self._sum("output_tokens")

    @property
    def total_cost(self) -> float:
        return self._sum("cost")

    def to_dict(self) -> dict:
        """Usage summary written to usage.json."""
        return {
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "total_retries": self.total_retries,
            "total_tokens": self.total_tokens,
            "total_cost_usd": round(self.total_cost, 6),
            "stages": self.get_stage_summary(),
        }


_global_tracker: Optional[UsageTracker] = None


def get_tracker() -> UsageTracker:
    """Get or create the global usage tracker."""
    global _global_tracker
    if _global_tracker is None:
        _global_tracker = UsageTracker()
    return _global_tracker


def reset_tracker():
    global _global_tracker
    _global_tracker = UsageTracker()


def extract_usage_from_response(response) -> tuple[int, int]:
    """(prompt tokens, output tokens) from a Gemini response's usage metadata."""
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return (0, 0)
    return (
        getattr(usage, "prompt_token_count", 0) or 0,
        getattr(usage, "candidates_token_count", 0) or 0,
    )
