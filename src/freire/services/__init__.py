"""Service layer helpers (usage accounting, settings)."""

from .usage_tracking import InMemoryUsageRecorder, UsageRecord, UsageRecorder, calculate_cost

__all__ = ["InMemoryUsageRecorder", "UsageRecord", "UsageRecorder", "calculate_cost"]
