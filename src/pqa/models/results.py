"""Result models for an automation run.

``PromptResult`` is appended once per queue index; ``RunSummary`` is the
aggregate reported with ``automation-complete`` and persisted alongside the
final results.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class PromptResult:
    """Outcome recorded for one prompt of the queue."""

    index: int
    prompt_text: str
    response_text: str = ""
    success: bool = False
    error: str = ""
    retry_count: int = 0
    automation_id: int = 0
    started_at_ms: int = 0
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processing_time_ms: int = 0

    @property
    def has_response(self) -> bool:
        """True when the prompt succeeded with non-blank content."""
        return self.success and bool(self.response_text.strip())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dictionary."""
        data = asdict(self)
        data["completed_at"] = self.completed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromptResult:
        """Rebuild a result from ``to_dict`` output."""
        values = dict(data)
        completed = values.get("completed_at")
        if isinstance(completed, str):
            values["completed_at"] = datetime.fromisoformat(completed)
        elif completed is None:
            values.pop("completed_at", None)
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class RunSummary:
    """Aggregate metrics over a finished (or stopped) run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    with_responses: int = 0
    total_retries: int = 0
    success_rate: float = 0.0
    response_rate: float = 0.0
    duration_ms: int = 0

    @classmethod
    def from_results(cls, results: list[PromptResult], duration_ms: int = 0) -> RunSummary:
        """Compute the summary for a list of results.

        Rates are percentages rounded to one decimal place; an empty list
        yields zero rates.
        """
        total = len(results)
        successful = sum(1 for r in results if r.success)
        with_responses = sum(1 for r in results if r.has_response)
        return cls(
            total=total,
            successful=successful,
            failed=total - successful,
            with_responses=with_responses,
            total_retries=sum(r.retry_count for r in results),
            success_rate=round(successful / total * 100, 1) if total else 0.0,
            response_rate=round(with_responses / total * 100, 1) if total else 0.0,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)
