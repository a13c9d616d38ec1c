"""Automation run state owned by the queue controller.

The run is a plain dataclass so the controller can mutate it directly and
the checkpoint store can persist it as JSON via ``to_dict``/``from_dict``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pqa.models.results import PromptResult


def now_ms() -> int:
    """Wall-clock milliseconds since the epoch."""
    return int(time.time() * 1000)


class PromptItem(BaseModel):
    """A single queued prompt.

    ``pause_after`` asks the controller to pause the run once this prompt
    has completed successfully.
    """

    text: str
    pause_after: bool = Field(default=False, alias="pauseAfter")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("text")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt text must not be empty")
        return v


@dataclass
class AutomationRun:
    """Mutable state of one run over the prompt queue."""

    id: int
    target_id: str
    prompts: list[PromptItem]
    current_index: int = 0
    is_running: bool = True
    is_paused: bool = False
    is_processing_prompt: bool = False
    retry_attempts: dict[int, int] = field(default_factory=dict)
    completed_indices: set[int] = field(default_factory=set)
    results: list[PromptResult] = field(default_factory=list)
    started_at_ms: int = field(default_factory=now_ms)
    attempt_started_ms: int = 0

    @property
    def total(self) -> int:
        """Number of prompts in the queue."""
        return len(self.prompts)

    @property
    def is_exhausted(self) -> bool:
        """True once every queue position has been consumed."""
        return self.current_index >= len(self.prompts)

    @property
    def current_prompt(self) -> PromptItem | None:
        """The prompt at ``current_index``, or None when exhausted."""
        if self.is_exhausted:
            return None
        return self.prompts[self.current_index]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a checkpoint dictionary."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "prompts": [p.model_dump(by_alias=True) for p in self.prompts],
            "current_index": self.current_index,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "is_processing_prompt": self.is_processing_prompt,
            "retry_attempts": {str(k): v for k, v in self.retry_attempts.items()},
            "completed_indices": sorted(self.completed_indices),
            "results": [r.to_dict() for r in self.results],
            "started_at_ms": self.started_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutomationRun:
        """Rebuild a run from a checkpoint dictionary.

        Restored runs are never mid-flight: the agent that held the in-flight
        prompt is gone, so ``is_processing_prompt`` is reset.
        """
        return cls(
            id=int(data["id"]),
            target_id=str(data.get("target_id", "")),
            prompts=[PromptItem.model_validate(p) for p in data.get("prompts", [])],
            current_index=int(data.get("current_index", 0)),
            is_running=bool(data.get("is_running", True)),
            is_paused=bool(data.get("is_paused", False)),
            is_processing_prompt=False,
            retry_attempts={int(k): int(v) for k, v in (data.get("retry_attempts") or {}).items()},
            completed_indices={int(i) for i in data.get("completed_indices", [])},
            results=[PromptResult.from_dict(r) for r in data.get("results", [])],
            started_at_ms=int(data.get("started_at_ms", data["id"])),
        )
