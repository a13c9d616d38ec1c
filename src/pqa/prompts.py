"""Load prompt queues from files.

Two formats are accepted:

* JSON: an array of ``{"text": ..., "pauseAfter": ...}`` objects (bare
  strings are accepted too).  Entries that are not valid prompts are
  dropped with a warning.
* Plain text: one prompt per line; blank lines and ``#`` comments are
  skipped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pqa.models.run import PromptItem

logger = logging.getLogger(__name__)


def load_prompts(path: str | Path, fmt: str = "auto") -> list[PromptItem]:
    """Read a prompt file.

    Args:
        path: File to read.
        fmt: ``json``, ``text``, or ``auto`` (JSON for ``.json`` files).

    Raises:
        ValueError: If a JSON file does not contain an array.
    """
    path = Path(path)
    raw = path.read_text(encoding="utf-8")
    if fmt == "auto":
        fmt = "json" if path.suffix.lower() == ".json" else "text"
    prompts = parse_prompt_json(raw) if fmt == "json" else parse_prompt_lines(raw)
    logger.info("Loaded %d prompts from %s", len(prompts), path)
    return prompts


def parse_prompt_json(raw: str) -> list[PromptItem]:
    """Parse the JSON import/export format."""
    data = json.loads(raw)
    if isinstance(data, dict) and isinstance(data.get("prompts"), list):
        data = data["prompts"]
    if not isinstance(data, list):
        raise ValueError("Prompt JSON must be an array of prompt objects")

    prompts: list[PromptItem] = []
    for position, item in enumerate(data):
        entry: Any = {"text": item} if isinstance(item, str) else item
        try:
            prompts.append(PromptItem.model_validate(entry))
        except ValidationError:
            logger.warning("Skipping invalid prompt entry at position %d", position)
    return prompts


def parse_prompt_lines(raw: str) -> list[PromptItem]:
    """Parse one prompt per line."""
    prompts = []
    for line in raw.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        prompts.append(PromptItem(text=line))
    return prompts
