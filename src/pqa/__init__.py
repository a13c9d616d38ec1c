"""Prompt Queue Automator — drive a chat web app through a queue of prompts and collect the replies."""

from __future__ import annotations

try:
    from importlib.metadata import version

    __version__ = version("pqa")
except Exception:
    __version__ = "0.0.0"
