"""PQA Store — SQL schema, engine helpers, and the checkpoint store."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pqa.store.checkpoint_store import CheckpointStore


def build_checkpoint_store(db_path: str | Path | None = None) -> "CheckpointStore":
    """Factory: return a ``CheckpointStore`` honouring PQA settings.

    ``storage.backend = "memory"`` yields a process-local store; anything
    else uses SQLite at *db_path* or ``storage.sqlite_path``.

    Args:
        db_path: Optional override for the SQLite file path.

    Returns:
        A configured :class:`CheckpointStore` instance.
    """
    from pqa.settings import get_settings
    from pqa.store.checkpoint_store import InMemoryCheckpointStore, SqlCheckpointStore

    backend = get_settings().storage.backend
    if backend == "memory" and db_path is None:
        return InMemoryCheckpointStore()
    return SqlCheckpointStore(db_path=db_path)
