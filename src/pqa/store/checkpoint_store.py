"""Checkpoint and final-result persistence with SQLite / in-memory backends.

The controller writes a checkpoint (the full run dict) after every state
change so a restarted process can pick the run up again, and writes the
final results once a run completes or is stopped.

Usage::

    from pqa.store import build_checkpoint_store

    store = build_checkpoint_store()
    store.save_checkpoint("chat-1", run.to_dict())
    data = store.load_checkpoint("chat-1")
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from pqa.models.results import PromptResult, RunSummary
from pqa.store.sql import METADATA, automation_checkpoints, automation_results, build_session_factory, dialect_insert

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Abstract-ish store interface implemented by both backends."""

    def save_checkpoint(self, target_id: str, payload: dict[str, Any]) -> None:
        """Create or replace the checkpoint for *target_id*."""
        raise NotImplementedError

    def load_checkpoint(self, target_id: str) -> dict[str, Any] | None:
        """Return the checkpoint dict or ``None`` if there is none."""
        raise NotImplementedError

    def clear_checkpoint(self, target_id: str) -> None:
        """Remove the checkpoint for *target_id* (no-op when absent)."""
        raise NotImplementedError

    def save_final_results(
        self,
        automation_id: int,
        target_id: str,
        results: list[PromptResult],
        summary: RunSummary,
        *,
        status: str = "complete",
    ) -> None:
        """Persist the results of a finished run.

        Args:
            automation_id: Run identifier.
            target_id: Target the run executed against.
            results: Prompt results in completion order.
            summary: Aggregate metrics.
            status: ``complete`` or ``stopped``.
        """
        raise NotImplementedError

    def load_final_results(self, automation_id: int) -> dict[str, Any] | None:
        """Return ``{automation_id, target_id, status, results, summary, completed_at}`` or ``None``."""
        raise NotImplementedError

    def list_final_results(self, *, target_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        """Newest-first headers (no per-prompt results) of stored runs."""
        raise NotImplementedError

    def latest_final_results(self, target_id: str) -> dict[str, Any] | None:
        """The most recent stored run for *target_id*."""
        rows = self.list_final_results(target_id=target_id, limit=1)
        if not rows:
            return None
        return self.load_final_results(rows[0]["automation_id"])


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory store for tests and throwaway runs."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, dict[str, Any]] = {}
        self._results: dict[int, dict[str, Any]] = {}

    def save_checkpoint(self, target_id: str, payload: dict[str, Any]) -> None:
        self._checkpoints[target_id] = payload

    def load_checkpoint(self, target_id: str) -> dict[str, Any] | None:
        return self._checkpoints.get(target_id)

    def clear_checkpoint(self, target_id: str) -> None:
        self._checkpoints.pop(target_id, None)

    def save_final_results(
        self,
        automation_id: int,
        target_id: str,
        results: list[PromptResult],
        summary: RunSummary,
        *,
        status: str = "complete",
    ) -> None:
        self._results[automation_id] = {
            "automation_id": automation_id,
            "target_id": target_id,
            "status": status,
            "results": [r.to_dict() for r in results],
            "summary": summary.to_dict(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

    def load_final_results(self, automation_id: int) -> dict[str, Any] | None:
        return self._results.get(automation_id)

    def list_final_results(self, *, target_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        rows = [r for r in self._results.values() if target_id is None or r["target_id"] == target_id]
        rows.sort(key=lambda r: r["automation_id"], reverse=True)
        return [_header(r) for r in rows[:limit]]


class SqlCheckpointStore(CheckpointStore):
    """SQLAlchemy-backed store.

    Args:
        db_path: Convenience path for a local SQLite file.  Mutually
            exclusive with *session_factory*.
        session_factory: Pre-configured ``sessionmaker`` (e.g. a shared
            test fixture).
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        session_factory: sessionmaker | None = None,
    ) -> None:
        if session_factory is not None:
            self._session_factory = session_factory
        else:
            self._session_factory = build_session_factory(db_path=db_path)

        # Ensure schema exists (auto-create for SQLite / local dev)
        with self._session_factory() as session:
            METADATA.create_all(session.connection())
            session.commit()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def save_checkpoint(self, target_id: str, payload: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            stmt = dialect_insert(session, automation_checkpoints).values(
                target_id=target_id,
                automation_id=int(payload.get("id", 0)),
                payload=payload,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["target_id"],
                set_={"automation_id": stmt.excluded.automation_id, "payload": stmt.excluded.payload, "updated_at": now},
            )
            session.execute(stmt)
            session.commit()

    def load_checkpoint(self, target_id: str) -> dict[str, Any] | None:
        with self._session_factory() as session:
            row = session.execute(
                sa.select(automation_checkpoints.c.payload).where(automation_checkpoints.c.target_id == target_id)
            ).first()
        return dict(row.payload) if row else None

    def clear_checkpoint(self, target_id: str) -> None:
        with self._session_factory() as session:
            session.execute(sa.delete(automation_checkpoints).where(automation_checkpoints.c.target_id == target_id))
            session.commit()

    # ------------------------------------------------------------------
    # Final results
    # ------------------------------------------------------------------

    def save_final_results(
        self,
        automation_id: int,
        target_id: str,
        results: list[PromptResult],
        summary: RunSummary,
        *,
        status: str = "complete",
    ) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "target_id": target_id,
            "status": status,
            "total": summary.total,
            "successful": summary.successful,
            "failed": summary.failed,
            "results": [r.to_dict() for r in results],
            "summary": summary.to_dict(),
            "completed_at": now,
        }
        with self._session_factory() as session:
            stmt = dialect_insert(session, automation_results).values(automation_id=automation_id, **values)
            stmt = stmt.on_conflict_do_update(index_elements=["automation_id"], set_=values)
            session.execute(stmt)
            session.commit()
        logger.info("Stored %d results for automation %s (%s)", len(results), automation_id, status)

    def load_final_results(self, automation_id: int) -> dict[str, Any] | None:
        with self._session_factory() as session:
            row = session.execute(
                sa.select(automation_results).where(automation_results.c.automation_id == automation_id)
            ).first()
        if row is None:
            return None
        return {
            "automation_id": row.automation_id,
            "target_id": row.target_id,
            "status": row.status,
            "results": list(row.results or []),
            "summary": dict(row.summary or {}),
            "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        }

    def list_final_results(self, *, target_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        query = sa.select(
            automation_results.c.automation_id,
            automation_results.c.target_id,
            automation_results.c.status,
            automation_results.c.total,
            automation_results.c.successful,
            automation_results.c.failed,
            automation_results.c.completed_at,
        ).order_by(automation_results.c.automation_id.desc())
        if target_id is not None:
            query = query.where(automation_results.c.target_id == target_id)
        with self._session_factory() as session:
            rows = session.execute(query.limit(limit)).all()
        return [
            {
                "automation_id": r.automation_id,
                "target_id": r.target_id,
                "status": r.status,
                "total": r.total,
                "successful": r.successful,
                "failed": r.failed,
                "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            }
            for r in rows
        ]


def _header(record: dict[str, Any]) -> dict[str, Any]:
    summary = record.get("summary") or {}
    return {
        "automation_id": record["automation_id"],
        "target_id": record["target_id"],
        "status": record["status"],
        "total": summary.get("total", 0),
        "successful": summary.get("successful", 0),
        "failed": summary.get("failed", 0),
        "completed_at": record.get("completed_at"),
    }
