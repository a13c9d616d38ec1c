"""SQLAlchemy table definitions for checkpoint and result persistence.

Both tables share ``METADATA`` so ``create_all`` sets up a fresh SQLite
file in one call.  Payload columns are JSON (JSONB on PostgreSQL).
"""

from __future__ import annotations

from pathlib import Path

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
TIMESTAMP = sa.DateTime(timezone=True)

METADATA = sa.MetaData()

# ---------------------------------------------------------------------------
# automation_checkpoints: latest run state, one row per target
# ---------------------------------------------------------------------------

automation_checkpoints = sa.Table(
    "automation_checkpoints",
    METADATA,
    sa.Column("target_id", sa.String(length=128), primary_key=True),
    sa.Column("automation_id", sa.BigInteger(), nullable=False),
    sa.Column("payload", JSON_TYPE, nullable=False),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
)

# ---------------------------------------------------------------------------
# automation_results: final results of finished or stopped runs
# ---------------------------------------------------------------------------

automation_results = sa.Table(
    "automation_results",
    METADATA,
    sa.Column("automation_id", sa.BigInteger(), primary_key=True),
    sa.Column("target_id", sa.String(length=128), nullable=False),
    sa.Column("status", sa.Text(), nullable=False, server_default="complete"),
    sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("successful", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("results", JSON_TYPE, nullable=False),
    sa.Column("summary", JSON_TYPE, nullable=True),
    sa.Column("completed_at", TIMESTAMP, nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
)
sa.Index("idx_automation_results_target_id", automation_results.c.target_id)


def build_engine(*, db_path: str | Path | None = None, echo: bool = False) -> sa.Engine:
    """Create a SQLite engine for the PQA database.

    Args:
        db_path: Override path for the SQLite file; defaults to
            ``settings.storage.sqlite_path``.
        echo: When True, log all SQL statements.
    """
    if db_path is None:
        from pqa.settings import get_settings

        db_path = get_settings().storage.sqlite_path

    resolved = Path(db_path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    url = f"sqlite:///{resolved.as_posix()}"
    return sa.create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def build_session_factory(*, db_path: str | Path | None = None) -> sessionmaker:
    """Return a ``sessionmaker`` bound to the PQA engine."""
    engine = build_engine(db_path=db_path)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def dialect_insert(session: Session, table: sa.Table) -> sa.Insert:
    """Return a dialect-aware INSERT that supports ``on_conflict_do_update``."""
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(table)
