"""Engine, sessions and transactions for the SlabWorks ledger."""
from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from sqlalchemy.engine import URL, make_url
from sqlmodel import Session, SQLModel, create_engine

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# columns added after the first release; patched into existing SQLite files
REMNANT_LATE_COLUMNS: Dict[str, str] = {
    "consumed_by_withdrawal_id": "INTEGER REFERENCES withdrawals(id)",
    "used_at": "DATETIME",
    "split_from_remnant_id": "INTEGER REFERENCES remnants(id)",
}


def data_dir() -> Path:
    configured = os.environ.get("SLABWORKS_DATA_DIR")
    if not configured:
        return PROJECT_ROOT / "data"
    path = Path(configured)
    return path if path.is_absolute() else PROJECT_ROOT / path


def default_database_url() -> str:
    """``DATABASE_URL`` when set, otherwise a SQLite file in the data directory."""
    configured = os.environ.get("DATABASE_URL")
    if configured:
        return configured
    db_file = (data_dir() / os.environ.get("SLABWORKS_DB_FILENAME", "slabworks.db")).resolve()
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_file}"


def _connect_args(url: URL, schema: Optional[str]) -> dict:
    if url.get_backend_name() == "sqlite":
        return {"check_same_thread": False}
    if schema:
        # hosted Postgres URLs carry ?schema=, which psycopg2 rejects
        return {"options": f"-c search_path={schema}"}
    return {}


def create_db_engine(database_url: Optional[str] = None):
    url = make_url(database_url or default_database_url())
    schema = url.query.get("schema")
    if isinstance(schema, tuple):
        schema = schema[0]
    if schema is not None:
        url = url.difference_update_query(["schema"])
    return create_engine(url, connect_args=_connect_args(url, schema))


engine = create_db_engine()


def init_db(target_engine=None) -> None:
    """Create missing tables and patch columns older SQLite files lack."""
    target_engine = target_engine or engine
    SQLModel.metadata.create_all(target_engine)
    _ensure_remnant_columns(target_engine)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def _ensure_remnant_columns(target_engine) -> None:
    if target_engine.url.get_backend_name() != "sqlite":
        return
    with target_engine.begin() as conn:
        present = {row[1] for row in conn.exec_driver_sql("PRAGMA table_info(remnants)").fetchall()}
        for column, ddl in REMNANT_LATE_COLUMNS.items():
            if column not in present:
                conn.exec_driver_sql(f"ALTER TABLE remnants ADD COLUMN {column} {ddl}")
