"""SQLite engine and timestamp helpers for the harness state store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

SQLITE_MAGIC = b"SQLite format 3\x00"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""

    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def to_naive_utc(value: datetime) -> datetime:
    """SQLite columns hold naive UTC."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_state_engine(db_path: Path, *, busy_timeout_ms: int) -> Engine:
    """Create the engine for one project's state database.

    Connections are not pooled: the runner thread, job worker threads and a
    separate `jobs` CLI process all open short-lived sessions against the same
    file, and WAL lets the readers proceed while the runner writes.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
            cursor.execute("PRAGMA foreign_keys = ON")
        finally:
            cursor.close()

    return engine


def quarantine_foreign_file(db_path: Path) -> Path | None:
    """Rename a non-empty file without the SQLite header to `<name>.corrupt-<stamp>`.

    Returns the new path, or None when the file is absent, empty or already SQLite.
    """

    if not db_path.exists() or db_path.stat().st_size == 0:
        return None
    with db_path.open("rb") as handle:
        if handle.read(len(SQLITE_MAGIC)) == SQLITE_MAGIC:
            return None
    return move_aside(db_path)


def move_aside(db_path: Path) -> Path:
    """Rename the database and its WAL sidecars to `<name>.corrupt-<stamp>`."""

    suffix = f".corrupt-{utc_now():%Y%m%dT%H%M%S}"
    for sidecar in ("-wal", "-shm"):
        side_path = db_path.with_name(db_path.name + sidecar)
        if side_path.exists():
            side_path.rename(side_path.with_name(f"{db_path.name}{suffix}{sidecar}"))
    moved = db_path.with_name(db_path.name + suffix)
    db_path.rename(moved)
    return moved
