"""SQLite state registry for DevHost."""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from devhost.errors import NameConflict

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Projects table
CREATE TABLE IF NOT EXISTS projects (
    name TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    state TEXT NOT NULL,
    path TEXT NOT NULL,
    source TEXT,
    server_name TEXT,
    virtual_host_path TEXT,
    domain TEXT,
    tls_state TEXT NOT NULL DEFAULT 'none',
    tunnel_rule_id TEXT,
    leftover_artifacts TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Database bindings (no passwords: those live in the project config file)
CREATE TABLE IF NOT EXISTS database_bindings (
    project TEXT NOT NULL,
    engine TEXT NOT NULL,
    schema_name TEXT NOT NULL,
    username TEXT NOT NULL,
    grant_scope TEXT NOT NULL DEFAULT 'schema',
    created_at TEXT NOT NULL,
    PRIMARY KEY (project, engine),
    FOREIGN KEY (project) REFERENCES projects(name) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_projects_state ON projects(state);
"""

# Columns callers may update through update_project
UPDATABLE_COLUMNS = (
    "state",
    "server_name",
    "virtual_host_path",
    "domain",
    "tls_state",
    "tunnel_rule_id",
    "leftover_artifacts",
)


class Database:
    """SQLite database manager for DevHost."""

    def __init__(self, db_path: Path) -> None:
        """Initialize database connection."""
        self.db_path = db_path
        self._ensure_parent_dir()

    def _ensure_parent_dir(self) -> None:
        """Ensure the parent directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with automatic cleanup."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with transaction support."""
        with self.connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.utcnow().isoformat()),
                )

    # Project operations
    def insert_project(
        self,
        name: str,
        kind: str,
        state: str,
        path: str,
        source: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """Reserve a project name. Raises NameConflict if it is taken."""
        now = datetime.utcnow().isoformat()
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO projects (
                        name, kind, state, path, source, created_by, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (name, kind, state, path, source, created_by, now, now),
                )
        except sqlite3.IntegrityError:
            existing = self.get_project(name)
            raise NameConflict(name, existing["state"] if existing else "unknown")
        return self.get_project(name)  # type: ignore

    def get_project(self, name: str) -> dict[str, Any] | None:
        """Get a project by name."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM projects WHERE name = ?", (name,))
            row = cursor.fetchone()
            return self._project_row(row) if row else None

    def list_projects(self) -> list[dict[str, Any]]:
        """List all projects."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM projects ORDER BY name")
            return [self._project_row(row) for row in cursor.fetchall()]

    def update_project(self, name: str, **values: Any) -> None:
        """Update selected project columns and bump updated_at."""
        unknown = set(values) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if "leftover_artifacts" in values and values["leftover_artifacts"] is not None:
            values["leftover_artifacts"] = json.dumps(values["leftover_artifacts"])

        assignments = ", ".join(f"{column} = ?" for column in values)
        params = [*values.values(), datetime.utcnow().isoformat(), name]
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE projects SET {assignments}, updated_at = ? WHERE name = ?",
                params,
            )

    def delete_project(self, name: str) -> bool:
        """Delete a project. Returns True if deleted."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM projects WHERE name = ?", (name,))
            return cursor.rowcount > 0

    def _project_row(self, row: sqlite3.Row) -> dict[str, Any]:
        project = dict(row)
        leftovers = project.get("leftover_artifacts")
        project["leftover_artifacts"] = json.loads(leftovers) if leftovers else []
        return project

    # Database binding operations
    def add_database_binding(
        self,
        project: str,
        engine: str,
        schema_name: str,
        username: str,
        grant_scope: str = "schema",
    ) -> None:
        """Record a database binding for a project (idempotent)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO database_bindings (
                    project, engine, schema_name, username, grant_scope, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project, engine, schema_name, username, grant_scope, datetime.utcnow().isoformat()),
            )

    def list_database_bindings(self, project: str) -> list[dict[str, Any]]:
        """List database bindings of a project."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM database_bindings WHERE project = ? ORDER BY engine",
                (project,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def delete_database_binding(self, project: str, engine: str) -> bool:
        """Forget a database binding. Returns True if deleted."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM database_bindings WHERE project = ? AND engine = ?",
                (project, engine),
            )
            return cursor.rowcount > 0


def open_database(db_path: Path) -> Database:
    """Open and initialize the registry at ``db_path``."""
    db = Database(db_path)
    db.initialize()
    return db
