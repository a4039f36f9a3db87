from __future__ import annotations

import sqlite3
from typing import Callable

from .utils import now_iso

Migration = Callable[[sqlite3.Connection], None]


def _ensure_schema_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def migration_1(conn: sqlite3.Connection) -> None:
    _ensure_schema_migrations(conn)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vendors (
            vendor_id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS platforms (
            platform_id INTEGER PRIMARY KEY AUTOINCREMENT,
            vendor_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (vendor_id, name),
            FOREIGN KEY (vendor_id) REFERENCES vendors(vendor_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tags (
            tag_id INTEGER PRIMARY KEY AUTOINCREMENT,
            vendor_id INTEGER NOT NULL,
            parent_id INTEGER,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (vendor_id) REFERENCES vendors(vendor_id),
            FOREIGN KEY (parent_id) REFERENCES tags(tag_id)
        )
        """
    )
    # NULL parents are distinct under a plain UNIQUE constraint; root tags share parent 0 here.
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_tags_sibling_name
        ON tags(vendor_id, COALESCE(parent_id, 0), name)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tags_parent ON tags(parent_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS commands (
            command_id INTEGER PRIMARY KEY AUTOINCREMENT,
            vendor_id INTEGER NOT NULL,
            command TEXT NOT NULL,
            description TEXT,
            example TEXT,
            version TEXT,
            platform_id INTEGER,
            tag_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (vendor_id, command),
            FOREIGN KEY (vendor_id) REFERENCES vendors(vendor_id),
            FOREIGN KEY (platform_id) REFERENCES platforms(platform_id),
            FOREIGN KEY (tag_id) REFERENCES tags(tag_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_commands_tag ON commands(tag_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_commands_platform ON commands(platform_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_commands_version ON commands(version)")


def migration_2(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            user_id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            password_hash TEXT NOT NULL,
            is_admin INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            disabled_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS auth_tokens (
            token_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            kind TEXT NOT NULL,
            token_hash TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            revoked_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users(user_id)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id, kind)"
    )


MIGRATIONS: list[Migration] = [
    migration_1,
    migration_2,
]


def run_migrations(conn: sqlite3.Connection) -> None:
    _ensure_schema_migrations(conn)
    cur = conn.execute("PRAGMA user_version")
    current = int(cur.fetchone()[0])
    for version, migration in enumerate(MIGRATIONS, start=1):
        if version <= current:
            continue
        migration(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, now_iso()),
        )
        conn.execute(f"PRAGMA user_version = {version}")
