from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from .errors import (
    DuplicateCommand,
    DuplicateName,
    DuplicateSibling,
    InvalidReference,
    NotFound,
    ParentVendorMismatch,
    UnknownVendor,
    ValidationFailed,
)
from .migrations import run_migrations
from .tag_paths import build_forest
from .types import Command, Platform, Tag, Vendor
from .utils import clean_text, collapse_whitespace, ensure_dir, now_iso

logger = logging.getLogger(__name__)

COMMAND_TEXT_FIELDS = ("description", "example", "version")
COMMAND_UPDATABLE_FIELDS = ("command", "description", "example", "version", "platform_id", "tag_id")

_COMMAND_SELECT = """
    SELECT c.command_id, c.command, c.description, c.example, c.version,
           c.vendor_id, c.platform_id, c.tag_id,
           v.name AS vendor_name, p.name AS platform_name, t.name AS tag_name
    FROM commands c
    JOIN vendors v ON v.vendor_id = c.vendor_id
    LEFT JOIN platforms p ON p.platform_id = c.platform_id
    LEFT JOIN tags t ON t.tag_id = c.tag_id
"""


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE" in str(exc).upper()


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _vendor_from_row(row: sqlite3.Row) -> Vendor:
    return Vendor(id=int(row["vendor_id"]), name=str(row["name"]))


def _platform_from_row(row: sqlite3.Row) -> Platform:
    return Platform(
        id=int(row["platform_id"]), name=str(row["name"]), vendor_id=int(row["vendor_id"])
    )


def _tag_from_row(row: sqlite3.Row) -> Tag:
    parent = row["parent_id"]
    return Tag(
        id=int(row["tag_id"]),
        name=str(row["name"]),
        vendor_id=int(row["vendor_id"]),
        parent_id=int(parent) if parent is not None else None,
    )


def _command_from_row(row: sqlite3.Row) -> Command:
    return Command(
        id=int(row["command_id"]),
        command=str(row["command"]),
        description=row["description"],
        example=row["example"],
        version=row["version"],
        vendor_id=int(row["vendor_id"]),
        platform_id=row["platform_id"],
        tag_id=row["tag_id"],
        vendor_name=str(row["vendor_name"]),
        platform_name=row["platform_name"],
        tag_name=row["tag_name"],
    )


class Storage:
    """SQLite-backed catalog of vendors, platforms, tags and commands.

    Every method takes an optional open connection. Without one the method runs
    in its own short transaction; with one it joins the caller's transaction, so
    several operations can commit or roll back together.
    """

    def __init__(self, db_path: Path, *, initialize: bool = True) -> None:
        ensure_dir(db_path.parent)
        self.db_path = db_path
        if initialize:
            with self.connection() as conn:
                run_migrations(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the write lock from the first statement until commit or rollback."""

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def integrity_check(self, full: bool = False) -> tuple[bool, str]:
        pragma = "integrity_check" if full else "quick_check"
        with self.connection() as conn:
            row = conn.execute(f"PRAGMA {pragma}").fetchone()
        msg = str(row[0]) if row else "unknown"
        return msg.lower() == "ok", msg

    def backup_to(self, dest_path: Path) -> None:
        ensure_dir(dest_path.parent)
        src = self._connect()
        try:
            dest = sqlite3.connect(dest_path)
            try:
                src.backup(dest)
                dest.commit()
            finally:
                dest.close()
        finally:
            src.close()

    # Vendors

    def create_vendor(self, name: str, conn: sqlite3.Connection | None = None) -> Vendor:
        if conn is None:
            with self.connection() as temp:
                return self.create_vendor(name, temp)
        cleaned = clean_text(name)
        if not cleaned:
            raise ValidationFailed({"name": ["This field may not be blank."]})
        try:
            cur = conn.execute(
                "INSERT INTO vendors (name, created_at) VALUES (?, ?)",
                (cleaned, now_iso()),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateName(f"Vendor '{cleaned}' already exists.", "name") from exc
            raise
        logger.info("created vendor %s (%s)", cleaned, cur.lastrowid)
        return Vendor(id=int(cur.lastrowid), name=cleaned)

    def get_vendor(
        self, vendor_id: int, conn: sqlite3.Connection | None = None
    ) -> Vendor | None:
        if conn is None:
            with self.connection() as temp:
                return self.get_vendor(vendor_id, temp)
        row = conn.execute(
            "SELECT vendor_id, name FROM vendors WHERE vendor_id = ?", (int(vendor_id),)
        ).fetchone()
        return _vendor_from_row(row) if row else None

    def fetch_vendor_by_name(
        self, name: str, conn: sqlite3.Connection | None = None
    ) -> Vendor | None:
        if conn is None:
            with self.connection() as temp:
                return self.fetch_vendor_by_name(name, temp)
        row = conn.execute(
            "SELECT vendor_id, name FROM vendors WHERE name = ?", (str(name).strip(),)
        ).fetchone()
        return _vendor_from_row(row) if row else None

    def list_vendors(self, conn: sqlite3.Connection | None = None) -> list[Vendor]:
        if conn is None:
            with self.connection() as temp:
                return self.list_vendors(temp)
        cur = conn.execute("SELECT vendor_id, name FROM vendors ORDER BY name ASC, vendor_id ASC")
        return [_vendor_from_row(row) for row in cur.fetchall()]

    def _require_vendor(
        self, vendor_id: Any, conn: sqlite3.Connection, field: str = "vendor"
    ) -> Vendor:
        try:
            key = int(vendor_id)
        except (TypeError, ValueError):
            raise UnknownVendor(vendor_id, field) from None
        vendor = self.get_vendor(key, conn)
        if vendor is None:
            raise UnknownVendor(vendor_id, field)
        return vendor

    # Platforms

    def create_platform(
        self, vendor_id: int, name: str, conn: sqlite3.Connection | None = None
    ) -> Platform:
        if conn is None:
            with self.connection() as temp:
                return self.create_platform(vendor_id, name, temp)
        cleaned = clean_text(name)
        if not cleaned:
            raise ValidationFailed({"name": ["This field may not be blank."]})
        vendor = self._require_vendor(vendor_id, conn)
        try:
            cur = conn.execute(
                "INSERT INTO platforms (vendor_id, name, created_at) VALUES (?, ?, ?)",
                (vendor.id, cleaned, now_iso()),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateName(
                    f"Platform '{cleaned}' already exists for vendor '{vendor.name}'.", "name"
                ) from exc
            raise
        return Platform(id=int(cur.lastrowid), name=cleaned, vendor_id=vendor.id)

    def get_platform(
        self, platform_id: int, conn: sqlite3.Connection | None = None
    ) -> Platform | None:
        if conn is None:
            with self.connection() as temp:
                return self.get_platform(platform_id, temp)
        row = conn.execute(
            "SELECT platform_id, vendor_id, name FROM platforms WHERE platform_id = ?",
            (int(platform_id),),
        ).fetchone()
        return _platform_from_row(row) if row else None

    def list_platforms(
        self, vendor_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> list[Platform]:
        if conn is None:
            with self.connection() as temp:
                return self.list_platforms(vendor_id, temp)
        if vendor_id is None:
            cur = conn.execute(
                "SELECT platform_id, vendor_id, name FROM platforms ORDER BY name ASC, platform_id ASC"
            )
        else:
            cur = conn.execute(
                """
                SELECT platform_id, vendor_id, name FROM platforms
                WHERE vendor_id = ?
                ORDER BY name ASC, platform_id ASC
                """,
                (int(vendor_id),),
            )
        return [_platform_from_row(row) for row in cur.fetchall()]

    # Tags

    def create_tag(
        self,
        vendor_id: int,
        name: str,
        parent_id: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Tag:
        if conn is None:
            with self.connection() as temp:
                return self.create_tag(vendor_id, name, parent_id, temp)
        cleaned = collapse_whitespace(str(name or ""))
        if not cleaned:
            raise ValidationFailed({"name": ["This field may not be blank."]})
        vendor = self._require_vendor(vendor_id, conn)
        parent: Tag | None = None
        if parent_id is not None:
            parent = self.get_tag(int(parent_id), conn)
            if parent is None:
                raise InvalidReference(f"Tag {parent_id} does not exist.", "parent")
            if parent.vendor_id != vendor.id:
                raise ParentVendorMismatch(
                    f"Parent tag '{parent.name}' belongs to another vendor.", "parent"
                )
        try:
            cur = conn.execute(
                "INSERT INTO tags (vendor_id, parent_id, name, created_at) VALUES (?, ?, ?, ?)",
                (vendor.id, parent.id if parent else None, cleaned, now_iso()),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                where = f"under '{parent.name}'" if parent else "at the vendor root"
                raise DuplicateSibling(f"Tag '{cleaned}' already exists {where}.", "name") from exc
            raise
        return Tag(
            id=int(cur.lastrowid),
            name=cleaned,
            vendor_id=vendor.id,
            parent_id=parent.id if parent else None,
        )

    def get_tag(self, tag_id: int, conn: sqlite3.Connection | None = None) -> Tag | None:
        if conn is None:
            with self.connection() as temp:
                return self.get_tag(tag_id, temp)
        row = conn.execute(
            "SELECT tag_id, vendor_id, parent_id, name FROM tags WHERE tag_id = ?",
            (int(tag_id),),
        ).fetchone()
        return _tag_from_row(row) if row else None

    def find_sibling_tag(
        self,
        vendor_id: int,
        parent_id: int | None,
        name: str,
        conn: sqlite3.Connection | None = None,
    ) -> Tag | None:
        if conn is None:
            with self.connection() as temp:
                return self.find_sibling_tag(vendor_id, parent_id, name, temp)
        row = conn.execute(
            """
            SELECT tag_id, vendor_id, parent_id, name FROM tags
            WHERE vendor_id = ? AND COALESCE(parent_id, 0) = ? AND name = ?
            """,
            (int(vendor_id), int(parent_id) if parent_id is not None else 0, collapse_whitespace(name)),
        ).fetchone()
        return _tag_from_row(row) if row else None

    def list_tags(
        self, vendor_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> list[Tag]:
        if conn is None:
            with self.connection() as temp:
                return self.list_tags(vendor_id, temp)
        if vendor_id is None:
            cur = conn.execute(
                "SELECT tag_id, vendor_id, parent_id, name FROM tags ORDER BY tag_id ASC"
            )
        else:
            cur = conn.execute(
                """
                SELECT tag_id, vendor_id, parent_id, name FROM tags
                WHERE vendor_id = ?
                ORDER BY tag_id ASC
                """,
                (int(vendor_id),),
            )
        return [_tag_from_row(row) for row in cur.fetchall()]

    def list_tag_forest(
        self, vendor_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> list[dict[str, Any]]:
        return build_forest(self.list_tags(vendor_id, conn))

    def tag_ancestry(self, tag_id: int, conn: sqlite3.Connection | None = None) -> list[Tag]:
        """Return the chain from `tag_id` up to its root, nearest first."""

        if conn is None:
            with self.connection() as temp:
                return self.tag_ancestry(tag_id, temp)
        chain: list[Tag] = []
        seen: set[int] = set()
        current = self.get_tag(tag_id, conn)
        while current is not None:
            if current.id in seen:
                raise RuntimeError(f"Tag cycle detected at tag {current.id}")
            seen.add(current.id)
            chain.append(current)
            if current.parent_id is None:
                break
            current = self.get_tag(current.parent_id, conn)
        return chain

    def count_tags(self, vendor_id: int | None = None, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            with self.connection() as temp:
                return self.count_tags(vendor_id, temp)
        if vendor_id is None:
            row = conn.execute("SELECT COUNT(*) FROM tags").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM tags WHERE vendor_id = ?", (int(vendor_id),)).fetchone()
        return int(row[0])

    # Commands

    def _check_command_refs(
        self, vendor_id: int, fields: Mapping[str, Any], conn: sqlite3.Connection
    ) -> None:
        platform_id = fields.get("platform_id")
        if platform_id is not None:
            platform = self.get_platform(int(platform_id), conn)
            if platform is None:
                raise InvalidReference(f"Platform {platform_id} does not exist.", "platform")
            if platform.vendor_id != vendor_id:
                raise InvalidReference(
                    f"Platform '{platform.name}' belongs to another vendor.", "platform"
                )
        tag_id = fields.get("tag_id")
        if tag_id is not None:
            tag = self.get_tag(int(tag_id), conn)
            if tag is None:
                raise InvalidReference(f"Tag {tag_id} does not exist.", "tag")
            if tag.vendor_id != vendor_id:
                raise InvalidReference(f"Tag '{tag.name}' belongs to another vendor.", "tag")

    def create_command(
        self, fields: Mapping[str, Any], conn: sqlite3.Connection | None = None
    ) -> Command:
        if conn is None:
            with self.connection() as temp:
                return self.create_command(fields, temp)
        text = clean_text(fields.get("command"))
        if not text:
            raise ValidationFailed({"command": ["This field may not be blank."]})
        vendor = self._require_vendor(fields.get("vendor_id"), conn)
        self._check_command_refs(vendor.id, fields, conn)
        stamp = now_iso()
        try:
            cur = conn.execute(
                """
                INSERT INTO commands
                (vendor_id, command, description, example, version, platform_id, tag_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    vendor.id,
                    text,
                    clean_text(fields.get("description")),
                    clean_text(fields.get("example")),
                    clean_text(fields.get("version")),
                    fields.get("platform_id"),
                    fields.get("tag_id"),
                    stamp,
                    stamp,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateCommand(
                    f"Command '{text}' already exists for vendor '{vendor.name}'.", "command"
                ) from exc
            raise
        created = self.get_command(int(cur.lastrowid), conn)
        assert created is not None
        return created

    def update_command(
        self,
        command_id: int,
        fields: Mapping[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> Command:
        """Overwrite the given fields; keys absent from `fields` are left alone."""

        if conn is None:
            with self.connection() as temp:
                return self.update_command(command_id, fields, temp)
        existing = self.get_command(command_id, conn)
        if existing is None:
            raise NotFound(f"Command {command_id} does not exist.")
        changes: dict[str, Any] = {}
        for key in COMMAND_UPDATABLE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if key == "command":
                value = clean_text(value)
                if not value:
                    raise ValidationFailed({"command": ["This field may not be blank."]})
            elif key in COMMAND_TEXT_FIELDS:
                value = clean_text(value)
            changes[key] = value
        self._check_command_refs(existing.vendor_id, changes, conn)
        if changes:
            assignments = ", ".join(f"{key} = ?" for key in changes)
            try:
                conn.execute(
                    f"UPDATE commands SET {assignments}, updated_at = ? WHERE command_id = ?",
                    (*changes.values(), now_iso(), existing.id),
                )
            except sqlite3.IntegrityError as exc:
                if _is_unique_violation(exc):
                    raise DuplicateCommand(
                        f"Command '{changes.get('command')}' already exists for vendor "
                        f"'{existing.vendor_name}'.",
                        "command",
                    ) from exc
                raise
        updated = self.get_command(existing.id, conn)
        assert updated is not None
        return updated

    def get_command(
        self, command_id: int, conn: sqlite3.Connection | None = None
    ) -> Command | None:
        if conn is None:
            with self.connection() as temp:
                return self.get_command(command_id, temp)
        row = conn.execute(
            _COMMAND_SELECT + " WHERE c.command_id = ?", (int(command_id),)
        ).fetchone()
        return _command_from_row(row) if row else None

    def find_command(
        self, vendor_id: int, text: str, conn: sqlite3.Connection | None = None
    ) -> Command | None:
        if conn is None:
            with self.connection() as temp:
                return self.find_command(vendor_id, text, temp)
        row = conn.execute(
            _COMMAND_SELECT + " WHERE c.vendor_id = ? AND c.command = ?",
            (int(vendor_id), str(text).strip()),
        ).fetchone()
        return _command_from_row(row) if row else None

    def count_commands(
        self, vendor_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> int:
        if conn is None:
            with self.connection() as temp:
                return self.count_commands(vendor_id, temp)
        if vendor_id is None:
            row = conn.execute("SELECT COUNT(*) FROM commands").fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) FROM commands WHERE vendor_id = ?", (int(vendor_id),)
            ).fetchone()
        return int(row[0])

    def query_commands(
        self,
        filters: Mapping[str, Any],
        limit: int | None = None,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> tuple[int, list[Command]]:
        """Return (total matches, one window of matches ordered by id)."""

        if conn is None:
            with self.connection() as temp:
                return self.query_commands(filters, limit, offset, temp)
        clauses: list[str] = []
        params: list[Any] = []
        search = clean_text(filters.get("search"))
        if search:
            clauses.append("c.command LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(search))
        exact = (
            ("vendor__name", "v.name"),
            ("platform__name", "p.name"),
            ("tag__name", "t.name"),
            ("version", "c.version"),
        )
        for key, column in exact:
            value = clean_text(filters.get(key))
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if filters.get("vendor_id") is not None:
            clauses.append("c.vendor_id = ?")
            params.append(int(filters["vendor_id"]))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        count_sql = (
            "SELECT COUNT(*) FROM commands c"
            " JOIN vendors v ON v.vendor_id = c.vendor_id"
            " LEFT JOIN platforms p ON p.platform_id = c.platform_id"
            " LEFT JOIN tags t ON t.tag_id = c.tag_id" + where
        )
        total = int(conn.execute(count_sql, params).fetchone()[0])
        sql = _COMMAND_SELECT + where + " ORDER BY c.command_id ASC"
        window: list[Any] = list(params)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            window.extend([int(limit), int(offset)])
        rows = conn.execute(sql, window).fetchall()
        return total, [_command_from_row(row) for row in rows]

    # Users and tokens

    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str | None,
        is_admin: bool,
        created_at: str,
    ) -> int:
        normalized = email.strip().lower()
        with self.connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO users (email, name, password_hash, is_admin, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (normalized, name, password_hash, 1 if is_admin else 0, created_at),
            )
            return int(cur.lastrowid)

    def fetch_user_by_email(self, email: str) -> dict[str, Any] | None:
        normalized = email.strip().lower()
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, email, name, password_hash, is_admin, created_at, disabled_at
                FROM users
                WHERE email = ?
                """,
                (normalized,),
            ).fetchone()
            return dict(row) if row else None

    def create_token(
        self, user_id: int, kind: str, token_hash: str, created_at: str, expires_at: str
    ) -> int:
        with self.connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO auth_tokens (user_id, kind, token_hash, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(user_id), kind, token_hash, created_at, expires_at),
            )
            return int(cur.lastrowid)

    def fetch_token_by_hash(self, token_hash: str, kind: str) -> dict[str, Any] | None:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT t.token_id, t.user_id, t.kind, t.expires_at, t.revoked_at,
                       u.email, u.name, u.is_admin, u.disabled_at
                FROM auth_tokens t
                JOIN users u ON u.user_id = t.user_id
                WHERE t.token_hash = ? AND t.kind = ?
                """,
                (token_hash, kind),
            ).fetchone()
            return dict(row) if row else None

    def revoke_user_tokens(self, user_id: int, revoked_at: str) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE auth_tokens SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
                (revoked_at, int(user_id)),
            )

