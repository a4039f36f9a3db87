"""Batch ingestion of a command sheet into the catalog.

One call to `ingest` is one transaction: tags materialised for earlier rows are
visible to later rows, and any storage failure rolls back every row.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any

from .csv_rows import parse_sheet
from .errors import (
    CatalogError,
    DuplicateCommand,
    IngestFailed,
    InvalidReference,
    ParentVendorMismatch,
    UnknownVendor,
    ValidationFailed,
)
from .report import IngestReport, validate_report
from .storage import Storage
from .tag_paths import resolve_path, split_tag_path
from .types import (
    NO_MAIN_TAG,
    REASON_ALREADY_EXISTS,
    REASON_DUPLICATE_IN_UPLOAD,
    STATUS_CREATED,
    STATUS_CREATED_FROM_COMMAND_TAG,
    STATUS_CREATED_MAIN_TAG,
    STATUS_FAILED,
    RowError,
    RowRecord,
    Tag,
    Vendor,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Anchor:
    tag_id: int | None
    name: str | None


def _require_vendor(storage: Storage, vendor_id: Any, conn: sqlite3.Connection) -> Vendor:
    try:
        vendor = storage.get_vendor(int(vendor_id), conn)
    except (TypeError, ValueError):
        vendor = None
    if vendor is None:
        raise UnknownVendor(vendor_id, "vendor")
    return vendor


def _require_main_tag(
    storage: Storage, vendor: Vendor, main_tag_id: Any, conn: sqlite3.Connection
) -> Tag:
    try:
        tag = storage.get_tag(int(main_tag_id), conn)
    except (TypeError, ValueError):
        tag = None
    if tag is None:
        raise InvalidReference(f"Tag {main_tag_id} does not exist.", "main_tag")
    if tag.vendor_id != vendor.id:
        raise ParentVendorMismatch(
            f"Main tag '{tag.name}' does not belong to vendor '{vendor.name}'.", "main_tag"
        )
    return tag


class IngestCoordinator:
    def __init__(self, storage: Storage, conn: sqlite3.Connection, vendor: Vendor, override: bool):
        self.storage = storage
        self.conn = conn
        self.vendor = vendor
        self.override = override
        self.anchor = _Anchor(None, None)
        self.report = IngestReport(vendor_name=vendor.name)
        self._seen: set[str] = set()

    def use_main_tag(self, tag: Tag) -> None:
        self.anchor = _Anchor(tag.id, tag.name)
        self.report.main_tag_name = tag.name

    def create_main_tag(self, path: str) -> None:
        segments = split_tag_path(path)
        if not segments:
            raise ValidationFailed({"main_tag_name": ["This field may not be blank."]})
        resolved = resolve_path(self.storage, self.vendor.id, None, segments, self.conn)
        for created in resolved.created:
            self.report.add_created_tag(created, STATUS_CREATED_MAIN_TAG)
        self.anchor = _Anchor(resolved.leaf_id, segments[-1])
        self.report.main_tag_name = segments[-1]

    def run(self, entries: list[RowRecord | RowError]) -> IngestReport:
        paths: set[tuple[str, ...]] = set()
        for entry in entries:
            self.report.total_commands_in_csv += 1
            if isinstance(entry, RowError):
                self.report.add_skipped(
                    entry.command or "", f"line {entry.line_no}: {entry.reason}", STATUS_FAILED
                )
                continue
            if entry.tag_path:
                paths.add(entry.tag_path)
            if entry.command in self._seen:
                logger.debug("line %s: duplicate command %r in upload", entry.line_no, entry.command)
                self.report.add_skipped(entry.command, REASON_DUPLICATE_IN_UPLOAD)
                continue
            self._seen.add(entry.command)
            try:
                self._ingest_row(entry)
            except CatalogError as exc:
                logger.debug("line %s: %s", entry.line_no, exc.message)
                self.report.add_skipped(
                    entry.command, f"line {entry.line_no}: {exc.message}", STATUS_FAILED
                )
        self.report.total_tags_in_csv = len(paths)
        return self.report

    def _resolve_leaf(self, row: RowRecord) -> _Anchor:
        if not row.tag_path:
            return self.anchor
        resolved = resolve_path(
            self.storage, self.vendor.id, self.anchor.tag_id, row.tag_path, self.conn
        )
        for created in resolved.created:
            status = (
                STATUS_CREATED_FROM_COMMAND_TAG
                if created.id == resolved.leaf_id
                else STATUS_CREATED
            )
            self.report.add_created_tag(created, status)
        return _Anchor(resolved.leaf_id, row.tag_path[-1])

    def _ingest_row(self, row: RowRecord) -> None:
        leaf = self._resolve_leaf(row)
        existing = self.storage.find_command(self.vendor.id, row.command, self.conn)
        if existing is None:
            try:
                created = self.storage.create_command(
                    {
                        "command": row.command,
                        "description": row.description,
                        "example": row.example,
                        "version": row.version,
                        "vendor_id": self.vendor.id,
                        "tag_id": leaf.tag_id,
                    },
                    self.conn,
                )
            except DuplicateCommand:
                # Another writer inserted the same command after our lookup.
                existing = self.storage.find_command(self.vendor.id, row.command, self.conn)
                if existing is None:
                    raise
            else:
                self.report.add_created(created)
                return
        if not self.override:
            self.report.add_skipped(row.command, REASON_ALREADY_EXISTS)
            return
        fields: dict[str, Any] = {
            "description": row.description,
            "example": row.example,
            "version": row.version,
        }
        if leaf.tag_id is not None:
            fields["tag_id"] = leaf.tag_id
        updated = self.storage.update_command(existing.id, fields, self.conn)
        self.report.add_updated(updated)


def ingest(
    storage: Storage,
    vendor_id: Any,
    main_tag_id: Any,
    override: bool,
    sheet_bytes: bytes,
    *,
    main_tag_name: str | None = None,
) -> dict[str, Any]:
    """Parse `sheet_bytes` and reconcile every row against the catalog.

    Request-level problems (unknown vendor, foreign main tag, unreadable sheet)
    raise a `CatalogError` before anything is written. Storage failures roll the
    whole upload back and raise `IngestFailed`.
    """

    started = time.monotonic()
    if main_tag_id is not None and main_tag_name:
        raise ValidationFailed(
            {"main_tag_name": ["Provide either main_tag or main_tag_name, not both."]}
        )
    try:
        with storage.transaction() as conn:
            vendor = _require_vendor(storage, vendor_id, conn)
            main_tag = (
                _require_main_tag(storage, vendor, main_tag_id, conn)
                if main_tag_id is not None
                else None
            )
            sheet = parse_sheet(sheet_bytes)
            coordinator = IngestCoordinator(storage, conn, vendor, bool(override))
            if main_tag is not None:
                coordinator.use_main_tag(main_tag)
            elif main_tag_name:
                coordinator.create_main_tag(main_tag_name)
            payload = coordinator.run(sheet.entries).to_dict()
            validate_report(payload)
    except CatalogError:
        raise
    except sqlite3.Error as exc:
        logger.exception("ingest for vendor %s rolled back", vendor_id)
        raise IngestFailed() from exc
    summary = payload["summary"]
    logger.info(
        "ingest vendor=%s main_tag=%s override=%s rows=%s created=%s updated=%s skipped=%s "
        "tags_created=%s in %.3fs",
        payload["vendor_name"],
        payload["main_tag_name"] if payload["main_tag_name"] != NO_MAIN_TAG else "-",
        bool(override),
        summary["total_commands_in_csv"],
        summary["commands_created"],
        summary["commands_updated"],
        summary["commands_skipped"],
        summary["tags_created"],
        time.monotonic() - started,
    )
    return payload
