from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import validate

from .types import (
    NO_MAIN_TAG,
    STATUS_CREATED_SUCCESSFULLY,
    STATUS_SKIPPED,
    STATUS_UPDATED_SUCCESSFULLY,
    Command,
    CreatedTag,
)
from .utils import read_json

REPORT_SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schemas" / "ingest_report.schema.json"
REPORT_FORMATS = ("csv", "txt")
EOL = "\n"


@dataclass
class IngestReport:
    """Outcome of one upload, filled in row order by the coordinator."""

    vendor_name: str
    main_tag_name: str = NO_MAIN_TAG
    total_commands_in_csv: int = 0
    total_tags_in_csv: int = 0
    created_commands: list[dict[str, Any]] = field(default_factory=list)
    updated_commands: list[dict[str, Any]] = field(default_factory=list)
    skipped_commands: list[dict[str, Any]] = field(default_factory=list)
    created_tags: list[dict[str, Any]] = field(default_factory=list)

    def add_created(self, command: Command) -> None:
        self.created_commands.append(_command_entry(command, STATUS_CREATED_SUCCESSFULLY))

    def add_updated(self, command: Command) -> None:
        self.updated_commands.append(_command_entry(command, STATUS_UPDATED_SUCCESSFULLY))

    def add_skipped(self, command: str, reason: str, status: str = STATUS_SKIPPED) -> None:
        self.skipped_commands.append({"command": command, "reason": reason, "status": status})

    def add_created_tag(self, tag: CreatedTag, status: str) -> None:
        self.created_tags.append({"name": tag.name, "parent": tag.parent_name, "status": status})

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor_name": self.vendor_name,
            "main_tag_name": self.main_tag_name,
            "summary": {
                "total_commands_in_csv": self.total_commands_in_csv,
                "commands_created": len(self.created_commands),
                "commands_updated": len(self.updated_commands),
                "commands_skipped": len(self.skipped_commands),
                "total_tags_in_csv": self.total_tags_in_csv,
                "tags_created": len(self.created_tags),
            },
            "details": {
                "created_commands": list(self.created_commands),
                "updated_commands": list(self.updated_commands),
                "skipped_commands": list(self.skipped_commands),
                "created_tags": list(self.created_tags),
            },
        }


def _command_entry(command: Command, status: str) -> dict[str, Any]:
    return {
        "command": command.command,
        "description": command.description,
        "tag": command.tag_name,
        "status": status,
    }


@lru_cache(maxsize=1)
def _report_schema() -> dict[str, Any]:
    return read_json(REPORT_SCHEMA_PATH)


def validate_report(report: dict[str, Any]) -> None:
    validate(instance=report, schema=_report_schema())


def _txt_value(label: str, value: Any) -> str:
    shown = "N/A" if value is None or value == "" else value
    return f"{label}: {shown}"


_COMMAND_SECTIONS = (
    ("created_commands", "Successfully Created Commands"),
    ("skipped_commands", "Skipped Commands"),
    ("updated_commands", "Successfully Updated Commands"),
)


def _render_csv(data: dict[str, Any]) -> str:
    summary = data.get("summary") or {}
    details = data.get("details") or {}
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator=EOL)
    writer.writerow(["Upload Results for Vendor", data.get("vendor_name")])
    writer.writerow(["Main Tag (CSV Parent)", data.get("main_tag_name")])
    writer.writerow([])
    writer.writerow(["Summary:"])
    writer.writerow(["Total Commands in CSV", summary.get("total_commands_in_csv")])
    writer.writerow(["Commands Created", summary.get("commands_created") or 0])
    writer.writerow(["Commands Updated", summary.get("commands_updated") or 0])
    writer.writerow(["Commands Skipped", summary.get("commands_skipped") or 0])
    writer.writerow(["Total Tags in CSV", summary.get("total_tags_in_csv")])
    writer.writerow(["Tags Created", summary.get("tags_created") or 0])
    writer.writerow([])
    for key, title in _COMMAND_SECTIONS:
        entries = details.get(key) or []
        if not entries:
            continue
        writer.writerow([f"{title}:"])
        if key == "skipped_commands":
            writer.writerow(["Command", "Reason", "Status"])
            for item in entries:
                writer.writerow([item.get("command"), item.get("reason"), item.get("status")])
        else:
            writer.writerow(["Command", "Description", "Tag", "Status"])
            for item in entries:
                writer.writerow(
                    [item.get("command"), item.get("description"), item.get("tag"), item.get("status")]
                )
        writer.writerow([])
    tags = details.get("created_tags") or []
    if tags:
        writer.writerow(["Created Tags:"])
        writer.writerow(["Tag Name", "Parent", "Status"])
        for item in tags:
            writer.writerow([item.get("name"), item.get("parent"), item.get("status")])
        writer.writerow([])
    return buf.getvalue()


def _render_txt(data: dict[str, Any]) -> str:
    summary = data.get("summary") or {}
    details = data.get("details") or {}
    out = [
        f"Upload Results for Vendor: {data.get('vendor_name')}{EOL}",
        f"Main Tag (CSV Parent): {data.get('main_tag_name')}{EOL}{EOL}",
        f"--- Summary ---{EOL}",
    ]
    labels = (
        ("Total Commands in CSV", "total_commands_in_csv"),
        ("Commands Created", "commands_created"),
        ("Commands Updated", "commands_updated"),
        ("Commands Skipped", "commands_skipped"),
        ("Total Tags in CSV", "total_tags_in_csv"),
        ("Tags Created", "tags_created"),
    )
    for label, key in labels:
        out.append(_txt_value(label, summary.get(key)) + EOL)
    out.append(EOL)

    def section(title: str, entries: list[dict[str, Any]], fields: tuple[tuple[str, str], ...]) -> None:
        if not entries:
            return
        out.append(f"--- {title} ---{EOL}")
        for index, item in enumerate(entries, start=1):
            first_label, first_key = fields[0]
            out.append(f"  {index}. {_txt_value(first_label, item.get(first_key))}{EOL}")
            for label, key in fields[1:]:
                out.append(f"     {_txt_value(label, item.get(key))}{EOL}")
            out.append(f"     ---{EOL}")
        out.append(EOL)

    command_fields = (("Command", "command"), ("Description", "description"), ("Tag", "tag"), ("Status", "status"))
    section("Successfully Created Commands", details.get("created_commands") or [], command_fields)
    section(
        "Skipped Commands",
        details.get("skipped_commands") or [],
        (("Command", "command"), ("Reason", "reason"), ("Status", "status")),
    )
    section("Successfully Updated Commands", details.get("updated_commands") or [], command_fields)
    section(
        "Created Tags",
        details.get("created_tags") or [],
        (("Tag Name", "name"), ("Parent", "parent"), ("Status", "status")),
    )
    return "".join(out)


def render_report(report: dict[str, Any], fmt: str) -> str:
    """Render an upload report (the `data` object) for download as CSV or TXT."""

    if fmt == "csv":
        return _render_csv(report)
    if fmt == "txt":
        return _render_txt(report)
    raise ValueError(f"Unsupported report format: {fmt}")
