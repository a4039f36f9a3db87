from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STATUS_CREATED = "Created"
STATUS_CREATED_SUCCESSFULLY = "Created Successfully"
STATUS_CREATED_MAIN_TAG = "Created (Main Tag)"
STATUS_CREATED_FROM_COMMAND_TAG = "Created (from Command Tag)"
STATUS_UPDATED_SUCCESSFULLY = "Updated Successfully"
STATUS_SKIPPED = "Skipped"
STATUS_FAILED = "Failed"

REPORT_STATUSES = (
    STATUS_CREATED,
    STATUS_CREATED_SUCCESSFULLY,
    STATUS_CREATED_MAIN_TAG,
    STATUS_CREATED_FROM_COMMAND_TAG,
    STATUS_UPDATED_SUCCESSFULLY,
    STATUS_SKIPPED,
    STATUS_FAILED,
)

REASON_DUPLICATE_IN_UPLOAD = "duplicate in upload"
REASON_ALREADY_EXISTS = "already exists; override not set"

NO_MAIN_TAG = "None"


@dataclass(frozen=True)
class Vendor:
    id: int
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Platform:
    id: int
    name: str
    vendor_id: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "vendor": self.vendor_id}


@dataclass(frozen=True)
class Tag:
    id: int
    name: str
    vendor_id: int
    parent_id: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "vendor": self.vendor_id,
            "parent": self.parent_id,
        }


@dataclass(frozen=True)
class Command:
    id: int
    command: str
    description: str | None
    example: str | None
    version: str | None
    vendor_id: int
    platform_id: int | None
    tag_id: int | None
    vendor_name: str = ""
    platform_name: str | None = None
    tag_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "description": self.description,
            "example": self.example,
            "version": self.version,
            "vendor": self.vendor_name,
            "platform": self.platform_name,
            "tag": self.tag_name,
        }

    def to_detail_dict(self) -> dict[str, Any]:
        payload = self.to_dict()
        payload["vendor_id"] = self.vendor_id
        payload["platform_id"] = self.platform_id
        payload["tag_id"] = self.tag_id
        return payload


@dataclass(frozen=True)
class RowRecord:
    line_no: int
    command: str
    description: str | None = None
    example: str | None = None
    version: str | None = None
    tag_path: tuple[str, ...] = ()


@dataclass(frozen=True)
class RowError:
    line_no: int
    reason: str
    command: str | None = None


@dataclass
class ParsedSheet:
    entries: list[RowRecord | RowError] = field(default_factory=list)

    @property
    def rows(self) -> list[RowRecord]:
        return [entry for entry in self.entries if isinstance(entry, RowRecord)]

    @property
    def errors(self) -> list[RowError]:
        return [entry for entry in self.entries if isinstance(entry, RowError)]


@dataclass(frozen=True)
class CreatedTag:
    id: int
    name: str
    parent_id: int | None
    parent_name: str | None


@dataclass(frozen=True)
class ResolvedPath:
    leaf_id: int | None
    created: tuple[CreatedTag, ...] = ()
