"""Single-command reconciliation behind the add-command form.

The client decides between create and update after probing existence; the
server only guarantees `(vendor, command)` stays unique.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import ValidationFailed
from .payloads import validate_payload
from .storage import Storage
from .types import Command

logger = logging.getLogger(__name__)

# Request keys to storage columns.
_FIELD_MAP = {
    "command": "command",
    "description": "description",
    "example": "example",
    "version": "version",
    "platform": "platform_id",
    "tag": "tag_id",
}


def check_existence(storage: Storage, vendor_id: Any, command_text: str) -> dict[str, Any]:
    text = (command_text or "").strip()
    try:
        key = int(vendor_id)
    except (TypeError, ValueError):
        return {"exists": False}
    if not text:
        return {"exists": False}
    found = storage.find_command(key, text)
    if found is None:
        return {"exists": False}
    return {"exists": True, "id": found.id}


def create_command(storage: Storage, payload: Any) -> Command:
    data = validate_payload("command_create", payload)
    fields = {column: data.get(key) for key, column in _FIELD_MAP.items()}
    fields["vendor_id"] = data["vendor"]
    created = storage.create_command(fields)
    logger.info("created command %s for vendor %s", created.id, created.vendor_name)
    return created


def update_command(storage: Storage, command_id: int, payload: Any) -> Command:
    """Partial update: keys present in `payload` are written, `null` clears."""

    data = validate_payload("command_update", payload)
    if "vendor" in data:
        existing = storage.get_command(command_id)
        if existing is not None and int(data["vendor"]) != existing.vendor_id:
            raise ValidationFailed({"vendor": ["A command cannot be moved to another vendor."]})
    fields = {column: data[key] for key, column in _FIELD_MAP.items() if key in data}
    updated = storage.update_command(command_id, fields)
    logger.info("updated command %s (%s)", updated.id, ", ".join(sorted(fields)) or "no changes")
    return updated
