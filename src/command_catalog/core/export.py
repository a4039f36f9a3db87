from __future__ import annotations

from typing import Iterable

from .types import Command

# Lines a device shell expects before the pasted commands, by vendor name.
VENDOR_PREAMBLES = {
    "cisco": "configure terminal",
    "juniper": "edit",
}


def vendor_preamble(vendor_name: str | None) -> str | None:
    if not vendor_name:
        return None
    return VENDOR_PREAMBLES.get(vendor_name.strip().lower())


def export_commands(commands: Iterable[Command], vendor_name: str | None = None) -> str:
    body = "\n".join(item.command for item in commands)
    preamble = vendor_preamble(vendor_name)
    if preamble:
        return f"{preamble}\n{body}"
    return body


def export_filename(vendor_name: str | None) -> str:
    stem = (vendor_name or "commands").strip().lower().replace(" ", "_") or "commands"
    return f"{stem}_commands.txt"
