from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any

import pytest
from fastapi import UploadFile
from starlette.requests import Request

from command_catalog.core.storage import Storage
from command_catalog.core.types import Vendor


@pytest.fixture()
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "catalog.sqlite")


@pytest.fixture()
def cisco(storage: Storage) -> Vendor:
    return storage.create_vendor("cisco")


@pytest.fixture()
def juniper(storage: Storage) -> Vendor:
    return storage.create_vendor("juniper")


@pytest.fixture()
def server(monkeypatch, storage: Storage):
    from command_catalog.api import server as server_mod

    monkeypatch.delenv("CMDCAT_ENABLE_AUTH", raising=False)
    monkeypatch.delenv("CMDCAT_BASE_URL", raising=False)
    monkeypatch.setattr(server_mod, "_STORAGE", storage)
    return server_mod


def make_sheet(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


S1_SHEET = make_sheet(
    "command,description,tag",
    "show version,Display version,Diagnostics",
    "show ip route,Show routes,Routing/IPv4",
    "show ip route,duplicate,Routing/IPv4",
)


def make_request(
    method: str,
    path: str,
    body: Any = None,
    query: bytes = b"",
    headers: list[tuple[bytes, bytes]] | None = None,
) -> Request:
    if isinstance(body, bytes):
        payload = body
    else:
        payload = b"" if body is None else json.dumps(body).encode("utf-8")
    sent = False

    async def receive() -> dict[str, Any]:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": payload, "more_body": False}

    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("testserver", 80),
        "root_path": "",
        "path": path,
        "query_string": query,
        "headers": [(b"content-type", b"application/json"), *(headers or [])],
    }
    return Request(scope, receive)


def make_upload(data: bytes, filename: str = "commands.csv") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename)
