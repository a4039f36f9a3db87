from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from jsonschema import ValidationError as SchemaValidationError
from starlette.concurrency import run_in_threadpool

from command_catalog.core import commands as single_commands
from command_catalog.core.auth import (
    AuthError,
    authenticate_access_token,
    obtain_token_pair,
    refresh_access_token,
)
from command_catalog.core.errors import (
    NON_FIELD,
    CatalogError,
    NotFound,
    ValidationFailed,
)
from command_catalog.core.export import export_commands, export_filename
from command_catalog.core.ingest import ingest
from command_catalog.core.payloads import validate_payload
from command_catalog.core.queries import all_matching_commands, list_commands
from command_catalog.core.report import REPORT_FORMATS, render_report, validate_report
from command_catalog.core.storage import Storage
from command_catalog.core.utils import (
    auth_enabled,
    base_url,
    database_path,
    max_upload_bytes,
    parse_bool,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Command Catalog")

_DEFAULT_CSP = "default-src 'none'; frame-ancestors 'none'"
PUBLIC_PATHS = {"/token/", "/refresh", "/healthz", "/docs", "/openapi.json"}
ALLOWED_SHEET_SUFFIXES = {".csv", ".txt"}
UPLOAD_CHUNK_BYTES = 1024 * 1024

_STORAGE: Storage | None = None


def get_storage() -> Storage:
    global _STORAGE
    if _STORAGE is None:
        _STORAGE = Storage(database_path())
    return _STORAGE


def _apply_security_headers(headers) -> None:
    # Starlette MutableHeaders at runtime, a plain dict in tests.
    def ensure(key: str, value: str) -> None:
        if headers.get(key) is None:
            headers[key] = value

    ensure("X-Content-Type-Options", "nosniff")
    ensure("Referrer-Policy", "no-referrer")
    ensure("X-Frame-Options", "DENY")
    ensure("Content-Security-Policy", _DEFAULT_CSP)
    ensure("Cross-Origin-Resource-Policy", "same-origin")


def _extract_bearer(request: Request) -> str | None:
    header = request.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        token = header.split(" ", 1)[1].strip()
        return token or None
    return None


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    _apply_security_headers(response.headers)
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if not auth_enabled() or request.url.path in PUBLIC_PATHS:
        return await call_next(request)
    token = _extract_bearer(request)
    user = authenticate_access_token(get_storage(), token) if token else None
    if user is None:
        return JSONResponse(status_code=401, content={"detail": "unauthorized"})
    request.state.user = user
    return await call_next(request)


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: dict[str, list[str]] = {}
    for item in exc.errors():
        loc = item.get("loc") or ()
        field = str(loc[-1]) if len(loc) > 1 else NON_FIELD
        errors.setdefault(field, []).append(str(item.get("msg") or "Invalid value."))
    return JSONResponse(status_code=400, content=errors)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationFailed({NON_FIELD: ["Malformed JSON body."]}) from exc


def _optional_int(value: Any, field: str) -> int | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    try:
        return int(text)
    except ValueError:
        raise ValidationFailed({field: ["A valid integer is required."]}) from None


def _page_link(request: Request, page: int | None) -> str | None:
    if page is None:
        return None
    url = request.url.include_query_params(page=page)
    prefix = base_url()
    if prefix:
        return f"{prefix}{url.path}?{url.query}"
    return str(url)


@app.get("/healthz")
async def healthz() -> JSONResponse:
    return JSONResponse({"status": "ok"})


# Vendors, platforms, tags


@app.get("/vendors/get-all/")
async def vendors_list() -> JSONResponse:
    return JSONResponse([vendor.to_dict() for vendor in get_storage().list_vendors()])


@app.post("/vendors/create/")
async def vendors_create(request: Request) -> JSONResponse:
    data = validate_payload("vendor_create", await _json_body(request))
    vendor = get_storage().create_vendor(data["name"])
    return JSONResponse(vendor.to_dict(), status_code=201)


@app.get("/platform/get-all/")
async def platforms_list(vendor_id: str = "") -> JSONResponse:
    platforms = get_storage().list_platforms(_optional_int(vendor_id, "vendor_id"))
    return JSONResponse([{"id": item.id, "name": item.name} for item in platforms])


@app.post("/platform/create/")
async def platforms_create(request: Request) -> JSONResponse:
    data = validate_payload("platform_create", await _json_body(request))
    platform = get_storage().create_platform(data["vendor"], data["name"])
    return JSONResponse(platform.to_dict(), status_code=201)


@app.get("/tags/get-all-tree/")
async def tags_tree(vendor_id: str = "") -> JSONResponse:
    return JSONResponse(get_storage().list_tag_forest(_optional_int(vendor_id, "vendor_id")))


@app.post("/tags/create/")
async def tags_create(request: Request) -> JSONResponse:
    data = validate_payload("tag_create", await _json_body(request))
    tag = get_storage().create_tag(data["vendor"], data["name"], data.get("parent"))
    return JSONResponse(tag.to_dict(), status_code=201)


# Commands


@app.get("/commands/get-filtered/")
async def commands_filtered(
    request: Request,
    page: str = "1",
    page_size: str = "10",
    search: str = "",
    vendor__name: str = "",
    platform__name: str = "",
    tag__name: str = "",
    version: str = "",
    vendor_id: str = "",
) -> JSONResponse:
    filters = {
        "search": search,
        "vendor__name": vendor__name,
        "platform__name": platform__name,
        "tag__name": tag__name,
        "version": version,
        "vendor_id": _optional_int(vendor_id, "vendor_id"),
    }
    result = list_commands(get_storage(), page, page_size, filters)
    return JSONResponse(
        {
            "count": result.count,
            "next": _page_link(request, result.next_page),
            "previous": _page_link(request, result.previous_page),
            "results": [item.to_dict() for item in result.results],
        }
    )


@app.get("/commands/check-existence/")
async def commands_check_existence(command_name: str = "", vendor_id: str = "") -> JSONResponse:
    vendor_key = _optional_int(vendor_id, "vendor_id")
    return JSONResponse(single_commands.check_existence(get_storage(), vendor_key, command_name))


@app.post("/commands/create/")
async def commands_create(request: Request) -> JSONResponse:
    created = single_commands.create_command(get_storage(), await _json_body(request))
    return JSONResponse(created.to_detail_dict(), status_code=201)


@app.patch("/commands/update/{command_id}/")
async def commands_update(request: Request, command_id: int) -> JSONResponse:
    updated = single_commands.update_command(get_storage(), command_id, await _json_body(request))
    return JSONResponse(updated.to_detail_dict())


@app.get("/commands/export/")
async def commands_export(
    search: str = "",
    vendor__name: str = "",
    platform__name: str = "",
    tag__name: str = "",
    version: str = "",
    vendor_id: str = "",
) -> PlainTextResponse:
    storage = get_storage()
    vendor_key = _optional_int(vendor_id, "vendor_id")
    vendor_name = vendor__name.strip() or None
    if vendor_name is None and vendor_key is not None:
        vendor = storage.get_vendor(vendor_key)
        vendor_name = vendor.name if vendor else None
    matches = all_matching_commands(
        storage,
        {
            "search": search,
            "vendor__name": vendor__name,
            "platform__name": platform__name,
            "tag__name": tag__name,
            "version": version,
            "vendor_id": vendor_key,
        },
    )
    if not matches:
        raise NotFound("No commands found for export.")
    filename = export_filename(vendor_name)
    return PlainTextResponse(
        export_commands(matches, vendor_name),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _read_sheet(csv_file: UploadFile) -> bytes:
    filename = Path(csv_file.filename or "").name
    if filename and Path(filename).suffix.lower() not in ALLOWED_SHEET_SUFFIXES:
        raise ValidationFailed({"csv_file": ["Unsupported file type; upload a .csv file."]})
    limit = max_upload_bytes()
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await csv_file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > limit:
            raise HTTPException(status_code=413, detail="File too large")
        chunks.append(chunk)
    return b"".join(chunks)


@app.post("/commands/csv-upload/")
@app.post("/commands/csv-upload", include_in_schema=False)
async def commands_csv_upload(
    csv_file: UploadFile = File(...),
    vendor: str = Form(...),
    main_tag: str = Form(""),
    main_tag_name: str = Form(""),
    override: str = Form("false"),
) -> JSONResponse:
    vendor_id = _optional_int(vendor, "vendor")
    if vendor_id is None:
        raise ValidationFailed({"vendor": ["This field is required."]})
    main_tag_id = _optional_int(main_tag, "main_tag")
    try:
        override_flag = parse_bool(override)
    except ValueError:
        raise ValidationFailed({"override": ["Must be a valid boolean."]}) from None
    sheet = await _read_sheet(csv_file)
    report = await run_in_threadpool(
        ingest,
        get_storage(),
        vendor_id,
        main_tag_id,
        override_flag,
        sheet,
        main_tag_name=main_tag_name.strip() or None,
    )
    return JSONResponse({"message": "CSV processed successfully.", "data": report})


@app.post("/commands/csv-upload/report/{fmt}")
async def commands_csv_upload_report(request: Request, fmt: str) -> PlainTextResponse:
    if fmt not in REPORT_FORMATS:
        raise NotFound(f"Unsupported report format: {fmt}")
    body = validate_payload("upload_report", await _json_body(request))
    data = body["data"]
    try:
        validate_report(data)
    except SchemaValidationError as exc:
        raise ValidationFailed({"data": [exc.message]}) from exc
    vendor_slug = str(data.get("vendor_name") or "vendor").strip().replace(" ", "_")
    media_type = "text/csv" if fmt == "csv" else "text/plain"
    return PlainTextResponse(
        render_report(data, fmt),
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="upload_results_{vendor_slug}.{fmt}"'
        },
    )


# Tokens


@app.post("/token/")
async def token_obtain(request: Request) -> JSONResponse:
    data = validate_payload("token_obtain", await _json_body(request))
    try:
        pair = obtain_token_pair(get_storage(), data["email"], data["password"])
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return JSONResponse(pair)


@app.post("/refresh")
async def token_refresh(request: Request) -> JSONResponse:
    data = validate_payload("token_refresh", await _json_body(request))
    try:
        access = refresh_access_token(get_storage(), data["refresh"])
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return JSONResponse(access)
