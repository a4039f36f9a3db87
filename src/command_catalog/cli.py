from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

import uvicorn
import yaml

from command_catalog.core.auth import hash_password, normalize_email
from command_catalog.core.errors import CatalogError, DuplicateName
from command_catalog.core.export import export_commands
from command_catalog.core.ingest import ingest
from command_catalog.core.queries import all_matching_commands
from command_catalog.core.report import render_report
from command_catalog.core.storage import Storage
from command_catalog.core.tag_paths import resolve_path, split_tag_path
from command_catalog.core.types import Vendor
from command_catalog.core.utils import configure_logging, database_path, json_dumps, now_iso


def _storage() -> Storage:
    return Storage(database_path())


def load_seed(path: str) -> dict[str, Any]:
    content = Path(path).read_text(encoding="utf-8")
    if path.endswith(".json"):
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)
    if not isinstance(data, dict) or not isinstance(data.get("vendors", []), list):
        raise SystemExit(f"Seed file must map 'vendors' to a list: {path}")
    return data


def _resolve_vendor(storage: Storage, ref: str) -> Vendor:
    vendor = storage.fetch_vendor_by_name(ref)
    if vendor is None and ref.strip().isdigit():
        vendor = storage.get_vendor(int(ref))
    if vendor is None:
        raise SystemExit(f"Unknown vendor: {ref}")
    return vendor


def _write_output(text: str, out_path: str | None) -> None:
    if out_path:
        Path(out_path).write_text(text, encoding="utf-8")
        print(f"Wrote {out_path}")
    else:
        print(text)


def cmd_serve(host: str, port: int) -> None:
    from command_catalog.api.server import app

    uvicorn.run(app, host=host, port=port)


def cmd_init_db() -> None:
    storage = _storage()
    print(f"Initialized {storage.db_path}")


def cmd_create_user(email: str, password: str, name: str | None, admin: bool) -> None:
    storage = _storage()
    normalized = normalize_email(email)
    if storage.fetch_user_by_email(normalized):
        raise SystemExit("User already exists")
    storage.create_user(normalized, hash_password(password), name, admin, now_iso())
    print(f"Created user {normalized}")


def cmd_revoke_tokens(email: str) -> None:
    storage = _storage()
    normalized = normalize_email(email)
    user = storage.fetch_user_by_email(normalized)
    if not user:
        raise SystemExit("User not found")
    storage.revoke_user_tokens(int(user["user_id"]), now_iso())
    print(f"Revoked tokens for {normalized}")


def cmd_create_vendor(name: str) -> None:
    try:
        vendor = _storage().create_vendor(name)
    except CatalogError as exc:
        raise SystemExit(exc.message) from exc
    print(f"Created vendor {vendor.name} (id={vendor.id})")


def cmd_seed(path: str) -> None:
    """Create the vendors, platforms and tag paths listed in a YAML/JSON file.

    Entries that already exist are left as they are, so seeding twice is a no-op::

        vendors:
          - name: Cisco
            platforms: [IOS, NX-OS]
            tags: [Routing/BGP, Routing/OSPF, Security]
    """

    data = load_seed(path)
    storage = _storage()
    vendors = platforms = tags = 0
    with storage.transaction() as conn:
        for entry in data.get("vendors") or []:
            if isinstance(entry, str):
                entry = {"name": entry}
            name = str(entry.get("name") or "").strip()
            if not name:
                raise SystemExit("Every seeded vendor needs a name")
            vendor = storage.fetch_vendor_by_name(name, conn)
            if vendor is None:
                vendor = storage.create_vendor(name, conn)
                vendors += 1
            for platform in entry.get("platforms") or []:
                try:
                    storage.create_platform(vendor.id, str(platform), conn)
                except DuplicateName:
                    continue
                platforms += 1
            for tag_path in entry.get("tags") or []:
                segments = split_tag_path(str(tag_path))
                if segments:
                    tags += len(resolve_path(storage, vendor.id, None, segments, conn).created)
    print(f"Seeded {vendors} vendors, {platforms} platforms, {tags} tags")


def cmd_ingest(
    csv_path: str,
    vendor_ref: str,
    main_tag: int | None,
    main_tag_name: str | None,
    override: bool,
    fmt: str,
    out_path: str | None,
) -> None:
    storage = _storage()
    vendor = _resolve_vendor(storage, vendor_ref)
    try:
        report = ingest(
            storage,
            vendor.id,
            main_tag,
            override,
            Path(csv_path).read_bytes(),
            main_tag_name=main_tag_name,
        )
    except CatalogError as exc:
        raise SystemExit(f"{exc.field}: {exc.message}") from exc
    text = json_dumps(report) if fmt == "json" else render_report(report, fmt)
    _write_output(text, out_path)


def cmd_export(vendor_ref: str, out_path: str | None) -> None:
    storage = _storage()
    vendor = _resolve_vendor(storage, vendor_ref)
    commands = all_matching_commands(storage, {"vendor_id": vendor.id})
    if not commands:
        raise SystemExit(f"No commands found for vendor {vendor.name}")
    _write_output(export_commands(commands, vendor.name), out_path)


def cmd_integrity_check(full: bool = False) -> None:
    ok, msg = _storage().integrity_check(full=full)
    if not ok:
        raise SystemExit(f"Integrity check failed: {msg}")
    print("OK")


def cmd_backup(out_path: str) -> None:
    _storage().backup_to(Path(out_path))
    print(f"Backup written to {out_path}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="command-catalog")
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    sub.add_parser("init-db")

    user_parser = sub.add_parser("create-user")
    user_parser.add_argument("--email", required=True)
    user_parser.add_argument("--password", required=True)
    user_parser.add_argument("--name")
    user_parser.add_argument("--admin", action="store_true")

    revoke_parser = sub.add_parser("revoke-tokens")
    revoke_parser.add_argument("--email", required=True)

    vendor_parser = sub.add_parser("create-vendor")
    vendor_parser.add_argument("name")

    seed_parser = sub.add_parser("seed")
    seed_parser.add_argument("file")

    ingest_parser = sub.add_parser("ingest")
    ingest_parser.add_argument("csv")
    ingest_parser.add_argument("--vendor", required=True, help="vendor name or id")
    main_tag_group = ingest_parser.add_mutually_exclusive_group()
    main_tag_group.add_argument("--main-tag", type=int, help="existing tag id to nest rows under")
    main_tag_group.add_argument("--main-tag-name", help="tag path to create and nest rows under")
    ingest_parser.add_argument("--override", action="store_true")
    ingest_parser.add_argument("--format", choices=("json", "csv", "txt"), default="json")
    ingest_parser.add_argument("--out")

    export_parser = sub.add_parser("export")
    export_parser.add_argument("--vendor", required=True, help="vendor name or id")
    export_parser.add_argument("--out")

    integrity_parser = sub.add_parser("integrity-check")
    integrity_parser.add_argument("--full", action="store_true")

    backup_parser = sub.add_parser("backup")
    backup_parser.add_argument("path")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve":
        cmd_serve(args.host, args.port)
    elif args.command == "init-db":
        cmd_init_db()
    elif args.command == "create-user":
        cmd_create_user(args.email, args.password, args.name, args.admin)
    elif args.command == "revoke-tokens":
        cmd_revoke_tokens(args.email)
    elif args.command == "create-vendor":
        cmd_create_vendor(args.name)
    elif args.command == "seed":
        cmd_seed(args.file)
    elif args.command == "ingest":
        cmd_ingest(
            args.csv,
            args.vendor,
            args.main_tag,
            args.main_tag_name,
            bool(args.override),
            args.format,
            args.out,
        )
    elif args.command == "export":
        cmd_export(args.vendor, args.out)
    elif args.command == "integrity-check":
        cmd_integrity_check(full=bool(args.full))
    elif args.command == "backup":
        cmd_backup(args.path)
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
