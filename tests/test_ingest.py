import sqlite3
import threading

import pytest

from command_catalog.core.errors import (
    IngestFailed,
    InvalidReference,
    ParentVendorMismatch,
    SheetError,
    UnknownVendor,
    ValidationFailed,
)
from command_catalog.core.ingest import ingest
from command_catalog.core.report import validate_report
from tests.conftest import S1_SHEET, make_sheet


def _names(entries, key="command"):
    return [entry[key] for entry in entries]


def test_fresh_upload_creates_commands_and_tags(storage, cisco):
    report = ingest(storage, cisco.id, None, False, S1_SHEET)
    validate_report(report)

    assert report["vendor_name"] == "cisco"
    assert report["main_tag_name"] == "None"
    assert report["summary"] == {
        "total_commands_in_csv": 3,
        "commands_created": 2,
        "commands_updated": 0,
        "commands_skipped": 1,
        "total_tags_in_csv": 2,
        "tags_created": 3,
    }
    details = report["details"]
    assert _names(details["created_commands"]) == ["show version", "show ip route"]
    assert details["created_commands"][1] == {
        "command": "show ip route",
        "description": "Show routes",
        "tag": "IPv4",
        "status": "Created Successfully",
    }
    assert details["skipped_commands"] == [
        {"command": "show ip route", "reason": "duplicate in upload", "status": "Skipped"}
    ]
    assert details["created_tags"] == [
        {"name": "Diagnostics", "parent": None, "status": "Created (from Command Tag)"},
        {"name": "Routing", "parent": None, "status": "Created"},
        {"name": "IPv4", "parent": "Routing", "status": "Created (from Command Tag)"},
    ]
    route = storage.find_command(cisco.id, "show ip route")
    assert route.description == "Show routes"
    assert [tag.name for tag in storage.tag_ancestry(route.tag_id)] == ["IPv4", "Routing"]


def test_reupload_without_override_is_idempotent(storage, cisco):
    ingest(storage, cisco.id, None, False, S1_SHEET)
    report = ingest(storage, cisco.id, None, False, S1_SHEET)

    summary = report["summary"]
    assert summary["commands_created"] == 0
    assert summary["commands_updated"] == 0
    assert summary["commands_skipped"] == 3
    assert summary["tags_created"] == 0
    reasons = _names(report["details"]["skipped_commands"], "reason")
    assert reasons == [
        "already exists; override not set",
        "already exists; override not set",
        "duplicate in upload",
    ]
    assert storage.count_commands(cisco.id) == 2
    assert storage.count_tags(cisco.id) == 3


def test_override_updates_existing_rows(storage, cisco):
    ingest(storage, cisco.id, None, False, S1_SHEET)
    before = storage.find_command(cisco.id, "show version")

    report = ingest(
        storage, cisco.id, None, True, make_sheet("command,description,tag", "show version,New desc,Diagnostics")
    )

    assert report["summary"]["commands_updated"] == 1
    assert report["details"]["updated_commands"] == [
        {"command": "show version", "description": "New desc", "tag": "Diagnostics", "status": "Updated Successfully"}
    ]
    after = storage.find_command(cisco.id, "show version")
    assert after.id == before.id
    assert after.description == "New desc"
    assert after.tag_id == before.tag_id


def test_override_merge_updates_every_row(storage, cisco):
    first = make_sheet("command,description", "show a,one", "show b,two", "show c,three")
    second = make_sheet("command,description", "show a,uno", "show b,dos", "show c,tres")
    ingest(storage, cisco.id, None, False, first)
    report = ingest(storage, cisco.id, None, True, second)

    assert _names(report["details"]["updated_commands"]) == ["show a", "show b", "show c"]
    stored = {name: storage.find_command(cisco.id, name).description for name in ("show a", "show b", "show c")}
    assert stored == {"show a": "uno", "show b": "dos", "show c": "tres"}


def test_override_without_tag_keeps_existing_tag(storage, cisco):
    ingest(storage, cisco.id, None, False, make_sheet("command,tag", "show a,Diagnostics"))
    tagged = storage.find_command(cisco.id, "show a")
    ingest(storage, cisco.id, None, True, make_sheet("command,description", "show a,changed"))
    assert storage.find_command(cisco.id, "show a").tag_id == tagged.tag_id


def test_main_tag_nests_new_paths(storage, cisco):
    core = storage.create_tag(cisco.id, "Cisco-Core")
    report = ingest(storage, cisco.id, core.id, False, make_sheet("command,description,tag", "show clock,,Time"))

    assert report["main_tag_name"] == "Cisco-Core"
    assert report["details"]["created_tags"] == [
        {"name": "Time", "parent": "Cisco-Core", "status": "Created (from Command Tag)"}
    ]
    clock = storage.find_command(cisco.id, "show clock")
    time_tag = storage.get_tag(clock.tag_id)
    assert time_tag.name == "Time"
    assert time_tag.parent_id == core.id


def test_main_tag_applies_to_rows_without_tag(storage, cisco):
    core = storage.create_tag(cisco.id, "Cisco-Core")
    ingest(storage, cisco.id, core.id, False, make_sheet("command", "show clock"))
    assert storage.find_command(cisco.id, "show clock").tag_id == core.id


def test_rows_without_tag_or_main_tag_stay_untagged(storage, cisco):
    report = ingest(storage, cisco.id, None, False, make_sheet("command", "show clock"))
    assert report["details"]["created_commands"][0]["tag"] is None
    assert storage.find_command(cisco.id, "show clock").tag_id is None


def test_cross_vendor_main_tag_is_rejected_without_writes(storage, cisco, juniper):
    foreign = storage.create_tag(juniper.id, "Junos-Core")
    with pytest.raises(ParentVendorMismatch) as excinfo:
        ingest(storage, cisco.id, foreign.id, False, S1_SHEET)
    assert excinfo.value.field == "main_tag"
    assert excinfo.value.status_code == 400
    assert storage.count_commands() == 0
    assert storage.count_tags(cisco.id) == 0


def test_request_level_errors(storage, cisco):
    with pytest.raises(UnknownVendor):
        ingest(storage, 999, None, False, S1_SHEET)
    with pytest.raises(InvalidReference):
        ingest(storage, cisco.id, 999, False, S1_SHEET)
    with pytest.raises(SheetError):
        ingest(storage, cisco.id, None, False, b"")
    with pytest.raises(ValidationFailed):
        ingest(storage, cisco.id, 1, False, S1_SHEET, main_tag_name="Imported")
    assert storage.count_commands() == 0


def test_main_tag_name_creates_anchor_path(storage, cisco):
    report = ingest(
        storage,
        cisco.id,
        None,
        False,
        make_sheet("command,tag", "show clock,Time"),
        main_tag_name="Imported/2024",
    )
    assert report["main_tag_name"] == "2024"
    assert report["details"]["created_tags"] == [
        {"name": "Imported", "parent": None, "status": "Created (Main Tag)"},
        {"name": "2024", "parent": "Imported", "status": "Created (Main Tag)"},
        {"name": "Time", "parent": "2024", "status": "Created (from Command Tag)"},
    ]
    chain = storage.tag_ancestry(storage.find_command(cisco.id, "show clock").tag_id)
    assert [tag.name for tag in chain] == ["Time", "2024", "Imported"]


def test_row_errors_become_failed_skips(storage, cisco):
    report = ingest(
        storage,
        cisco.id,
        None,
        False,
        make_sheet("command,description", "show a,ok", ",no command", "show b,x,extra"),
    )
    assert report["summary"]["total_commands_in_csv"] == 3
    assert report["summary"]["commands_created"] == 1
    assert report["details"]["skipped_commands"] == [
        {"command": "", "reason": "line 3: missing command", "status": "Failed"},
        {
            "command": "show b",
            "reason": "line 4: malformed row: expected 2 fields, found 3",
            "status": "Failed",
        },
    ]


def test_unclosed_quote_skips_only_its_row(storage, cisco):
    report = ingest(
        storage,
        cisco.id,
        None,
        False,
        make_sheet("command,description", 'show a,"broken', "show b,ok", "show c,ok"),
    )
    assert report["summary"]["total_commands_in_csv"] == 3
    assert report["summary"]["commands_created"] == 2
    assert report["details"]["skipped_commands"] == [
        {
            "command": "show a",
            "reason": "line 2: malformed row: unterminated quoted field",
            "status": "Failed",
        }
    ]


def test_row_order_is_preserved_in_every_bucket(storage, cisco):
    ingest(storage, cisco.id, None, False, make_sheet("command", "show b", "show d"))
    rows = ["show e", "show b", "show a", "show d", "show e", "show c"]
    report = ingest(storage, cisco.id, None, False, make_sheet("command", *rows))

    details = report["details"]
    assert _names(details["created_commands"]) == ["show e", "show a", "show c"]
    assert _names(details["skipped_commands"]) == ["show b", "show d", "show e"]
    seen = _names(details["created_commands"]) + _names(details["updated_commands"]) + _names(
        details["skipped_commands"]
    )
    assert sorted(seen) == sorted(rows)


def test_store_failure_rolls_back_whole_upload(storage, cisco, monkeypatch):
    real_create = storage.create_command
    calls = {"n": 0}

    def flaky_create(fields, conn=None):
        calls["n"] += 1
        if calls["n"] == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return real_create(fields, conn)

    monkeypatch.setattr(storage, "create_command", flaky_create)
    with pytest.raises(IngestFailed) as excinfo:
        ingest(storage, cisco.id, None, False, S1_SHEET)
    assert excinfo.value.status_code == 500
    assert storage.count_commands() == 0
    assert storage.count_tags() == 0


def test_racing_command_insert_becomes_skip(storage, cisco, monkeypatch):
    storage.create_command({"command": "show a", "vendor_id": cisco.id})
    real_find = storage.find_command
    calls = {"n": 0}

    def stale_find(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(storage, "find_command", stale_find)
    report = ingest(storage, cisco.id, None, False, make_sheet("command", "show a"))
    assert report["details"]["skipped_commands"] == [
        {"command": "show a", "reason": "already exists; override not set", "status": "Skipped"}
    ]
    assert storage.count_commands() == 1


def test_concurrent_uploads_share_one_tag_path(storage, cisco):
    sheets = [
        make_sheet("command,tag", "show a,Shared/Leaf"),
        make_sheet("command,tag", "show b,Shared/Leaf"),
    ]
    barrier = threading.Barrier(len(sheets))
    reports: list[dict] = []
    errors: list[BaseException] = []

    def worker(data: bytes) -> None:
        barrier.wait()
        try:
            reports.append(ingest(storage, cisco.id, None, False, data))
        except BaseException as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(data,)) for data in sheets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert storage.count_tags(cisco.id) == 2
    creators = [report for report in reports if report["details"]["created_tags"]]
    assert len(creators) == 1
    assert len(creators[0]["details"]["created_tags"]) == 2
    leaf_ids = {storage.find_command(cisco.id, name).tag_id for name in ("show a", "show b")}
    assert len(leaf_ids) == 1
