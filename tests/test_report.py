import csv
import io

import jsonschema
import pytest

from command_catalog.core.ingest import ingest
from command_catalog.core.report import IngestReport, render_report, validate_report
from tests.conftest import S1_SHEET


def test_empty_report_always_carries_counters():
    payload = IngestReport(vendor_name="cisco").to_dict()
    validate_report(payload)
    assert payload["main_tag_name"] == "None"
    assert payload["summary"]["commands_created"] == 0
    assert payload["details"]["created_tags"] == []


def test_validate_report_rejects_unknown_status():
    payload = IngestReport(vendor_name="cisco").to_dict()
    payload["details"]["skipped_commands"].append({"command": "x", "reason": "y", "status": "Maybe"})
    with pytest.raises(jsonschema.ValidationError):
        validate_report(payload)


def test_render_csv_sections(storage, cisco):
    report = ingest(storage, cisco.id, None, False, S1_SHEET)
    text = render_report(report, "csv")
    lines = text.splitlines()
    assert lines[0] == "Upload Results for Vendor,cisco"
    assert lines[1] == "Main Tag (CSV Parent),None"
    assert "Total Commands in CSV,3" in lines
    assert "Tags Created,3" in lines
    assert lines.index("Successfully Created Commands:") < lines.index("Skipped Commands:")
    assert "Successfully Updated Commands:" not in lines
    assert "show ip route,duplicate in upload,Skipped" in lines
    assert "Routing,,Created" in lines
    assert "IPv4,Routing,Created (from Command Tag)" in lines


def test_render_csv_escapes_values():
    report = IngestReport(vendor_name='ACME, "Inc"')
    report.add_skipped("show a,b", "line 2: bad\nrow")
    text = render_report(report.to_dict(), "csv")
    assert text.startswith('Upload Results for Vendor,"ACME, ""Inc"""\n')
    assert '"show a,b","line 2: bad\nrow",Skipped\n' in text


def test_render_csv_keeps_carriage_return_inside_one_record():
    report = IngestReport(vendor_name="cisco")
    report.created_commands.append(
        {"command": "show a", "description": "line1\rline2", "tag": None, "status": "Created Successfully"}
    )
    text = render_report(report.to_dict(), "csv")
    rows = list(csv.reader(io.StringIO(text, newline="")))
    assert ["show a", "line1\rline2", "", "Created Successfully"] in rows


def test_render_txt_uses_placeholders(storage, cisco):
    report = ingest(storage, cisco.id, None, False, S1_SHEET)
    text = render_report(report, "txt")
    assert text.startswith("Upload Results for Vendor: cisco\nMain Tag (CSV Parent): None\n")
    assert "--- Summary ---" in text
    assert "  1. Command: show version" in text
    assert "Parent: N/A" in text
    assert "--- Successfully Updated Commands ---" not in text


def test_render_report_rejects_unknown_format():
    with pytest.raises(ValueError):
        render_report(IngestReport(vendor_name="cisco").to_dict(), "pdf")


def test_schema_status_enum_matches_report_statuses():
    from command_catalog.core.report import _report_schema
    from command_catalog.core.types import REPORT_STATUSES

    assert tuple(_report_schema()["definitions"]["status"]["enum"]) == REPORT_STATUSES
