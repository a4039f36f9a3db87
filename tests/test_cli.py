import json

import pytest

from command_catalog import cli
from command_catalog.core.auth import (
    AuthError,
    authenticate_access_token,
    obtain_token_pair,
    refresh_access_token,
)
from command_catalog.core.storage import Storage
from tests.conftest import S1_SHEET


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "catalog.sqlite"
    monkeypatch.setenv("CMDCAT_DATABASE", str(path))
    return path


def test_seed_is_repeatable(db_path, tmp_path, capsys):
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        "vendors:\n"
        "  - name: cisco\n"
        "    platforms: [IOS, NX-OS]\n"
        "    tags: [Routing/BGP, Routing/OSPF, Security]\n"
        "  - juniper\n",
        encoding="utf-8",
    )
    cli.main(["seed", str(seed)])
    assert "Seeded 2 vendors, 2 platforms, 4 tags" in capsys.readouterr().out
    cli.main(["seed", str(seed)])
    assert "Seeded 0 vendors, 0 platforms, 0 tags" in capsys.readouterr().out

    storage = Storage(db_path)
    cisco = storage.fetch_vendor_by_name("cisco")
    assert [node["name"] for node in storage.list_tag_forest(cisco.id)] == ["Routing", "Security"]


def test_ingest_and_export(db_path, tmp_path, capsys):
    cli.main(["create-vendor", "cisco"])
    sheet = tmp_path / "commands.csv"
    sheet.write_bytes(S1_SHEET)
    out = tmp_path / "report.json"
    cli.main(["ingest", str(sheet), "--vendor", "cisco", "--out", str(out)])
    report = json.loads(out.read_text(encoding="utf-8"))
    assert report["summary"]["commands_created"] == 2

    capsys.readouterr()
    cli.main(["ingest", str(sheet), "--vendor", "cisco", "--format", "txt"])
    assert "Commands Skipped: 3" in capsys.readouterr().out

    exported = tmp_path / "cisco.txt"
    cli.main(["export", "--vendor", "cisco", "--out", str(exported)])
    assert exported.read_text(encoding="utf-8") == "configure terminal\nshow version\nshow ip route"


def test_ingest_reports_request_errors(db_path, tmp_path):
    sheet = tmp_path / "commands.csv"
    sheet.write_bytes(b"description\nfoo\n")
    with pytest.raises(SystemExit, match="Unknown vendor"):
        cli.main(["ingest", str(sheet), "--vendor", "cisco"])
    cli.main(["create-vendor", "cisco"])
    with pytest.raises(SystemExit, match="csv_file"):
        cli.main(["ingest", str(sheet), "--vendor", "cisco"])


def test_maintenance_commands(db_path, tmp_path, capsys):
    cli.main(["init-db"])
    cli.main(["create-user", "--email", "Ops@Example.com", "--password", "pw"])
    assert "Created user ops@example.com" in capsys.readouterr().out
    with pytest.raises(SystemExit):
        cli.main(["create-user", "--email", "ops@example.com", "--password", "pw"])
    cli.main(["integrity-check"])
    backup = tmp_path / "backup.sqlite"
    cli.main(["backup", str(backup)])
    assert backup.exists()


def test_revoke_tokens_logs_user_out(db_path, capsys):
    cli.main(["create-user", "--email", "ops@example.com", "--password", "pw"])
    storage = Storage(db_path)
    pair = obtain_token_pair(storage, "ops@example.com", "pw")
    assert authenticate_access_token(storage, pair["access"]) is not None

    cli.main(["revoke-tokens", "--email", "OPS@example.com"])
    assert "Revoked tokens for ops@example.com" in capsys.readouterr().out
    assert authenticate_access_token(storage, pair["access"]) is None
    with pytest.raises(AuthError):
        refresh_access_token(storage, pair["refresh"])

    with pytest.raises(SystemExit, match="User not found"):
        cli.main(["revoke-tokens", "--email", "nobody@example.com"])
