"""Tests for the sopsfs command line (CliRunner, fake sops)."""

from __future__ import annotations

import json
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from sopsfs.cli import main
from sopsfs.cli._common import parse_env_pairs
from sopsfs.models import SopsFsConfig
from sopsfs.registry import compose_path, document_uri


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def document(make_document) -> Path:
    return make_document("app.sops.json", {"db": {"user": "admin"}, "hosts": ["a"]})


@pytest.fixture
def cli(home: Path, make_registry, monkeypatch):
    """Invoke the CLI with every registry backed by the fake sops."""
    monkeypatch.setattr("sopsfs.cli.fs.open_registry", lambda state: make_registry())
    runner = CliRunner()

    def invoke(*args: str, **kwargs):
        return runner.invoke(main, ["--home", str(home), *args], **kwargs)

    return invoke


class TestFsCommands:
    def test_ls_json(self, cli, document: Path) -> None:
        result = cli("fs", "ls", str(document), "/", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == [
            {"name": "__sopsfs__.json", "kind": "file"},
            {"name": "db", "kind": "directory"},
            {"name": "hosts", "kind": "directory"},
        ]

    def test_ls_marks_directories(self, cli, document: Path) -> None:
        result = cli("fs", "ls", str(document))
        assert result.exit_code == 0
        assert "db/" in result.output
        assert "__sopsfs__.json" in result.output

    def test_cat(self, cli, document: Path) -> None:
        result = cli("fs", "cat", str(document), "/db/user")
        assert result.exit_code == 0
        assert result.output == "admin"

    def test_cat_missing_exits_1(self, cli, document: Path) -> None:
        result = cli("fs", "cat", str(document), "/db/nope")
        assert result.exit_code == 1
        assert "No such file or directory" in result.output

    def test_stat_json(self, cli, document: Path) -> None:
        result = cli("fs", "stat", str(document), "/hosts", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["kind"] == "directory"
        assert data["size"] == 1

    def test_write_value(self, cli, document: Path, decrypted) -> None:
        result = cli("fs", "write", str(document), "/db/pass", "hunter2")
        assert result.exit_code == 0, result.output
        assert decrypted(document)["db"]["pass"] == "hunter2"

    def test_write_from_stdin(self, cli, document: Path, decrypted) -> None:
        result = cli("fs", "write", str(document), "/db/user", input="root")
        assert result.exit_code == 0, result.output
        assert decrypted(document)["db"]["user"] == "root"

    def test_write_no_overwrite(self, cli, document: Path) -> None:
        result = cli("fs", "write", str(document), "/db/user", "x", "--no-overwrite")
        assert result.exit_code == 1
        assert "File exists" in result.output

    def test_write_no_create(self, cli, document: Path) -> None:
        result = cli("fs", "write", str(document), "/db/new", "x", "--no-create")
        assert result.exit_code == 1

    def test_mkdir_rm_mv(self, cli, document: Path, decrypted) -> None:
        assert cli("fs", "mkdir", str(document), "/cache").exit_code == 0
        assert cli("fs", "mv", str(document), "/db/user", "/db/login").exit_code == 0
        assert cli("fs", "rm", str(document), "/cache").exit_code == 0
        assert decrypted(document) == {"db": {"login": "admin"}, "hosts": ["a"]}

    def test_rm_data_file_refused(self, cli, document: Path) -> None:
        result = cli("fs", "rm", str(document), "/__sopsfs__.json")
        assert result.exit_code == 1
        assert "forbidden" in result.output

    def test_address(self, cli, document: Path) -> None:
        result = cli("address", str(document), "/db")
        assert result.exit_code == 0
        assert result.output.strip() == compose_path(document_uri(document), "/db")


class TestDoctor:
    def test_json_report(self, cli, home: Path, monkeypatch) -> None:
        monkeypatch.setattr("sopsfs.cli.doctor.find_sops", lambda config: "/usr/bin/sops")
        result = cli("--env", "SOPS_AGE_KEY_FILE=/k", "doctor", "--json")
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["sops_path"] == "/usr/bin/sops"
        assert report["env_keys"] == ["SOPS_AGE_KEY_FILE"]
        assert report["config_file"] == str(home / "config.yaml")

    def test_missing_sops_exits_1(self, cli, monkeypatch) -> None:
        monkeypatch.setattr("sopsfs.cli.doctor.find_sops", lambda config: None)
        result = cli("doctor")
        assert result.exit_code == 1
        assert "NOT FOUND" in result.output


class TestMountCommands:
    def test_status_json_when_unmounted(self, cli, tmp_path: Path) -> None:
        result = cli("mount", "status", "--mount-point", str(tmp_path / "mnt"), "--json")
        assert result.exit_code == 0
        assert json.loads(result.output)["mounted"] is False

    def test_start_requires_mount_point(self, cli, document: Path) -> None:
        result = cli("mount", "start", str(document))
        assert result.exit_code == 2


class TestEnvPairs:
    def test_parse(self) -> None:
        assert parse_env_pairs(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}

    @pytest.mark.parametrize("pair", ["novalue", "=1"])
    def test_rejects_malformed(self, pair: str) -> None:
        with pytest.raises(click.BadParameter):
            parse_env_pairs([pair])

    def test_bad_env_option_is_usage_error(self, cli) -> None:
        result = cli("--env", "broken", "doctor")
        assert result.exit_code == 2

    def test_sops_command_option_reaches_config(self, cli, monkeypatch) -> None:
        monkeypatch.delenv("SOPSFS_SOPS_COMMAND", raising=False)
        seen = {}

        def capture(config: SopsFsConfig):
            seen["command"] = config.sops_command
            return None

        monkeypatch.setattr("sopsfs.cli.doctor.find_sops", capture)
        cli("--sops-command", "/opt/sops", "doctor")
        assert seen["command"] == "/opt/sops"
