"""Tests for the command-line interface."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from conftest import make_file
from reclaim.cli import main
from reclaim.core.ownership import IdentityError


@pytest.fixture
def runner(fake_home):
    return CliRunner()


class TestScanCommand:
    def test_json_listing(self, runner, fake_home):
        make_file(fake_home / "data" / "big.bin", 3000)
        make_file(fake_home / "data" / "nested" / "small.bin", 1000)

        result = runner.invoke(main, ["scan", str(fake_home / "data"), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["node"]["size_bytes"] == 4000
        assert [c["name"] for c in data["children"]] == ["big.bin", "nested"]
        assert data["errors"] == []

    def test_expand_descends(self, runner, fake_home):
        make_file(fake_home / "data" / "nested" / "small.bin", 1000)

        result = runner.invoke(main, ["scan", str(fake_home / "data"), "--expand", "nested", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["node"]["name"] == "nested"
        assert [c["name"] for c in data["children"]] == ["small.bin"]

    def test_unknown_expand_name(self, runner, fake_home):
        (fake_home / "data").mkdir()
        result = runner.invoke(main, ["scan", str(fake_home / "data"), "--expand", "nope"])
        assert result.exit_code == 2

    def test_not_a_directory(self, runner, fake_home):
        result = runner.invoke(main, ["scan", str(fake_home / "missing")])
        assert result.exit_code == 2

    def test_text_output(self, runner, fake_home):
        make_file(fake_home / "data" / "big.bin", 3000)
        result = runner.invoke(main, ["scan", str(fake_home / "data")])
        assert result.exit_code == 0, result.output
        assert "big.bin" in result.output


class TestRemoveCommand:
    def test_dry_run_changes_nothing(self, runner, fake_home):
        target = make_file(fake_home / "old.iso", 10)

        result = runner.invoke(main, ["remove", str(target), "/usr", "--dry-run", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["trash"] == [str(target)]
        assert data["refused"] == ["/usr"]
        assert target.exists()

    def test_trash_after_confirmation(self, runner, fake_home):
        target = make_file(fake_home / "old.iso", 10)

        result = runner.invoke(main, ["remove", str(target)], input="y\n")

        assert result.exit_code == 0, result.output
        assert "Move to trash" in result.output
        assert not target.exists()
        assert (fake_home / ".local" / "share" / "Trash" / "files" / "old.iso").exists()

    def test_declined_confirmation_keeps_file(self, runner, fake_home):
        target = make_file(fake_home / "old.iso", 10)
        result = runner.invoke(main, ["remove", str(target)], input="n\n")
        assert result.exit_code == 0, result.output
        assert target.exists()

    def test_json_never_deletes_permanently_without_yes(self, runner, fake_home, outside, monkeypatch):
        monkeypatch.setattr("reclaim.core.safety.is_root", lambda: False)
        system = make_file(outside / "pkg.tar.zst", 10)

        result = runner.invoke(main, ["remove", str(system), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert "not confirmed" in data["elevated"]["error"]
        assert system.exists()


class TestCleanCommand:
    @pytest.fixture
    def trashed(self, fake_home):
        trash = fake_home / ".local" / "share" / "Trash"
        make_file(trash / "info" / "old.iso.trashinfo", 10)
        return make_file(trash / "files" / "old.iso", 500)

    def test_json_needs_yes(self, runner, trashed):
        result = runner.invoke(main, ["clean", "user_trash", "--json"])

        assert result.exit_code == 0, result.output
        [outcome] = json.loads(result.output)
        assert "not confirmed" in outcome["error"]
        assert trashed.exists()

    def test_empties_trash_after_confirmation(self, runner, trashed):
        result = runner.invoke(main, ["clean", "user_trash"], input="y\n")

        assert result.exit_code == 0, result.output
        assert "cannot be undone" in result.output
        assert not trashed.exists()

    def test_path_sources_are_pointed_elsewhere(self, runner, fake_home):
        make_file(fake_home / ".npm" / "_cacache" / "blob", 10)
        result = runner.invoke(main, ["clean", "npm_cache", "--yes", "--json"])

        assert result.exit_code == 0, result.output
        [outcome] = json.loads(result.output)
        assert "no cleaning action" in outcome["error"]


class TestDeleteAsRoot:
    def test_reports_per_path(self, runner, tmp_path):
        target = tmp_path / "victim.log"
        target.write_bytes(b"x" * 12)
        payload = json.dumps({"paths": [str(target), "/"]})

        result = runner.invoke(main, ["delete-as-root"], input=payload)

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data[0] == {"path": str(target), "deleted": True, "freed_bytes": 12, "error": ""}
        assert data[1]["deleted"] is False
        assert not target.exists()

    @pytest.mark.parametrize("payload", ["not json", "{}", '{"paths": "/tmp/x"}', "[]"])
    def test_bad_input(self, runner, payload):
        result = runner.invoke(main, ["delete-as-root"], input=payload)
        assert result.exit_code == 1
        assert "Bad input" in result.output


class TestStartup:
    def test_unresolvable_home_exits_1(self, runner, monkeypatch):
        def fail():
            raise IdentityError("Home directory does not exist: /nowhere")

        monkeypatch.setattr("reclaim.cli.Identity.current", fail)
        result = runner.invoke(main, ["list"])
        assert result.exit_code == 1
        assert "Home directory" in result.output

    def test_disks_json(self, runner):
        result = runner.invoke(main, ["disks", "--json"])
        assert result.exit_code == 0, result.output
        assert any(d["mount_point"] == "/" for d in json.loads(result.output))
