"""CLI tests using typer's CliRunner."""

import json

import pytest
from typer.testing import CliRunner

from trusthash import __version__, cli
from trusthash.config import SidecarConfig, save_config
from trusthash.manifest_store import ManifestStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    """A config file pointing the database into tmp_path."""
    monkeypatch.setattr(cli, "_config_override", None)
    path = tmp_path / "trusthash.toml"
    save_config(SidecarConfig(db_path=tmp_path / "data" / "provenance.db"), path)
    return path


def _invoke(runner, config_path, *args):
    return runner.invoke(
        cli.app, ["--config", str(config_path), *args],
        env={"TRUSTHASH_DB_PATH": None, "DUCKDB_PATH": None},
    )


class TestCli:
    def test_version(self, runner):
        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_migrate(self, runner, config_path, tmp_path):
        result = _invoke(runner, config_path, "migrate")
        assert result.exit_code == 0, result.output
        assert "base_schema" in result.output
        assert "remove_arns_columns" in result.output
        assert (tmp_path / "data" / "provenance.db").exists()

    def test_search_empty_index(self, runner, config_path):
        result = _invoke(runner, config_path, "search", "--phash", "a5a5a5a5a5a5a5a5")
        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)
        assert body["total"] == 0
        assert body["query"]["threshold"] == 10

    def test_search_finds_indexed(self, runner, config_path, tmp_path, make_record, bits):
        store = ManifestStore(tmp_path / "data" / "provenance.db")
        store.insert(make_record("tx-1", binary=bits(1)))
        store.close()

        result = _invoke(runner, config_path, "search", "--phash", "0" * 64, "-t", "1", "-n", "5")
        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)
        assert [r["manifestTxId"] for r in body["results"]] == ["tx-1"]

    def test_search_requires_input(self, runner, config_path):
        result = _invoke(runner, config_path, "search")
        assert result.exit_code == 1
        assert "Either phash or txId" in result.output

    def test_search_bad_phash(self, runner, config_path):
        result = _invoke(runner, config_path, "search", "--phash", "xyz")
        assert result.exit_code == 1
        assert "Invalid pHash format" in result.output

    def test_stats(self, runner, config_path):
        result = _invoke(runner, config_path, "stats")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"totalManifests": 0, "indexStatus": "active"}

    def test_invalid_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.setattr(cli, "_config_override", None)
        path = tmp_path / "trusthash.toml"
        path.write_text("[server]\nport = 0\n")
        result = runner.invoke(cli.app, ["--config", str(path), "stats"])
        assert result.exit_code == 1
        assert "invalid configuration" in result.output
