"""Tests for the operational CLI against a file-backed SQLite database."""

import json

import pytest

from unitpay_engine.cli import SettlementCli


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    assert SettlementCli().run(["--database-url", url, "init-db"]) == 0
    return url


class TestSettlementCli:
    def test_no_command_prints_help(self, capsys):
        assert SettlementCli().run([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_init_db(self, tmp_path, capsys):
        url = f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}"
        assert SettlementCli().run(["--database-url", url, "--json", "init-db"]) == 0
        assert json.loads(capsys.readouterr().out) == {"status": "created"}

    def test_verify_quota_on_empty_database(self, database_url, capsys):
        capsys.readouterr()
        code = SettlementCli().run(["--database-url", database_url, "--json", "verify-quota"])
        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"violations": []}

    def test_sweep(self, database_url, capsys):
        capsys.readouterr()
        code = SettlementCli().run(["--database-url", database_url, "--json", "sweep"])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert set(data) == {"recovery", "expiry"}
        assert data["recovery"]["failed"] == 0

    def test_single_sweep(self, database_url, capsys):
        capsys.readouterr()
        assert SettlementCli().run(["--database-url", database_url, "sweep", "--only", "expiry"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("expiry:")
        assert "recovery" not in out

    def test_rebuild_task_pool(self, database_url, capsys):
        capsys.readouterr()
        assert SettlementCli().run(["--database-url", database_url, "rebuild-task-pool"]) == 0
        assert "0 entries" in capsys.readouterr().out
