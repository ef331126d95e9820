#!/usr/bin/env python3
"""Operator CLI commands against a throwaway learning DB."""

import json
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import cli
from learning_db import LearningDB


def _db_path() -> str:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        return f.name


def test_status_prints_baseline(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "status"]) == 0
    out = capsys.readouterr().out
    assert "Completed trades:   0" in out
    assert "Snapshot version:   v1" in out


def test_weights_json(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "--json", "weights"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["weights"]["smart_wallet"] == 30.0
    assert payload["drift"] == 0.0


def test_freeze_unfreeze_roundtrip(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "freeze", "weight_smart_wallet", "30", "--reason", "hold"]) == 0
    assert cli.main(["--db-path", path, "--json", "frozen"]) == 0
    out = capsys.readouterr().out
    frozen = json.loads(out[out.index("["):])
    assert [f["parameter_name"] for f in frozen] == ["weight_smart_wallet"]
    assert frozen[0]["frozen_value"] == 30
    assert frozen[0]["frozen_by"] == "cli"

    assert cli.main(["--db-path", path, "weights"]) == 0
    assert "(frozen)" in capsys.readouterr().out

    assert cli.main(["--db-path", path, "unfreeze", "weight_smart_wallet"]) == 0
    assert cli.main(["--db-path", path, "unfreeze", "weight_smart_wallet"]) == 1
    assert LearningDB(path).get_frozen_names() == set()


def test_revert_missing_version_fails(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "revert", "9"]) == 1
    assert "Error" in capsys.readouterr().out


def test_revert_existing_version_creates_new_snapshot(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "revert", "1"]) == 0
    assert "current snapshot is now v2" in capsys.readouterr().out
    assert cli.main(["--db-path", path, "--json", "snapshots", "--limit", "5"]) == 0
    snapshots = json.loads(capsys.readouterr().out)
    assert [s["version"] for s in snapshots] == [2, 1]


def test_trigger_report_and_cycles(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "trigger", "report"]) == 0
    assert "full_report: completed" in capsys.readouterr().out
    assert cli.main(["--db-path", path, "--json", "cycles", "--type", "full_report"]) == 0
    cycles = json.loads(capsys.readouterr().out)
    assert len(cycles) == 1
    assert cycles[0]["status"] == "completed"


def test_reset_patterns_requires_confirmation(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "reset-patterns"]) == 1
    assert cli.main(["--db-path", path, "reset-patterns", "--yes"]) == 0
    assert "Deleted 0 win and 0 danger patterns" in capsys.readouterr().out


def test_health_and_report_text(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "health"]) == 0
    assert "Health:             GOOD" in capsys.readouterr().out
    assert cli.main(["--db-path", path, "report"]) == 0
    assert "Learning engine is operating normally" in capsys.readouterr().out


def test_patterns_on_empty_store(capsys) -> None:
    path = _db_path()
    assert cli.main(["--db-path", path, "patterns"]) == 0
    out = capsys.readouterr().out
    assert "Win patterns:     0" in out
    assert "Fingerprinted trades: 0" in out


def test_no_command_prints_help() -> None:
    assert cli.main([]) == 1
