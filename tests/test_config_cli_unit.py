import json
import os
import threading
from pathlib import Path

import pytest

import rotator
from conftest import write_file


def test_from_dict_defaults_and_units(tmp_path):
    config = rotator.RotatorConfig.from_dict({
        "save_root": str(tmp_path / "Saves"),
        "backup_root": str(tmp_path / "Backups"),
    })
    assert config.save_count == 5
    assert config.save_frequency_seconds == 600
    assert config.failure_threshold == 8
    assert config.fingerprint_path == tmp_path / "Backups" / "fingerprints.json"
    assert config.log_path == tmp_path / "Backups" / "log.log"


def test_from_dict_expands_user_paths(monkeypatch, tmp_path):
    monkeypatch.setenv("ROTATOR_TEST_ROOT", str(tmp_path))
    config = rotator.RotatorConfig.from_dict({
        "save_root": "$ROTATOR_TEST_ROOT/Saves",
        "backup_root": "$ROTATOR_TEST_ROOT/Backups",
    })
    assert config.save_root == tmp_path / "Saves"


@pytest.mark.parametrize("override", [
    {"save_count": 0},
    {"save_frequency": 0},
    {"save_frequency": "often"},
    {"copier": "rsync"},
    {"tracked_files": []},
    {"backup_root": ""},
])
def test_from_dict_rejects_invalid_values(tmp_path, override):
    settings = {"save_root": str(tmp_path), "backup_root": str(tmp_path / "b")}
    settings.update(override)
    with pytest.raises(rotator.ConfigError):
        rotator.RotatorConfig.from_dict(settings)


def test_load_config_writes_default_when_missing(tmp_path):
    config_path = tmp_path / "rotator_config.json"
    loaded = rotator.load_rotator_config(config_path)
    assert config_path.exists()
    assert loaded["save_count"] == rotator.DEFAULT_SETTINGS["save_count"]
    assert json.loads(config_path.read_text())["tracked_files"] == list(rotator.DEFAULT_TRACKED_FILES)


def test_load_config_merges_over_defaults(tmp_path):
    config_path = tmp_path / "rotator_config.json"
    config_path.write_text(json.dumps({"save_count": 9}))
    loaded = rotator.load_rotator_config(config_path)
    assert loaded["save_count"] == 9
    assert loaded["copier"] == "auto"


def test_load_config_falls_back_on_bad_json(tmp_path):
    config_path = tmp_path / "rotator_config.json"
    config_path.write_text("{oops")
    assert rotator.load_rotator_config(config_path) == rotator.DEFAULT_SETTINGS


def test_monitor_config_file_calls_back_on_change(tmp_path):
    config_path = tmp_path / "rotator_config.json"
    config_path.write_text("{}")
    changed = threading.Event()
    stop = threading.Event()

    thread = rotator.monitor_config_file(config_path, changed.set, interval=0.05, stop_event=stop)
    try:
        stamp = config_path.stat().st_mtime + 10
        os.utime(config_path, (stamp, stamp))
        assert changed.wait(5)
    finally:
        stop.set()
        thread.join(5)


def test_monitor_config_file_missing_path(tmp_path):
    assert rotator.monitor_config_file(tmp_path / "none.json", lambda: None) is None


def write_config(tmp_path, save_root, backup_root) -> Path:
    config_path = tmp_path / "rotator_config.json"
    config_path.write_text(json.dumps({
        "save_root": str(save_root),
        "backup_root": str(backup_root),
        "save_count": 2,
        "tracked_files": ["a.bin", "b.bin"],
        "game_processes": [],
        "copier": "python",
        "lock_timeout": 2,
    }))
    return config_path


def test_cli_once_force_backs_up_and_logs(tmp_path, save_tree):
    save_root, backup_root = save_tree
    config_path = write_config(tmp_path, save_root, backup_root)

    assert rotator.main(["--config", str(config_path), "--once", "--force"]) == 0
    assert (backup_root / "World" / "Save1" / "1" / "a.bin").read_text() == "alpha"
    assert "slot 1" in (backup_root / "log.log").read_text()


def test_cli_list_and_status(tmp_path, save_tree, capsys):
    save_root, backup_root = save_tree
    config_path = write_config(tmp_path, save_root, backup_root)

    assert rotator.main(["--config", str(config_path), "--list"]) == 0
    assert "World/Save1" in capsys.readouterr().out
    assert rotator.main(["--config", str(config_path), "--status"]) == 0


def test_cli_restore_slot_without_prompt(tmp_path, save_tree):
    save_root, backup_root = save_tree
    config_path = write_config(tmp_path, save_root, backup_root)
    write_file(backup_root / "World" / "Save1" / "1" / "a.bin", "old-alpha")

    code = rotator.main(["--config", str(config_path), "--restore", "World/Save1", "--slot", "1", "-y"])
    assert code == 0
    assert (save_root / "World" / "Save1" / "a.bin").read_text() == "old-alpha"
    assert (backup_root / "World" / "Save1" / "latest recovered" / "a.bin").read_text() == "alpha"


def test_cli_restore_unknown_instance_fails(tmp_path, save_tree):
    save_root, backup_root = save_tree
    config_path = write_config(tmp_path, save_root, backup_root)
    code = rotator.main(["--config", str(config_path), "--restore", "World/Nope", "--slot", "1", "-y"])
    assert code == 1


def test_cli_invalid_config_exits_with_error(tmp_path):
    config_path = tmp_path / "rotator_config.json"
    config_path.write_text(json.dumps({"save_root": "x", "backup_root": "y", "save_count": 0}))
    assert rotator.main(["--config", str(config_path), "--list"]) == 1
