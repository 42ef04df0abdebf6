import os
from pathlib import Path

import pytest

import rotator


TRACKED = ("a.bin", "b.bin")


def write_file(path: Path, content: str = "data", mtime_ns: int | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedCopier(rotator.TreeCopier):
    """Mirror with the real copier, then report scripted result codes in order."""

    def __init__(self, codes=None, copy_on_failure: bool = True):
        self.inner = rotator.PythonTreeCopier(threads=2, retries=0, retry_delay=0)
        self.codes = list(codes or [])
        self.copy_on_failure = copy_on_failure
        self.calls = []

    def copy(self, src, dst) -> int:
        self.calls.append((Path(src), Path(dst)))
        code = self.codes.pop(0) if self.codes else None
        if code is None:
            return self.inner.copy(src, dst)
        if code < 8 or self.copy_on_failure:
            self.inner.copy(src, dst)
        return code


class FakeProbe:
    def __init__(self, active: bool = True):
        self.active = active
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.active


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_probe():
    return FakeProbe(active=True)


@pytest.fixture
def save_tree(tmp_path):
    """Return (save_root, backup_root) with one instance World/Save1"""
    save_root = tmp_path / "Saves"
    backup_root = tmp_path / "Backups"
    live = save_root / "World" / "Save1"
    write_file(live / "a.bin", "alpha", mtime_ns=1_000_000_000)
    write_file(live / "b.bin", "bravo", mtime_ns=1_000_000_000)
    write_file(live / "chunks" / "c_0_0.bin", "chunk")
    backup_root.mkdir()
    return save_root, backup_root


@pytest.fixture
def make_config(save_tree):
    save_root, backup_root = save_tree

    def _make(**overrides) -> rotator.RotatorConfig:
        settings = {
            "save_root": str(save_root),
            "backup_root": str(backup_root),
            "save_frequency": 10,
            "save_count": 2,
            "tracked_files": list(TRACKED),
            "game_processes": [],
            "copier": "python",
            "copy_threads": 2,
            "copy_retries": 0,
            "retry_delay": 0,
            "lock_timeout": 2,
        }
        settings.update(overrides)
        return rotator.RotatorConfig.from_dict(settings)

    return _make


@pytest.fixture
def instance(save_tree):
    save_root, backup_root = save_tree
    return rotator.SaveInstance("World", "Save1", save_root, backup_root)
