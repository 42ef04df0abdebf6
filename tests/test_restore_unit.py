import shutil

import pytest

import rotator
from conftest import FakeProbe, ScriptedCopier, write_file


@pytest.fixture
def slot_one(instance):
    slot = instance.slot_dir(1)
    write_file(slot / "a.bin", "old-alpha")
    write_file(slot / "b.bin", "old-bravo")
    return slot


def read_tree(root):
    return {
        str(path.relative_to(root)): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def test_restore_numbered_slot(make_config, instance, slot_one):
    config = make_config()
    live_before = read_tree(instance.live_dir)

    result = rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(instance, slot_one)

    assert result.success
    assert read_tree(instance.live_dir) == {"a.bin": "old-alpha", "b.bin": "old-bravo"}
    assert read_tree(instance.recovery_dir) == live_before
    assert result.recovery_path == instance.recovery_dir
    assert not instance.placeholder_dir.exists()
    assert rotator.find_leftover_restore_dirs(config.save_root) == []
    # The slot itself is left intact
    assert read_tree(slot_one) == {"a.bin": "old-alpha", "b.bin": "old-bravo"}


def test_failed_restore_keeps_previous_live_save(make_config, instance, slot_one):
    config = make_config()
    live_before = read_tree(instance.live_dir)
    copier = ScriptedCopier(codes=[None, 8], copy_on_failure=False)

    result = rotator.RestoreOrchestrator(config, copier).restore(instance, slot_one)

    assert not result.success
    assert result.result_code == 8
    assert result.preserved_path is not None
    assert result.preserved_path.name.startswith(".Save1.pre-restore-")
    assert read_tree(result.preserved_path) == live_before
    assert rotator.find_leftover_restore_dirs(config.save_root) == [result.preserved_path]
    # The hidden sibling is not picked up as a save instance
    keys = [i.key for i in rotator.list_save_instances(config.save_root, config.backup_root)]
    assert keys == ["World/Save1"]


def test_restore_recovery_slot_keeps_a_recovery(make_config, instance):
    config = make_config()
    write_file(instance.recovery_dir / "a.bin", "recovered-alpha")
    live_before = read_tree(instance.live_dir)

    result = rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(
        instance, instance.recovery_dir)

    assert result.success
    assert read_tree(instance.live_dir) == {"a.bin": "recovered-alpha"}
    assert read_tree(instance.recovery_dir) == live_before
    assert not instance.placeholder_dir.exists()


def test_restore_with_absent_live_directory(make_config, instance, slot_one):
    config = make_config()
    shutil.rmtree(instance.live_dir)

    result = rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(instance, slot_one)

    assert result.success
    assert result.recovery_path is None
    assert read_tree(instance.live_dir) == {"a.bin": "old-alpha", "b.bin": "old-bravo"}
    assert not instance.recovery_dir.exists()


def test_restore_recovery_slot_with_absent_live_directory(make_config, instance):
    config = make_config()
    write_file(instance.recovery_dir / "a.bin", "recovered-alpha")
    shutil.rmtree(instance.live_dir)

    result = rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(
        instance, instance.recovery_dir)

    assert result.success
    assert read_tree(instance.live_dir) == {"a.bin": "recovered-alpha"}
    assert read_tree(instance.recovery_dir) == {"a.bin": "recovered-alpha"}
    assert not instance.placeholder_dir.exists()


def test_protection_failure_aborts_and_puts_recovery_back(make_config, instance):
    config = make_config()
    write_file(instance.recovery_dir / "a.bin", "recovered-alpha")
    live_before = read_tree(instance.live_dir)
    copier = ScriptedCopier(codes=[16], copy_on_failure=False)

    with pytest.raises(rotator.RestoreError):
        rotator.RestoreOrchestrator(config, copier).restore(instance, instance.recovery_dir)

    assert read_tree(instance.live_dir) == live_before
    assert read_tree(instance.recovery_dir) == {"a.bin": "recovered-alpha"}
    assert not instance.placeholder_dir.exists()
    assert len(copier.calls) == 1


def test_restore_unknown_slot_is_rejected(make_config, instance):
    config = make_config()
    with pytest.raises(rotator.RestoreError):
        rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(instance, instance.slot_dir(9))


def test_restore_slot_of_another_instance_is_rejected(make_config, instance, tmp_path):
    config = make_config()
    foreign = tmp_path / "elsewhere" / "1"
    write_file(foreign / "a.bin")
    with pytest.raises(rotator.RestoreError):
        rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(instance, foreign)


def test_restore_refused_while_game_active(make_config, instance, slot_one):
    config = make_config()
    copier = ScriptedCopier()
    live_before = read_tree(instance.live_dir)

    with pytest.raises(rotator.GameActiveError):
        rotator.RestoreOrchestrator(config, copier, FakeProbe(active=True)).restore(instance, slot_one)

    assert copier.calls == []
    assert read_tree(instance.live_dir) == live_before
    assert not instance.recovery_dir.exists()


def test_failed_recovery_restore_can_be_retried(make_config, instance):
    config = make_config()
    write_file(instance.recovery_dir / "a.bin", "recovered-alpha")
    live_before = read_tree(instance.live_dir)
    failing = ScriptedCopier(codes=[None, 8], copy_on_failure=False)

    result = rotator.RestoreOrchestrator(config, failing).restore(instance, instance.recovery_dir)

    assert not result.success
    assert result.placeholder_path is None
    assert not instance.placeholder_dir.exists()
    # The recovery slot holds the data being restored again, still offered for restore
    assert read_tree(instance.recovery_dir) == {"a.bin": "recovered-alpha"}
    assert [s.label for s in rotator.list_slots(instance)] == ["latest recovered"]
    assert read_tree(result.preserved_path) == live_before

    retry = rotator.RestoreOrchestrator(config, ScriptedCopier()).restore(instance, instance.recovery_dir)

    assert retry.success
    assert read_tree(instance.live_dir) == {"a.bin": "recovered-alpha"}
    assert read_tree(result.preserved_path) == live_before


def test_leftover_placeholder_is_never_discarded(make_config, instance):
    config = make_config()
    write_file(instance.recovery_dir / "a.bin", "newer-recovery")
    write_file(instance.placeholder_dir / "a.bin", "parked-recovery")
    live_before = read_tree(instance.live_dir)
    copier = ScriptedCopier()

    with pytest.raises(rotator.RestoreError):
        rotator.RestoreOrchestrator(config, copier).restore(instance, instance.recovery_dir)

    assert copier.calls == []
    assert read_tree(instance.placeholder_dir) == {"a.bin": "parked-recovery"}
    assert read_tree(instance.recovery_dir) == {"a.bin": "newer-recovery"}
    assert read_tree(instance.live_dir) == live_before
    assert rotator.find_leftover_placeholders(config.backup_root) == [instance.placeholder_dir]
