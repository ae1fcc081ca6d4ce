import os

import pytest

from vmbundle.config_store import ConfigStore
from vmbundle.error_handling import (
    AlreadyRunningError, ConflictError, NotFoundError, StorageError, ValidationError,
)
from vmbundle.storage import snapshots
from vmbundle.storage.snapshots import SnapshotManager


def disk_path(bundle):
    return os.path.join(bundle, 'disk.img')


def write_disk(bundle, data):
    with open(disk_path(bundle), 'wb') as f:
        f.write(data)


def read_disk(bundle):
    with open(disk_path(bundle), 'rb') as f:
        return f.read()


def test_create_copies_all_artifacts(bundle):
    write_disk(bundle, b'clean install')
    target = SnapshotManager(bundle).create('clean')

    assert sorted(os.listdir(target)) == sorted([
        'config.json', 'disk.img', 'HardwareModel.bin',
        'MachineIdentifier.bin', 'AuxiliaryStorage.bin',
    ])
    with open(os.path.join(target, 'disk.img'), 'rb') as f:
        assert f.read() == b'clean install'


def test_revert_restores_disk(bundle):
    manager = SnapshotManager(bundle)
    write_disk(bundle, b'before')
    manager.create('clean')
    write_disk(bundle, b'after changes')

    manager.revert('clean')

    assert read_disk(bundle) == b'before'
    assert [n for n in os.listdir(bundle) if n.startswith('.revert-temp-')] == []


@pytest.mark.parametrize('name', ['', '   ', 'a/b', '..', '.hidden'])
def test_invalid_names(bundle, name):
    with pytest.raises(ValidationError):
        SnapshotManager(bundle).create(name)


def test_create_conflict(bundle):
    manager = SnapshotManager(bundle)
    manager.create('clean')
    with pytest.raises(ConflictError):
        manager.create('clean')


def test_create_refused_while_running(bundle):
    with open(os.path.join(bundle, 'vmctl.pid'), 'w') as f:
        f.write(f'{os.getpid()}\n')

    with pytest.raises(AlreadyRunningError):
        SnapshotManager(bundle).create('clean')
    assert not os.path.exists(os.path.join(bundle, 'Snapshots', 'clean'))


def test_revert_missing_snapshot(bundle):
    with pytest.raises(NotFoundError):
        SnapshotManager(bundle).revert('nope')


def test_revert_refused_while_running(bundle):
    manager = SnapshotManager(bundle)
    manager.create('clean')
    with open(os.path.join(bundle, 'vmctl.pid'), 'w') as f:
        f.write(f'{os.getpid()}\n')

    with pytest.raises(AlreadyRunningError):
        manager.revert('clean')


def test_failed_revert_keeps_backup(bundle, monkeypatch):
    manager = SnapshotManager(bundle)
    write_disk(bundle, b'before')
    manager.create('clean')
    write_disk(bundle, b'after changes')

    real_copy = snapshots.copy_artifact
    calls = []

    def flaky_copy(source, destination):
        calls.append(source)
        if len(calls) == 5:
            raise OSError("device full")
        real_copy(source, destination)

    monkeypatch.setattr(snapshots, 'copy_artifact', flaky_copy)

    with pytest.raises(StorageError) as excinfo:
        manager.revert('clean')

    backups = [n for n in os.listdir(bundle) if n.startswith('.revert-temp-')]
    assert len(backups) == 1
    assert backups[0] in str(excinfo.value)
    with open(os.path.join(bundle, backups[0], 'disk.img'), 'rb') as f:
        assert f.read() == b'after changes'


def test_failed_create_removes_partial_snapshot(bundle, monkeypatch):
    def broken_copy(source, destination):
        raise OSError("read error")

    monkeypatch.setattr(snapshots, 'copy_artifact', broken_copy)

    with pytest.raises(StorageError):
        SnapshotManager(bundle).create('clean')
    assert not os.path.exists(os.path.join(bundle, 'Snapshots', 'clean'))


def test_list_and_delete(bundle):
    manager = SnapshotManager(bundle)
    manager.create('b-second')
    manager.create('a-first')

    assert [s.name for s in manager.list()] == ['a-first', 'b-second']

    manager.delete('a-first')
    assert [s.name for s in manager.list()] == ['b-second']
    with pytest.raises(NotFoundError):
        manager.delete('a-first')


def test_create_requires_every_artifact(bundle):
    os.remove(os.path.join(bundle, 'AuxiliaryStorage.bin'))

    with pytest.raises(NotFoundError, match='AuxiliaryStorage.bin is missing'):
        SnapshotManager(bundle).create('clean')
    assert not os.path.exists(os.path.join(bundle, 'Snapshots', 'clean'))


def test_revert_discards_suspend_state(bundle):
    manager = SnapshotManager(bundle)
    manager.create('clean')
    store = ConfigStore(bundle)
    config = store.load()
    config.is_suspended = True
    store.save(config)
    with open(os.path.join(bundle, 'suspend.vmstate'), 'wb') as f:
        f.write(b'saved-state')

    manager.revert('clean')

    assert not os.path.exists(os.path.join(bundle, 'suspend.vmstate'))
    assert store.load().is_suspended is False
