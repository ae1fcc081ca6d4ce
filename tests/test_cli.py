import os

import pytest
from typer.testing import CliRunner

from tests.conftest import FakeEngine
from vmbundle import __version__, cli
from vmbundle.config import CONFIG
from vmbundle.config_store import ConfigStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_engine(monkeypatch):
    monkeypatch.setattr(cli, 'ENGINE_FACTORY', FakeEngine)
    monkeypatch.setitem(CONFIG, 'MIN_DISK_GIB', 0)


def invoke(root_dir, *args):
    return runner.invoke(cli.app, ['--root', root_dir, *args])


def test_version() -> None:
    result = runner.invoke(cli.app, ['--version'])
    assert result.exit_code == 0
    assert f'vmbundle {__version__}' in result.output


def test_help() -> None:
    result = runner.invoke(cli.app, ['--help'])
    assert result.exit_code == 0
    assert 'virtual machine bundles' in result.output


def test_init_and_status(root_dir):
    result = invoke(root_dir, 'init', 'sandbox', '--disk', '0', '--cpus', '3', '--memory', '4')
    assert result.exit_code == 0, result.output
    assert os.path.isdir(os.path.join(root_dir, 'sandbox.vmbundle'))

    result = invoke(root_dir, 'status', 'sandbox')
    assert result.exit_code == 0, result.output
    assert 'State: stopped' in result.output
    assert 'vCPUs: 3, Memory: 4.0 GiB, Disk: 0.0 GiB' in result.output


def test_status_unknown_vm_exits_1(root_dir):
    result = invoke(root_dir, 'status', 'ghost')
    assert result.exit_code == 1
    assert "Error: VM 'ghost' not found" in result.output


def test_init_validation_error_exits_1(root_dir):
    result = invoke(root_dir, 'init', 'sandbox', '--cpus', '1', '--disk', '0')
    assert result.exit_code == 1
    assert 'Error:' in result.output
    assert not os.path.exists(os.path.join(root_dir, 'sandbox.vmbundle'))


def test_list(root_dir):
    result = invoke(root_dir, 'list')
    assert result.exit_code == 0
    assert 'No VMs found' in result.output

    invoke(root_dir, 'init', 'box', '--disk', '0')
    result = invoke(root_dir, 'list')
    assert result.exit_code == 0, result.output
    assert 'box' in result.output
    assert 'stopped' in result.output


def test_stop_not_running(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'stop', 'sandbox')
    assert result.exit_code == 0, result.output
    assert "VM 'sandbox' is not running." in result.output


def test_settings(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'settings', 'sandbox', '--cpus', '6')
    assert result.exit_code == 0, result.output
    assert 'vCPUs: 6' in invoke(root_dir, 'status', 'sandbox').output


def test_snapshot_commands(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')

    result = invoke(root_dir, 'snapshot', 'sandbox', 'create', 'clean')
    assert result.exit_code == 0, result.output

    result = invoke(root_dir, 'snapshot', 'sandbox', 'list')
    assert result.exit_code == 0
    assert 'clean' in result.output

    result = invoke(root_dir, 'snapshot', 'sandbox', 'create', 'clean')
    assert result.exit_code == 1
    assert 'already exists' in result.output

    result = invoke(root_dir, 'snapshot', 'sandbox', 'revert')
    assert result.exit_code == 1


def test_delete_with_yes(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'delete', 'sandbox', '--yes')
    assert result.exit_code == 0, result.output
    assert not os.path.exists(os.path.join(root_dir, 'sandbox.vmbundle'))


def test_delete_cancelled(root_dir, monkeypatch):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    monkeypatch.setattr(cli, 'confirm', lambda message: False)
    result = invoke(root_dir, 'delete', 'sandbox')
    assert result.exit_code == 0
    assert os.path.isdir(os.path.join(root_dir, 'sandbox.vmbundle'))


def mark_suspended(root_dir):
    bundle = os.path.join(root_dir, 'sandbox.vmbundle')
    store = ConfigStore(bundle)
    config = store.load()
    config.is_suspended = True
    store.save(config)
    with open(os.path.join(bundle, 'suspend.vmstate'), 'wb') as f:
        f.write(b'saved-state')


def test_suspended_vm_status_and_list(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    mark_suspended(root_dir)

    result = invoke(root_dir, 'status', 'sandbox')
    assert "State: suspended (use 'vmbundle resume' to continue)" in result.output
    assert 'suspended' in invoke(root_dir, 'list').output

    result = invoke(root_dir, 'start', 'sandbox')
    assert result.exit_code == 1
    assert "Use 'resume'" in result.output


def test_discard_suspend(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'discard-suspend', 'sandbox')
    assert result.exit_code == 0, result.output
    assert "VM 'sandbox' is not suspended." in result.output

    mark_suspended(root_dir)
    result = invoke(root_dir, 'discard-suspend', 'sandbox')
    assert result.exit_code == 0, result.output
    assert 'Discarded the saved state' in result.output
    assert 'State: stopped' in invoke(root_dir, 'status', 'sandbox').output


def test_resume_not_suspended_exits_1(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'resume', 'sandbox')
    assert result.exit_code == 1
    assert "is not suspended. Use 'start' instead." in result.output


def test_suspend_not_running_exits_1(root_dir):
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')
    result = invoke(root_dir, 'suspend', 'sandbox')
    assert result.exit_code == 1
    assert "VM 'sandbox' is not running." in result.output


def test_detach_iso(root_dir, tmp_path):
    image = tmp_path / 'installer.iso'
    image.write_bytes(b'iso')
    invoke(root_dir, 'init', 'sandbox', '--disk', '0', '--restore-image', str(image))

    result = invoke(root_dir, 'detach-iso', 'sandbox')
    assert result.exit_code == 0, result.output
    assert 'Restore image: none' in invoke(root_dir, 'status', 'sandbox').output

    result = invoke(root_dir, 'detach-iso', 'sandbox')
    assert 'has no installer ISO attached' in result.output


def test_install_detach_iso(root_dir, tmp_path):
    image = tmp_path / 'installer.iso'
    image.write_bytes(b'iso')
    invoke(root_dir, 'init', 'sandbox', '--disk', '0')

    result = invoke(root_dir, 'install', 'sandbox', '--restore-image', str(image), '--detach-iso')
    assert result.exit_code == 0, result.output
    assert 'Installed sandbox (build Fake OS 12.4, version 12.4.0)' in result.output
    output = invoke(root_dir, 'status', 'sandbox').output
    assert 'Restore image: none' in output
    assert 'Installed: yes' in output
