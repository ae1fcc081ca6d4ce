import json
import os
import shutil
import stat
import sys
import tempfile
import uuid

import pytest

from tests.conftest import wait_for
from vmbundle.config import CONFIG, GIB
from vmbundle.error_handling import EngineError
from vmbundle.hypervisor import EngineObserver, MachineSpec
from vmbundle.ownership_lock import OwnershipLock
from vmbundle.qemu_engine import QemuEngine
from vmbundle.session_manager import VMSession, SessionState

# Stand-in for qemu-system-*: serves QMP on the -qmp socket and records its
# arguments next to the socket. FAKE_QEMU_FAIL makes it exit before QMP is
# up; FAKE_QEMU_EXIT_CODE makes it exit once QMP is negotiated.
FAKE_QEMU = r'''#!PYTHON
import json, os, shlex, socket, sys, time

args = sys.argv[1:]


def option(flag):
    return args[args.index(flag) + 1] if flag in args else None


if os.environ.get('FAKE_QEMU_FAIL'):
    sys.stderr.write('qemu: could not open disk image\n')
    sys.exit(3)

qmp_path = option('-qmp')[len('unix:'):].split(',')[0]
with open(os.path.join(os.path.dirname(qmp_path), 'fake-qemu-args.json'), 'w') as f:
    json.dump(args, f)
status = 'inmigrate' if option('-incoming') else 'running'

server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
server.bind(qmp_path)
server.listen(1)
conn, _ = server.accept()


def send(message):
    conn.sendall((json.dumps(message) + '\n').encode('utf-8'))


send({'QMP': {'version': {}, 'capabilities': []}})
for line in conn.makefile('rb'):
    command = json.loads(line)
    name = command['execute']
    arguments = command.get('arguments', {})
    if name == 'qmp_capabilities':
        send({'return': {}})
        exit_code = os.environ.get('FAKE_QEMU_EXIT_CODE')
        if exit_code is not None:
            if exit_code != '0':
                sys.stderr.write('guest kernel panic\n')
            sys.exit(int(exit_code))
    elif name == 'system_powerdown':
        send({'event': 'POWERDOWN'})
        send({'return': {}})
        sys.exit(0)
    elif name == 'quit':
        send({'return': {}})
        sys.exit(0)
    elif name == 'stop':
        status = 'paused'
        send({'return': {}})
    elif name == 'cont':
        status = 'running'
        send({'return': {}})
    elif name == 'migrate':
        target = shlex.split(arguments['uri'][len('exec:'):])[-1]
        with open(target, 'wb') as f:
            f.write(b'saved-state')
        send({'return': {}})
    elif name == 'query-migrate':
        send({'return': {'status': 'completed'}})
    elif name == 'query-status':
        if status == 'inmigrate':
            status = 'paused'
        send({'return': {'status': status}})
    else:
        send({'error': {'class': 'CommandNotFound', 'desc': name}})

# Like QEMU, keep running once the monitor client is gone
while True:
    time.sleep(1)
'''


class RecordingObserver(EngineObserver):
    def __init__(self):
        self.events = []

    def on_guest_stopped(self):
        self.events.append('stopped')

    def on_error(self, error):
        self.events.append(error)


@pytest.fixture
def fake_qemu(tmp_path, monkeypatch):
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()
    script = bin_dir / 'qemu-system-fake'
    script.write_text(FAKE_QEMU.replace('PYTHON', sys.executable, 1))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    firmware = tmp_path / 'OVMF_CODE.fd'
    firmware.write_bytes(b'code')

    monkeypatch.setenv('PATH', f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setitem(CONFIG, 'QEMU_BINARY', 'qemu-system-fake')
    monkeypatch.setitem(CONFIG, 'QEMU_ACCEL', 'tcg')
    monkeypatch.setitem(CONFIG, 'UEFI_CODE_PATHS', [str(firmware)])
    monkeypatch.setitem(CONFIG, 'START_TIMEOUT', 10)
    monkeypatch.setitem(CONFIG, 'SUSPEND_TIMEOUT', 10)
    monkeypatch.delenv('FAKE_QEMU_FAIL', raising=False)
    monkeypatch.delenv('FAKE_QEMU_EXIT_CODE', raising=False)
    return script


@pytest.fixture
def spec(fake_qemu):
    # Unix socket paths are short; keep the bundle out of the deep tmp_path
    root = tempfile.mkdtemp(prefix='vmb', dir='/tmp')
    bundle = os.path.join(root, 'sandbox.vmbundle')
    os.mkdir(bundle)
    files = {
        'disk.img': b'',
        'HardwareModel.bin': json.dumps({'machine': 'q35'}).encode(),
        'MachineIdentifier.bin': uuid.uuid4().bytes,
        'AuxiliaryStorage.bin': b'vars',
    }
    for name, data in files.items():
        with open(os.path.join(bundle, name), 'wb') as f:
            f.write(data)
    yield MachineSpec(
        bundle_dir=bundle, cpus=1, memory_bytes=1 * GIB,
        disk_path=os.path.join(bundle, 'disk.img'),
        hardware_model_path=os.path.join(bundle, 'HardwareModel.bin'),
        machine_identifier_path=os.path.join(bundle, 'MachineIdentifier.bin'),
        auxiliary_storage_path=os.path.join(bundle, 'AuxiliaryStorage.bin'),
        headless=True,
    )
    shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def engines():
    created = []

    def make():
        engine = QemuEngine()
        created.append(engine)
        return engine

    yield make
    for engine in created:
        if engine.process is not None and engine.process.poll() is None:
            engine.process.kill()
            engine.process.wait()


def boot(engine, spec, observer=None):
    results = []
    engine.start(spec, observer or RecordingObserver(), results.append)
    assert wait_for(lambda: results, timeout=15)
    return results[0]


def recorded_args(spec):
    with open(os.path.join(spec.bundle_dir, 'fake-qemu-args.json')) as f:
        return json.load(f)


def test_boot_then_guest_shutdown(engines, spec):
    engine = engines()
    observer = RecordingObserver()

    assert boot(engine, spec, observer) is None
    assert engine.process.poll() is None
    assert engine.qmp.connected
    assert '-incoming' not in recorded_args(spec)

    engine.request_graceful_stop()

    assert wait_for(lambda: observer.events == ['stopped'], timeout=10)
    assert engine.process.returncode == 0
    assert not engine.qmp.connected


def test_force_stop_live_process(engines, spec):
    engine = engines()
    observer = RecordingObserver()
    assert boot(engine, spec, observer) is None

    stopped = []
    engine.force_stop(stopped.append)

    assert wait_for(lambda: stopped == [None], timeout=10)
    assert wait_for(lambda: observer.events == ['stopped'])
    assert engine.process.returncode == 0


def test_force_stop_kills_when_qmp_is_gone(engines, spec):
    engine = engines()
    observer = RecordingObserver()
    assert boot(engine, spec, observer) is None
    engine.qmp.disconnect()

    stopped = []
    engine.force_stop(stopped.append)

    assert wait_for(lambda: stopped == [None], timeout=10)
    assert engine.process.returncode < 0
    # Forced exits count as a stop, never as an error
    assert wait_for(lambda: observer.events == ['stopped'])


def test_crash_reports_exit_status_and_log(engines, spec, monkeypatch):
    monkeypatch.setenv('FAKE_QEMU_EXIT_CODE', '4')
    engine = engines()
    observer = RecordingObserver()

    assert boot(engine, spec, observer) is None

    assert wait_for(lambda: observer.events, timeout=10)
    error = observer.events[0]
    assert isinstance(error, EngineError)
    assert str(error).startswith('QEMU exited with status 4')
    assert 'guest kernel panic' in str(error)


def test_launch_failure_reports_log(engines, spec, monkeypatch):
    monkeypatch.setenv('FAKE_QEMU_FAIL', '1')
    engine = engines()
    observer = RecordingObserver()

    error = boot(engine, spec, observer)

    assert isinstance(error, EngineError)
    assert 'status 3' in str(error)
    assert 'could not open disk image' in str(error)
    assert observer.events == []


def test_report_exit_mapping():
    engine = QemuEngine()
    observer = RecordingObserver()
    engine._observer = observer

    engine._report_exit(0, False)
    engine._report_exit(137, True)
    engine._report_exit(2, False)
    engine._suspended = True
    engine._report_exit(2, False)

    assert observer.events[:2] == ['stopped', 'stopped']
    assert isinstance(observer.events[2], EngineError)
    assert str(observer.events[2]).startswith('QEMU exited with status 2')
    assert len(observer.events) == 3


def test_bad_machine_identifier_stops_session_and_releases_lock(engines, spec):
    with open(spec.machine_identifier_path, 'wb'):
        pass
    session = VMSession(spec.bundle_dir, engines(), spec)
    try:
        error = session.start().exception(timeout=15)

        assert isinstance(error, EngineError)
        assert session.wait_until_stopped(5)
        assert session.state == SessionState.STOPPED
        assert OwnershipLock(spec.bundle_dir).read() is None
    finally:
        session.close()


def test_suspend_then_resume(engines, spec):
    state_path = os.path.join(spec.bundle_dir, 'suspend.vmstate')
    engine = engines()
    observer = RecordingObserver()
    assert boot(engine, spec, observer) is None

    suspended = []
    engine.suspend(state_path, suspended.append)

    assert wait_for(lambda: suspended, timeout=10)
    assert suspended == [None]
    assert wait_for(lambda: engine.process.poll() is not None)
    with open(state_path, 'rb') as f:
        assert f.read() == b'saved-state'
    # A suspended VM stops without an observer callback
    assert observer.events == []

    spec.restore_state_path = state_path
    resumed = engines()
    assert boot(resumed, spec) is None
    args = recorded_args(spec)
    assert args[args.index('-incoming') + 1] == f'exec:cat {state_path}'
    ok, result = resumed.qmp.execute('query-status')
    assert ok and result['status'] == 'running'


def test_install_reports_build_from_iso(engines, spec, tmp_path, monkeypatch):
    monkeypatch.setenv('FAKE_QEMU_EXIT_CODE', '0')
    iso = tmp_path / 'os.iso'
    data = bytearray(17 * 2048)
    data[16 * 2048 + 1:16 * 2048 + 6] = b'CD001'
    data[16 * 2048 + 40:16 * 2048 + 72] = b'Debian 12.5.0 amd64'.ljust(32)
    iso.write_bytes(bytes(data))
    progress = []
    results = []

    engines().install(spec, str(iso), progress.append, lambda result, error: results.append((result, error)))

    assert wait_for(lambda: results, timeout=15)
    result, error = results[0]
    assert error is None
    assert result.build == 'Debian 12.5.0 amd64'
    assert result.version == '12.5.0'
    assert progress == [0.0, 1.0]
    args = recorded_args(spec)
    assert args[args.index('-cdrom') + 1] == str(iso)
