import os
import threading
import time

import pytest

from vmbundle.config import CONFIG, GIB
from vmbundle.core import VMController
from vmbundle.hypervisor import HypervisorEngine, Requirements, InstallResult


class FakeEngine(HypervisorEngine):
    """In-memory engine that records calls and lets tests drive callbacks."""

    def __init__(self):
        self.min_cpus = 2
        self.min_memory_bytes = 2 * GIB
        self.auto_complete_start = True
        self.stop_after_start = False
        self.start_error = None
        self.graceful_error = None
        self.aux_error = None
        self.install_result = InstallResult(build="Fake OS 12.4", version="12.4.0")
        self.install_error = None
        self.install_hangs = False
        self.install_hook = None
        self.auto_complete_force = False
        self.suspend_error = None
        self.auto_complete_suspend = True

        self.observer = None
        self.spec = None
        self.start_completion = None
        self.force_completion = None
        self.start_calls = 0
        self.graceful_calls = 0
        self.force_calls = 0
        self.progress_values = []
        self.suspend_calls = 0
        self.suspend_completion = None
        self.lock_seen_at_force = None

    def minimum_requirements(self, restore_image):
        return Requirements(self.min_cpus, self.min_memory_bytes, b'{"machine": "fake"}')

    def create_auxiliary_storage(self, path, hardware_model):
        if self.aux_error is not None:
            raise self.aux_error
        with open(path, 'wb') as f:
            f.write(b'aux')

    def validate_configuration(self, spec):
        pass

    def start(self, spec, observer, completion):
        self.start_calls += 1
        self.spec = spec
        self.observer = observer
        self.start_completion = completion
        if not self.auto_complete_start:
            return
        completion(self.start_error)
        if self.start_error is None and self.stop_after_start:
            threading.Timer(0.05, observer.on_guest_stopped).start()

    def complete_start(self, error=None):
        self.start_completion(error)

    def request_graceful_stop(self):
        self.graceful_calls += 1
        if self.graceful_error is not None:
            raise self.graceful_error

    def force_stop(self, completion):
        self.force_calls += 1
        self.force_completion = completion
        if self.spec is not None:
            self.lock_seen_at_force = os.path.exists(os.path.join(self.spec.bundle_dir, 'vmctl.pid'))
        if self.auto_complete_force:
            completion(None)

    def suspend(self, state_path, completion):
        self.suspend_calls += 1
        self.suspend_completion = completion
        if not self.auto_complete_suspend:
            return
        if self.suspend_error is None:
            with open(state_path, 'wb') as f:
                f.write(b'saved-state')
        completion(self.suspend_error)

    def install(self, spec, restore_image, progress, completion):
        self.spec = spec
        if progress:
            progress(0.5)
            self.progress_values.append(0.5)
        if self.install_hook is not None:
            self.install_hook()
        if self.install_hangs:
            return
        completion(None if self.install_error else self.install_result, self.install_error)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setitem(CONFIG, 'VMS_DIR', str(tmp_path / 'VMs'))
    monkeypatch.setitem(CONFIG, 'LOG_DIR', str(tmp_path / 'logs'))
    monkeypatch.setenv('XDG_DATA_HOME', str(tmp_path / 'xdg'))


@pytest.fixture
def root_dir(tmp_path):
    return str(tmp_path / 'VMs')


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def controller(root_dir, engine):
    return VMController(root_dir=root_dir, engine_factory=lambda: engine)


@pytest.fixture
def small_disks(monkeypatch):
    """Allow tiny disk images so snapshot tests copy little data."""
    monkeypatch.setitem(CONFIG, 'MIN_DISK_GIB', 0)


@pytest.fixture
def bundle(controller, small_disks):
    return controller.init_vm('sandbox', disk_gib=0)
