"""
VM Controller

The façade behind every user-facing command: create, install, start, stop,
suspend and resume, inspect, edit, list and delete bundles, plus their
snapshots. The controller
holds no state of its own between calls; everything lives in the bundles.
"""

import os
import time
import signal
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import psutil

from .config import CONFIG, GIB
from .config_store import ConfigStore, StoredConfig
from .core_utils import (
    utc_now, gib_to_bytes, format_gib, format_timestamp, expand_path,
    write_file_atomic, remove_dir, move_to_trash,
)
from .error_handling import (
    VMBundleError, ValidationError, AlreadyRunningError,
    NotFoundError, ConflictError, StorageError, EngineError, as_engine_error,
)
from .hypervisor import HypervisorEngine, MachineSpec, InstallResult, Progress
from .identity import generate_machine_identifier, generate_mac_address
from .ownership_lock import OwnershipLock, OwnerKind, LockOwner, is_process_alive
from .qemu_engine import QemuEngine
from .session_manager import VMSession, SessionState
from .signals import SignalListener
from .storage.snapshots import SnapshotManager, SnapshotInfo
from .vm_paths import get_vm_paths, resolve_bundle_path, display_name, is_bundle_dir

logger = logging.getLogger(__name__)


class StopOutcome(Enum):
    NOT_RUNNING = "not_running"
    STALE = "stale"
    GRACEFUL = "graceful"
    FORCED = "forced"


@dataclass
class VMStatus:
    name: str
    path: str
    config: StoredConfig
    owner: Optional[LockOwner]
    snapshot_count: int = 0

    @property
    def running(self) -> bool:
        return self.owner is not None

    @property
    def suspended(self) -> bool:
        return self.owner is None and self.config.is_suspended


@dataclass
class VMListEntry:
    name: str
    path: str
    cpus: int
    memory_bytes: int
    disk_bytes: int
    installed: bool
    owner: Optional[LockOwner]
    suspended: bool = False

    @property
    def running(self) -> bool:
        return self.owner is not None


def format_status(status: VMStatus) -> List[str]:
    """Human-readable status lines for one VM."""
    config = status.config
    lines = [f"VM: {status.name}", f"Path: {status.path}"]
    if status.owner is None and config.is_suspended:
        lines.append("State: suspended (use 'vmbundle resume' to continue)")
    elif status.owner is None:
        lines.append("State: stopped")
    elif status.owner.is_embedded:
        lines.append(f"State: running (embedded host, PID {status.owner.pid})")
    else:
        lines.append(f"State: running (PID {status.owner.pid})")
    lines.append(
        f"vCPUs: {config.cpus}, Memory: {config.memory_bytes / GIB:.1f} GiB, "
        f"Disk: {config.disk_bytes / GIB:.1f} GiB"
    )
    lines.append(f"Restore image: {config.restore_image_path or 'none'}")
    if config.shared_folder_path:
        mode = "read-only" if config.shared_folder_read_only else "read-write"
        lines.append(f"Shared folder: {config.shared_folder_path} ({mode})")
    else:
        lines.append("Shared folder: none")
    if config.installed:
        details = [f"build {config.last_install_build or 'unknown'}"]
        if config.last_install_version:
            details.append(f"version {config.last_install_version}")
        if config.last_install_date:
            details.append(f"on {format_timestamp(config.last_install_date)}")
        lines.append(f"Installed: yes ({', '.join(details)})")
    else:
        lines.append("Installed: no")
    if config.mac_address:
        lines.append(f"MAC address: {config.mac_address}")
    lines.append(f"Snapshots: {status.snapshot_count}")
    return lines


def _log_suspend_failure(future) -> None:
    error = future.exception()
    if error is not None:
        logger.warning(f"Suspend request failed: {error}")


def _kill_leftovers(children: List[psutil.Process]) -> None:
    """Kill processes a stopped owner left running."""
    for child in children:
        try:
            if child.is_running():
                logger.info(f"Killing leftover process {child.pid}")
                child.kill()
        except psutil.Error:
            pass


class VMController:
    """
    Lifecycle operations on VM bundles.

    Args:
        root_dir: Directory holding bundles; defaults to CONFIG['VMS_DIR']
        engine_factory: Returns a fresh HypervisorEngine per operation
    """

    def __init__(self, root_dir: Optional[str] = None,
                 engine_factory: Callable[[], HypervisorEngine] = QemuEngine):
        self.root_dir = os.path.abspath(os.path.expanduser(root_dir or CONFIG['VMS_DIR']))
        self.engine_factory = engine_factory

    # --- Helpers ---

    def bundle_path(self, name: str) -> str:
        try:
            return resolve_bundle_path(name, self.root_dir)
        except ValueError as e:
            raise ValidationError(str(e))

    def _require_bundle(self, name: str) -> str:
        path = self.bundle_path(name)
        if not os.path.isdir(path):
            raise NotFoundError(f"VM '{display_name(path)}' not found at {path}.")
        return path

    def _machine_spec(self, bundle_dir: str, config: StoredConfig, headless: bool = False) -> MachineSpec:
        return MachineSpec(
            bundle_dir=bundle_dir,
            cpus=config.cpus,
            memory_bytes=config.memory_bytes,
            disk_path=config.resolve(bundle_dir, 'disk_path'),
            hardware_model_path=config.resolve(bundle_dir, 'hardware_model_path'),
            machine_identifier_path=config.resolve(bundle_dir, 'machine_identifier_path'),
            auxiliary_storage_path=config.resolve(bundle_dir, 'auxiliary_storage_path'),
            mac_address=config.mac_address,
            shared_folder_path=config.shared_folder_path,
            shared_folder_read_only=config.shared_folder_read_only,
            headless=headless,
        )

    @staticmethod
    def _check_resources(engine: HypervisorEngine, restore_image: Optional[str],
                         cpus: Optional[int], memory_bytes: Optional[int]):
        requirements = engine.minimum_requirements(restore_image)
        if cpus is not None and cpus < max(1, requirements.cpus):
            raise ValidationError(f"At least {max(1, requirements.cpus)} vCPUs are required.")
        if memory_bytes is not None:
            if memory_bytes <= 0:
                raise ValidationError("Memory must be greater than zero.")
            if memory_bytes < requirements.memory_bytes:
                raise ValidationError(f"At least {format_gib(requirements.memory_bytes)} of memory is required.")
        return requirements

    @staticmethod
    def _check_shared_folder(path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        resolved = expand_path(path)
        if not os.path.isdir(resolved):
            raise ValidationError(f"Shared folder does not exist or is not a directory: {resolved}")
        return resolved

    def _ensure_mac_address(self, store: ConfigStore, config: StoredConfig) -> None:
        """Older bundles predate persistent MAC addresses; give them one."""
        if config.mac_address:
            return
        config.mac_address = generate_mac_address()
        store.save(config)
        logger.info(f"Assigned MAC address {config.mac_address} to '{display_name(store.bundle_dir)}'")

    # --- Operations ---

    def init_vm(self, name: str, cpus: Optional[int] = None, memory_gib: Optional[int] = None,
                disk_gib: Optional[int] = None, restore_image: Optional[str] = None,
                shared_folder: Optional[str] = None, shared_folder_writable: bool = False) -> str:
        """
        Create and initialize a new bundle.

        All arguments are validated before anything is written. If a later
        step fails, the partially created bundle is removed.

        Returns:
            str: Path of the new bundle
        """
        bundle_dir = self.bundle_path(name)
        vm_name = display_name(bundle_dir)
        if os.path.exists(bundle_dir):
            raise ConflictError(f"VM '{vm_name}' already exists at {bundle_dir}.")

        cpus = CONFIG['DEFAULT_CPUS'] if cpus is None else cpus
        memory_gib = CONFIG['DEFAULT_MEMORY_GIB'] if memory_gib is None else memory_gib
        disk_gib = CONFIG['DEFAULT_DISK_GIB'] if disk_gib is None else disk_gib

        if restore_image:
            restore_image = expand_path(restore_image)
            if not os.path.isfile(restore_image):
                raise ValidationError(f"Restore image not found: {restore_image}")
        engine = self.engine_factory()
        requirements = self._check_resources(engine, restore_image, cpus, gib_to_bytes(memory_gib))
        if disk_gib < CONFIG['MIN_DISK_GIB']:
            raise ValidationError(f"Disk size must be at least {CONFIG['MIN_DISK_GIB']} GiB.")
        shared_folder = self._check_shared_folder(shared_folder)

        try:
            os.makedirs(os.path.dirname(bundle_dir), exist_ok=True)
            os.mkdir(bundle_dir)
        except FileExistsError:
            raise ConflictError(f"VM '{vm_name}' already exists at {bundle_dir}.")
        except OSError as e:
            raise StorageError(f"Failed to create bundle directory {bundle_dir}: {e}", original_exception=e)

        paths = get_vm_paths(bundle_dir)
        try:
            write_file_atomic(paths['hardware_model'], requirements.hardware_model)
            write_file_atomic(paths['machine_identifier'], generate_machine_identifier())
            engine.create_auxiliary_storage(paths['auxiliary_storage'], requirements.hardware_model)
            with open(paths['disk'], 'wb') as disk:
                disk.truncate(gib_to_bytes(disk_gib))
            os.mkdir(paths['snapshots'])

            now = utc_now()
            config = StoredConfig(
                cpus=cpus,
                memory_bytes=gib_to_bytes(memory_gib),
                disk_bytes=gib_to_bytes(disk_gib),
                restore_image_path=restore_image,
                shared_folder_path=shared_folder,
                shared_folder_read_only=not shared_folder_writable,
                mac_address=generate_mac_address(),
                created_at=now,
                modified_at=now,
            )
            ConfigStore(bundle_dir).save(config)
        except Exception as e:
            logger.error(f"Initialization of '{vm_name}' failed, removing {bundle_dir}: {e}")
            remove_dir(bundle_dir)
            if isinstance(e, OSError):
                raise StorageError(f"Failed to initialize VM '{vm_name}': {e}", original_exception=e)
            raise

        logger.info(f"Initialized VM '{vm_name}' at {bundle_dir}")
        return bundle_dir

    def install_vm(self, name: str, restore_image: Optional[str] = None,
                   progress: Optional[Progress] = None, headless: bool = False,
                   signal_listener: Optional[SignalListener] = None,
                   detach_iso: bool = False) -> InstallResult:
        """
        Install the guest OS, blocking until the engine finishes.

        The bundle is locked for the whole installation. SIGINT, SIGTERM and
        SIGHUP abort it: the installer is forced off and the lock is released
        only once the engine confirmed the stop. With detach_iso the restore
        image is forgotten after a successful install.
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        store = ConfigStore(bundle_dir)
        config = store.load()
        if config.is_suspended:
            raise ValidationError(
                f"VM '{vm_name}' is suspended. Resume it or discard the saved state before installing.")

        image = expand_path(restore_image) if restore_image else config.restore_image_path
        if not image:
            raise ValidationError(f"VM '{vm_name}' has no restore image. Pass one to install.")
        if not os.path.isfile(image):
            raise ValidationError(f"Restore image not found: {image}")

        lock = OwnershipLock(bundle_dir)
        lock.acquire(OwnerKind.CLI)
        engine = None
        release = True
        done = threading.Event()
        interrupted = threading.Event()
        outcome = {}
        listener = signal_listener or SignalListener()
        listener.install(lambda signum: interrupted.set())
        try:
            engine = self.engine_factory()
            self._ensure_mac_address(store, config)
            spec = self._machine_spec(bundle_dir, config, headless=headless)

            def completion(result, error):
                outcome['result'] = result
                outcome['error'] = error
                done.set()

            logger.info(f"Installing '{vm_name}' from {image}")
            engine.install(spec, image, progress, completion)
            while not done.wait(0.2):
                if interrupted.is_set():
                    raise EngineError(f"Installation of '{vm_name}' was interrupted.")
            if outcome['error'] is not None:
                raise as_engine_error(outcome['error'])

            result = outcome['result'] or InstallResult()
            config.installed = True
            config.last_install_build = result.build
            config.last_install_version = result.version
            config.last_install_date = utc_now()
            config.restore_image_path = None if detach_iso else image
            store.save(config)
        except BaseException:
            if engine is not None and not done.is_set():
                release = self._abort_install(engine, vm_name)
            raise
        finally:
            listener.uninstall()
            if release:
                lock.release()

        logger.info(f"Installed '{vm_name}' (build {result.build}, version {result.version})")
        return result

    @staticmethod
    def _abort_install(engine: HypervisorEngine, vm_name: str) -> bool:
        """Force an unfinished installer off. True once the engine confirmed the stop."""
        logger.warning(f"Aborting installation of '{vm_name}'")
        stopped = threading.Event()
        try:
            engine.force_stop(lambda error: stopped.set())
        except Exception as e:
            logger.error(f"Could not stop the installer of '{vm_name}': {e}")
            return False
        if stopped.wait(float(CONFIG['STOP_TIMEOUT'])):
            return True
        # The lock turns stale once this process exits
        logger.error(f"Installer of '{vm_name}' did not stop within {CONFIG['STOP_TIMEOUT']}s, keeping its lock")
        return False

    def _session(self, name: str, owner_kind: OwnerKind, headless: bool, resume: bool = False) -> VMSession:
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        lock = OwnershipLock(bundle_dir)
        lock.ensure_not_running()
        store = ConfigStore(bundle_dir)
        config = store.load()
        state_path = get_vm_paths(bundle_dir)['suspend_state']
        if resume:
            if not config.is_suspended:
                raise ValidationError(f"VM '{vm_name}' is not suspended. Use 'start' instead.")
            if not os.path.isfile(state_path):
                raise NotFoundError(
                    f"Suspend state file missing for '{vm_name}'. Use 'discard-suspend' to reset state.")
        elif config.is_suspended:
            raise ValidationError(
                f"VM '{vm_name}' is suspended. Use 'resume' to continue it or 'discard-suspend' to boot it fresh.")
        self._ensure_mac_address(store, config)
        spec = self._machine_spec(bundle_dir, config, headless=headless)
        if resume:
            spec.restore_state_path = state_path
        session = VMSession(bundle_dir, self.engine_factory(), spec, owner_kind=owner_kind, lock=lock)

        def mark_suspended():
            saved = store.load()
            saved.is_suspended = True
            store.save(saved)

        session.add_suspend_handler(mark_suspended)
        if resume:
            def forget_saved_state(state):
                if state == SessionState.RUNNING:
                    store.clear_suspended()

            session.add_state_observer(forget_saved_state)
        return session

    def make_embedded_session(self, name: str, headless: bool = False, resume: bool = False) -> VMSession:
        """A not-yet-started session owned by an embedding application."""
        return self._session(name, OwnerKind.EMBEDDED, headless, resume=resume)

    def start_vm(self, name: str, headless: bool = False,
                 signal_listener: Optional[SignalListener] = None,
                 on_state: Optional[Callable[[SessionState], None]] = None) -> Optional[BaseException]:
        """
        Run a VM in the foreground until it stops.

        SIGINT and SIGTERM are forwarded to the session as stop signals:
        the first asks the guest to shut down, the second forces it off.
        SIGHUP suspends the VM into its bundle.

        Returns:
            The error the VM stopped with, or None after a clean shutdown or suspend
        """
        session = self._session(name, OwnerKind.CLI, headless)
        return self._run_foreground(session, signal_listener, on_state)

    def resume_vm(self, name: str, headless: bool = False,
                  signal_listener: Optional[SignalListener] = None,
                  on_state: Optional[Callable[[SessionState], None]] = None) -> Optional[BaseException]:
        """
        Continue a suspended VM in the foreground until it stops.

        Signals are handled as in start_vm. The saved state is removed once
        the VM runs again; if resuming fails it is kept.
        """
        session = self._session(name, OwnerKind.CLI, headless, resume=True)
        return self._run_foreground(session, signal_listener, on_state)

    @staticmethod
    def _run_foreground(session: VMSession, signal_listener: Optional[SignalListener],
                        on_state: Optional[Callable[[SessionState], None]]) -> Optional[BaseException]:
        if on_state is not None:
            session.add_state_observer(on_state)

        def on_signal(signum):
            if signum == signal.SIGHUP:
                session.request_suspend().add_done_callback(_log_suspend_failure)
            else:
                session.request_stop()

        listener = signal_listener or SignalListener()
        listener.install(on_signal)
        try:
            future = session.start()
            while True:
                try:
                    future.result(timeout=0.5)
                    break
                except FutureTimeoutError:
                    continue
            session.wait_until_stopped()
            return session.error
        finally:
            listener.uninstall()
            session.close()

    def stop_vm(self, name: str, timeout: Optional[float] = None,
                poll_interval: float = 1.0) -> StopOutcome:
        """
        Stop a VM owned by another process.

        Sends SIGTERM to the owning CLI process and polls until it exits. If
        it is still alive after timeout seconds it is killed. Child processes
        it leaves behind are killed in either case, then the lock record is
        removed. Embedded sessions must be stopped from their host application.
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        timeout = CONFIG['STOP_TIMEOUT'] if timeout is None else timeout
        lock = OwnershipLock(bundle_dir)

        owner = lock.read()
        if owner is None:
            logger.info(f"VM '{vm_name}' is not running")
            return StopOutcome.NOT_RUNNING
        if owner.is_embedded:
            raise AlreadyRunningError(
                f"VM '{vm_name}' is running inside an embedded host (PID {owner.pid}). "
                f"Stop it from the application that owns it.")
        if not is_process_alive(owner.pid):
            logger.info(f"Stale lock for '{vm_name}' (PID {owner.pid}), cleaning up")
            lock.release()
            return StopOutcome.STALE

        try:
            children = psutil.Process(owner.pid).children(recursive=True)
        except psutil.Error:
            children = []

        logger.info(f"Sending SIGTERM to PID {owner.pid} for '{vm_name}'")
        try:
            os.kill(owner.pid, signal.SIGTERM)
        except ProcessLookupError:
            lock.release()
            return StopOutcome.STALE

        outcome = StopOutcome.FORCED
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(poll_interval)
            if not is_process_alive(owner.pid):
                logger.info(f"VM '{vm_name}' stopped")
                outcome = StopOutcome.GRACEFUL
                break

        if outcome == StopOutcome.FORCED:
            logger.warning(f"PID {owner.pid} did not exit within {timeout}s, sending SIGKILL")
            try:
                os.kill(owner.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        _kill_leftovers(children)
        lock.release()
        return outcome

    def suspend_vm(self, name: str, timeout: Optional[float] = None,
                   poll_interval: float = 1.0) -> bool:
        """
        Suspend a VM run by another vmbundle process.

        Sends SIGHUP to the owning CLI process and waits until it released
        the bundle.

        Returns:
            bool: True if the VM's state was saved
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        timeout = CONFIG['SUSPEND_TIMEOUT'] if timeout is None else timeout
        lock = OwnershipLock(bundle_dir)

        owner = lock.read()
        if owner is not None and owner.is_embedded:
            raise AlreadyRunningError(
                f"VM '{vm_name}' is running inside an embedded host (PID {owner.pid}). "
                f"Suspend it from the application that owns it.")
        if owner is None or lock.live_owner() is None:
            raise ValidationError(f"VM '{vm_name}' is not running.")

        logger.info(f"Sending SIGHUP to PID {owner.pid} for '{vm_name}'")
        try:
            os.kill(owner.pid, signal.SIGHUP)
        except ProcessLookupError:
            lock.release()
            raise ValidationError(f"VM '{vm_name}' is not running.")

        released = False
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(poll_interval)
            if lock.live_owner() != owner:
                released = True
                break
        if not released:
            raise EngineError(f"VM '{vm_name}' did not suspend within {timeout:g} seconds.")
        return ConfigStore(bundle_dir).load().is_suspended

    def discard_suspend(self, name: str) -> bool:
        """
        Throw away a suspended VM's saved state so it boots fresh.

        Returns:
            bool: False if the VM was not suspended
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        OwnershipLock(bundle_dir).ensure_not_running(f"Stop VM '{vm_name}' before discarding its saved state.")
        store = ConfigStore(bundle_dir)
        config = store.load()
        if not config.is_suspended:
            logger.info(f"VM '{vm_name}' is not suspended")
            return False
        store.clear_suspended(config)
        return True

    def detach_iso(self, name: str) -> bool:
        """
        Forget the restore image of a stopped VM.

        Returns:
            bool: False if no restore image was attached
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        store = ConfigStore(bundle_dir)
        config = store.load()
        if not config.restore_image_path:
            logger.info(f"VM '{vm_name}' has no restore image attached")
            return False
        OwnershipLock(bundle_dir).ensure_not_running(f"Stop VM '{vm_name}' before detaching the installer ISO.")
        config.restore_image_path = None
        store.save(config)
        logger.info(f"Detached restore image from '{vm_name}'")
        return True

    def status(self, name: str) -> VMStatus:
        """Configuration and live ownership of one VM; stale locks are cleaned."""
        bundle_dir = self._require_bundle(name)
        config = ConfigStore(bundle_dir).load()
        owner = OwnershipLock(bundle_dir).live_owner()
        return VMStatus(
            name=display_name(bundle_dir),
            path=bundle_dir,
            config=config,
            owner=owner,
            snapshot_count=len(SnapshotManager(bundle_dir).list()),
        )

    def edit_settings(self, name: str, cpus: Optional[int] = None, memory_gib: Optional[int] = None,
                      shared_folder: Optional[str] = None, shared_folder_writable: Optional[bool] = None,
                      clear_shared_folder: bool = False) -> StoredConfig:
        """Change CPU, memory or shared-folder settings of a stopped VM."""
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        OwnershipLock(bundle_dir).ensure_not_running(f"Stop VM '{vm_name}' before editing its settings.")
        store = ConfigStore(bundle_dir)
        config = store.load()

        memory_bytes = gib_to_bytes(memory_gib) if memory_gib is not None else None
        if memory_gib is not None and memory_gib <= 0:
            raise ValidationError("Memory must be greater than zero.")
        restore_image = config.restore_image_path
        if restore_image and not os.path.isfile(restore_image):
            restore_image = None
        self._check_resources(self.engine_factory(), restore_image, cpus, memory_bytes)
        if shared_folder and clear_shared_folder:
            raise ValidationError("Cannot set and clear the shared folder at the same time.")
        shared_folder = self._check_shared_folder(shared_folder)

        if cpus is not None:
            config.cpus = cpus
        if memory_bytes is not None:
            config.memory_bytes = memory_bytes
        if clear_shared_folder:
            config.shared_folder_path = None
            config.shared_folder_read_only = True
        elif shared_folder:
            config.shared_folder_path = shared_folder
        if shared_folder_writable is not None:
            config.shared_folder_read_only = not shared_folder_writable

        store.save(config)
        logger.info(f"Updated settings of '{vm_name}'")
        return config

    def list_vms(self, root: Optional[str] = None) -> List[VMListEntry]:
        """All readable bundles under root (default: the controller's root), sorted by name."""
        root = os.path.abspath(os.path.expanduser(root)) if root else self.root_dir
        if not os.path.isdir(root):
            return []
        entries = []
        for entry in os.listdir(root):
            path = os.path.join(root, entry)
            if entry.startswith('.') or not is_bundle_dir(path):
                continue
            try:
                config = ConfigStore(path).load()
            except VMBundleError as e:
                logger.warning(f"Skipping unreadable bundle {path}: {e}")
                continue
            entries.append(VMListEntry(
                name=display_name(path),
                path=path,
                cpus=config.cpus,
                memory_bytes=config.memory_bytes,
                disk_bytes=config.disk_bytes,
                installed=config.installed,
                owner=OwnershipLock(path).live_owner(),
                suspended=config.is_suspended,
            ))
        entries.sort(key=lambda e: e.name.lower())
        return entries

    def delete_vm(self, name: str) -> str:
        """
        Move a stopped VM's bundle to the trash.

        Returns:
            str: Where the bundle now lives
        """
        bundle_dir = self._require_bundle(name)
        vm_name = display_name(bundle_dir)
        OwnershipLock(bundle_dir).ensure_not_running(f"Stop VM '{vm_name}' before deleting it.")
        try:
            destination = move_to_trash(bundle_dir)
        except OSError as e:
            raise StorageError(f"Failed to move VM '{vm_name}' to the trash: {e}", original_exception=e)
        return destination

    # --- Snapshots ---

    def snapshot(self, name: str, action: str, snapshot_name: str) -> Optional[str]:
        """Run a snapshot action: create, revert or delete."""
        manager = SnapshotManager(self._require_bundle(name))
        if action == 'create':
            return manager.create(snapshot_name)
        if action == 'revert':
            manager.revert(snapshot_name)
            return None
        if action == 'delete':
            manager.delete(snapshot_name)
            return None
        raise ValidationError(f"Unknown snapshot action '{action}'. Use create, revert, delete or list.")

    def list_snapshots(self, name: str) -> List[SnapshotInfo]:
        return SnapshotManager(self._require_bundle(name)).list()
