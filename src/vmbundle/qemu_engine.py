"""
QEMU Hypervisor Engine

Runs bundles with an external qemu-system binary. The engine builds the
command line from a MachineSpec, watches the QEMU process, and talks to it
over a QMP unix socket inside the bundle for shutdown requests.

Suspending pauses the guest and migrates its state into a file in the
bundle; resuming starts QEMU with -incoming reading that file back.

Process exit code 0 is reported as a guest-initiated stop; anything else is
reported as an error carrying the tail of QEMU's log.
"""

import os
import re
import json
import time
import shlex
import shutil
import socket
import logging
import threading
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from .config import CONFIG, GIB
from .core_utils import find_first_existing_path, remove_file
from .error_handling import EngineError, as_engine_error
from .hypervisor import (
    HypervisorEngine, EngineObserver, MachineSpec, Requirements, InstallResult,
    Completion, Progress, InstallCompletion,
)
from .identity import machine_uuid
from .vm_paths import get_vm_paths

logger = logging.getLogger(__name__)

QEMU_LOG_FILENAME = "qemu.log"

# ISO 9660 primary volume descriptor: sector 16, identifier at byte 1,
# volume identifier at byte 40 (32 bytes)
ISO_PVD_OFFSET = 16 * 2048
ISO_VOLUME_ID_OFFSET = ISO_PVD_OFFSET + 40
ISO_VOLUME_ID_LENGTH = 32

VERSION_PATTERN = re.compile(r'(\d+(?:\.\d+){1,2})')


def read_iso_volume_label(path: str) -> Optional[str]:
    """Return the volume label of an ISO 9660 image, or None if it is not one."""
    try:
        with open(path, 'rb') as f:
            f.seek(ISO_PVD_OFFSET + 1)
            if f.read(5) != b'CD001':
                return None
            f.seek(ISO_VOLUME_ID_OFFSET)
            label = f.read(ISO_VOLUME_ID_LENGTH)
    except OSError as e:
        logger.warning(f"Could not read ISO label from {path}: {e}")
        return None
    label = label.decode('ascii', errors='replace').strip()
    return label or None


def parse_version(label: Optional[str]) -> Optional[str]:
    """First dotted number in a label, padded to major.minor.patch."""
    if not label:
        return None
    match = VERSION_PATTERN.search(label.replace('_', ' '))
    if not match:
        return None
    parts = match.group(1).split('.')
    while len(parts) < 3:
        parts.append('0')
    return '.'.join(parts)


def load_hardware_model(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'rb') as f:
            model = json.loads(f.read().decode('utf-8'))
    except (OSError, ValueError) as e:
        raise EngineError(f"Unreadable hardware model {path}: {e}", original_exception=e)
    if not isinstance(model, dict):
        raise EngineError(f"Unsupported hardware model in {path}")
    return model


def build_qemu_command(spec: MachineSpec, firmware_code: str,
                       cdrom: Optional[str] = None) -> List[str]:
    """Build the QEMU command line for a bundle."""
    paths = get_vm_paths(spec.bundle_dir)
    model = load_hardware_model(spec.hardware_model_path)
    with open(spec.machine_identifier_path, 'rb') as f:
        vm_uuid = machine_uuid(f.read())

    machine = model.get('machine', CONFIG['QEMU_MACHINE'])
    qemu_cmd = [
        CONFIG['QEMU_BINARY'],
        "-machine", f"{machine},accel={CONFIG['QEMU_ACCEL']}",
        "-m", f"{spec.memory_bytes // (1024 * 1024)}M",
        "-smp", str(spec.cpus),
        "-uuid", vm_uuid,
        "-qmp", f"unix:{paths['qmp_socket']},server,nowait",
        "-drive", f"if=pflash,format=raw,readonly=on,file={firmware_code}",
        "-drive", f"if=pflash,format=raw,file={spec.auxiliary_storage_path}",
        "-drive", f"file={spec.disk_path},if=virtio,format=raw",
        "-netdev", "user,id=n1",
        "-device", f"virtio-net-pci,netdev=n1{',mac=' + spec.mac_address if spec.mac_address else ''}",
    ]
    if CONFIG['QEMU_ACCEL'] == 'kvm':
        qemu_cmd.extend(["-cpu", "host"])

    if spec.shared_folder_path:
        readonly = ",readonly=on" if spec.shared_folder_read_only else ""
        qemu_cmd.extend([
            "-fsdev", f"local,security_model=mapped-xattr,id=fsdev0,path={spec.shared_folder_path}{readonly}",
            "-device", f"virtio-9p-pci,fsdev=fsdev0,mount_tag={CONFIG['SHARED_DIR_MOUNT_TAG']}",
        ])

    if spec.headless:
        qemu_cmd.extend(["-display", "none"])
    else:
        qemu_cmd.extend(["-display", "gtk,gl=off,window-close=on"])

    if cdrom:
        qemu_cmd.extend(["-cdrom", cdrom, "-boot", "once=d"])

    if spec.restore_state_path:
        qemu_cmd.extend(["-incoming", f"exec:cat {shlex.quote(spec.restore_state_path)}"])

    # A guest reboot ends the process, same as a power-off
    qemu_cmd.extend(["-action", "reboot=shutdown"])
    return qemu_cmd


class QMPClient:
    """
    Minimal client for the QEMU Machine Protocol.

    Messages are newline-delimited JSON. Asynchronous events that arrive
    while waiting for a command reply are skipped.
    """

    def __init__(self, socket_path: str, timeout: float = 5.0):
        self.socket_path = socket_path
        self.timeout = timeout
        self.sock = None
        self._reader = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self.sock is not None

    def connect(self) -> None:
        """Connect and enter command mode; raises OSError on failure."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
            self.sock = sock
            self._reader = sock.makefile('rb')
            greeting = self._read_message()
            if 'QMP' not in greeting:
                raise OSError(f"unexpected QMP greeting: {greeting}")
            self.execute("qmp_capabilities")
        except (OSError, ValueError):
            self.disconnect()
            raise

    def disconnect(self) -> None:
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
            self._reader = None
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None

    def _read_message(self) -> Dict[str, Any]:
        line = self._reader.readline()
        if not line:
            raise OSError("QMP connection closed")
        return json.loads(line.decode('utf-8'))

    def execute(self, command: str, arguments: Dict[str, Any] = None) -> Tuple[bool, Any]:
        """
        Execute a QMP command.

        Returns:
            Tuple of (success, return value or error object)
        """
        if self.sock is None:
            raise OSError("QMP not connected")
        cmd: Dict[str, Any] = {"execute": command}
        if arguments:
            cmd["arguments"] = arguments
        with self._lock:
            self.sock.sendall((json.dumps(cmd) + '\n').encode('utf-8'))
            while True:
                message = self._read_message()
                if 'event' in message:
                    logger.debug(f"QMP event: {message['event']}")
                    continue
                if 'error' in message:
                    return False, message['error']
                return True, message.get('return', {})


class QemuEngine(HypervisorEngine):
    """Runs one bundle at a time under QEMU"""

    def __init__(self):
        self.process: Optional[subprocess.Popen] = None
        self.qmp: Optional[QMPClient] = None
        self._observer: Optional[EngineObserver] = None
        self._stop_completion: Optional[Completion] = None
        self._forced = False
        self._suspended = False
        self._cancelled = False
        self._log_path: Optional[str] = None
        self._state_lock = threading.Lock()

    # --- Requirements and bundle assets ---

    def minimum_requirements(self, restore_image: Optional[str]) -> Requirements:
        model = {
            'machine': CONFIG['QEMU_MACHINE'],
            'arch': CONFIG['QEMU_BINARY'].rsplit('-', 1)[-1],
        }
        if restore_image:
            label = read_iso_volume_label(restore_image)
            if label:
                model['restoreImageLabel'] = label
        return Requirements(
            cpus=int(CONFIG['MIN_CPUS']),
            memory_bytes=int(CONFIG['MIN_MEMORY_GIB']) * GIB,
            hardware_model=json.dumps(model, sort_keys=True).encode('utf-8'),
        )

    def create_auxiliary_storage(self, path: str, hardware_model: bytes) -> None:
        template = find_first_existing_path(CONFIG['UEFI_VARS_PATHS'])
        if not template:
            raise EngineError("Could not find a UEFI variable store template. Install OVMF.")
        try:
            shutil.copyfile(template, path)
        except OSError as e:
            raise EngineError(f"Failed to create auxiliary storage at {path}: {e}", original_exception=e)
        logger.info(f"Created auxiliary storage from {template}")

    def validate_configuration(self, spec: MachineSpec) -> None:
        if not shutil.which(CONFIG['QEMU_BINARY']):
            raise EngineError(f"QEMU binary '{CONFIG['QEMU_BINARY']}' not found in PATH.")
        if not find_first_existing_path(CONFIG['UEFI_CODE_PATHS']):
            raise EngineError("Could not find a valid UEFI firmware file.")
        for label, path in (("Disk image", spec.disk_path),
                            ("Hardware model", spec.hardware_model_path),
                            ("Machine identifier", spec.machine_identifier_path),
                            ("Auxiliary storage", spec.auxiliary_storage_path)):
            if not os.path.isfile(path):
                raise EngineError(f"{label} missing: {path}")
        if spec.cpus < 1:
            raise EngineError("At least one CPU is required.")
        if spec.shared_folder_path and not os.path.isdir(spec.shared_folder_path):
            raise EngineError(f"Shared folder does not exist: {spec.shared_folder_path}")
        if spec.restore_state_path and not os.path.isfile(spec.restore_state_path):
            raise EngineError(f"Saved VM state missing: {spec.restore_state_path}")
        load_hardware_model(spec.hardware_model_path)

    # --- Process lifecycle ---

    def _claim(self) -> None:
        """Reset per-run state; raises EngineError if a VM is still running."""
        with self._state_lock:
            if self.process is not None and self.process.poll() is None:
                raise EngineError("This engine is already running a VM.")
            self._forced = False
            self._suspended = False
            self._cancelled = False
            self._stop_completion = None

    def _launch(self, spec: MachineSpec, cdrom: Optional[str] = None) -> None:
        self.validate_configuration(spec)
        paths = get_vm_paths(spec.bundle_dir)
        remove_file(paths['qmp_socket'])
        firmware = find_first_existing_path(CONFIG['UEFI_CODE_PATHS'])
        cmd = build_qemu_command(spec, firmware, cdrom=cdrom)
        logger.info(f"Launching: {' '.join(cmd)}")

        self._log_path = os.path.join(spec.bundle_dir, QEMU_LOG_FILENAME)
        try:
            with self._state_lock, open(self._log_path, 'wb') as log:
                if self._cancelled:
                    raise EngineError("QEMU launch was cancelled.")
                # Own session so terminal Ctrl+C reaches us, not QEMU
                self.process = subprocess.Popen(
                    cmd, stdin=subprocess.DEVNULL, stdout=log, stderr=log,
                    start_new_session=True
                )
        except OSError as e:
            raise EngineError(f"Failed to launch QEMU: {e}", original_exception=e)

        self.qmp = QMPClient(paths['qmp_socket'], timeout=float(CONFIG['QMP_TIMEOUT']))
        deadline = time.monotonic() + float(CONFIG['START_TIMEOUT'])
        while True:
            if self.process.poll() is not None:
                raise EngineError(self._exit_message(self.process.returncode))
            try:
                self.qmp.connect()
                return
            except (OSError, ValueError) as e:
                if time.monotonic() > deadline:
                    raise EngineError(f"QEMU did not become ready: {e}", original_exception=e)
                time.sleep(0.2)

    def _abandon_launch(self) -> None:
        """Kill whatever a failed launch left running and settle a pending stop."""
        if self.qmp is not None:
            self.qmp.disconnect()
        process = self.process
        if process is not None and process.poll() is None:
            logger.warning(f"Killing QEMU (PID {process.pid}) after a failed launch")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            process.wait()
        with self._state_lock:
            completion, self._stop_completion = self._stop_completion, None
        if completion is not None:
            completion(None)

    def _log_tail(self, lines: int = 5) -> str:
        if not self._log_path:
            return ""
        try:
            with open(self._log_path, 'r', encoding='utf-8', errors='replace') as f:
                return ' | '.join(line.strip() for line in f.readlines()[-lines:] if line.strip())
        except OSError:
            return ""

    def _exit_message(self, code: int) -> str:
        tail = self._log_tail()
        message = f"QEMU exited with status {code}"
        return f"{message}: {tail}" if tail else message

    def _watch(self, on_exit) -> None:
        code = self.process.wait()
        logger.info(f"QEMU exited with status {code}")
        if self.qmp is not None:
            self.qmp.disconnect()
        with self._state_lock:
            completion, self._stop_completion = self._stop_completion, None
            forced = self._forced
        if completion is not None:
            completion(None)
        on_exit(code, forced)

    def _resume_incoming(self) -> None:
        """Wait for the saved state to load, then let the guest run."""
        deadline = time.monotonic() + float(CONFIG['SUSPEND_TIMEOUT'])
        while True:
            ok, result = self.qmp.execute("query-status")
            if not ok:
                raise EngineError(f"Could not query VM status: {result}")
            status = result.get('status')
            if status != 'inmigrate':
                break
            if time.monotonic() > deadline:
                raise EngineError("Timed out restoring the saved VM state.")
            time.sleep(0.2)
        if status == 'running':
            return
        ok, result = self.qmp.execute("cont")
        if not ok:
            raise EngineError(f"Could not resume the VM: {result}")

    def start(self, spec: MachineSpec, observer: EngineObserver, completion: Completion) -> None:
        self._claim()
        self._observer = observer

        def boot():
            try:
                self._launch(spec)
                if spec.restore_state_path:
                    self._resume_incoming()
            except Exception as e:
                logger.error(f"Failed to start VM from {spec.bundle_dir}: {e}")
                self._abandon_launch()
                completion(as_engine_error(e))
                return
            completion(None)
            self._watch(self._report_exit)

        threading.Thread(target=boot, name="qemu-boot", daemon=True).start()

    def _report_exit(self, code: int, forced: bool) -> None:
        observer = self._observer
        if observer is None or self._suspended:
            return
        if code == 0 or forced:
            observer.on_guest_stopped()
        else:
            observer.on_error(EngineError(self._exit_message(code)))

    def request_graceful_stop(self) -> None:
        if self.process is None or self.process.poll() is not None:
            raise EngineError("VM is not running.")
        try:
            ok, result = self.qmp.execute("system_powerdown")
        except (OSError, ValueError) as e:
            raise EngineError(f"Could not request shutdown: {e}", original_exception=e)
        if not ok:
            raise EngineError(f"Could not request shutdown: {result}")

    def _quit(self) -> None:
        try:
            self.qmp.execute("quit")
        except (OSError, ValueError) as e:
            logger.warning(f"QMP quit failed ({e}); killing QEMU")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def force_stop(self, completion: Completion) -> None:
        with self._state_lock:
            if self.process is None or self.process.poll() is not None:
                # Nothing running yet; a launch still in progress must not start one
                self._cancelled = True
                already_stopped = True
            else:
                already_stopped = False
                self._forced = True
                self._stop_completion = completion
        if already_stopped:
            completion(None)
            return
        self._quit()

    # --- Suspend ---

    def _save_state(self, state_path: str) -> None:
        ok, result = self.qmp.execute("stop")
        if not ok:
            raise EngineError(f"Could not pause the VM: {result}")
        remove_file(state_path)
        ok, result = self.qmp.execute("migrate", {"uri": f"exec:cat > {shlex.quote(state_path)}"})
        if not ok:
            raise EngineError(f"Could not save the VM state: {result}")
        deadline = time.monotonic() + float(CONFIG['SUSPEND_TIMEOUT'])
        while True:
            ok, result = self.qmp.execute("query-migrate")
            if not ok:
                raise EngineError(f"Could not query the state save: {result}")
            status = result.get('status')
            if status == 'completed':
                return
            if status in ('failed', 'cancelled'):
                raise EngineError(f"Saving the VM state failed: {result.get('error-desc', status)}")
            if time.monotonic() > deadline:
                self.qmp.execute("migrate_cancel")
                raise EngineError("Timed out saving the VM state.")
            time.sleep(0.2)

    def _continue(self) -> None:
        try:
            ok, result = self.qmp.execute("cont")
        except (OSError, ValueError) as e:
            ok, result = False, e
        if not ok:
            logger.error(f"Could not resume the VM after a failed suspend: {result}")

    def suspend(self, state_path: str, completion: Completion) -> None:
        if self.process is None or self.process.poll() is not None:
            raise EngineError("VM is not running.")

        def save():
            try:
                self._save_state(state_path)
            except Exception as e:
                logger.error(f"Suspend failed: {e}")
                remove_file(state_path)
                self._continue()
                completion(as_engine_error(e))
                return
            with self._state_lock:
                running = self.process.poll() is None
                if running:
                    self._suspended = True
                    self._stop_completion = completion
            if not running:
                completion(EngineError(self._exit_message(self.process.returncode)))
                return
            logger.info(f"Saved VM state to {state_path}")
            self._quit()

        threading.Thread(target=save, name="qemu-suspend", daemon=True).start()

    # --- Installation ---

    def install(self, spec: MachineSpec, restore_image: str,
                progress: Optional[Progress], completion: InstallCompletion) -> None:
        self._claim()
        label = read_iso_volume_label(restore_image)

        def run():
            if progress:
                progress(0.0)
            try:
                self._launch(spec, cdrom=restore_image)
            except Exception as e:
                logger.error(f"Failed to start the installer: {e}")
                self._abandon_launch()
                completion(None, as_engine_error(e))
                return
            outcome = {}
            self._watch(lambda code, forced: outcome.update(code=code, forced=forced))
            if outcome['code'] != 0 or outcome['forced']:
                completion(None, EngineError(
                    "Installation was interrupted." if outcome['forced'] else self._exit_message(outcome['code'])))
                return
            if progress:
                progress(1.0)
            completion(InstallResult(build=label, version=parse_version(label)), None)

        threading.Thread(target=run, name="qemu-install", daemon=True).start()
