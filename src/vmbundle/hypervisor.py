"""
Hypervisor engine contract

The session state machine and the controller drive a VM only through
HypervisorEngine. Engines report asynchronous events back through an
EngineObserver registered when the VM is started; callbacks may arrive on
any thread.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class Requirements:
    """Minimum resources a restore image needs, plus the hardware model it targets"""
    cpus: int
    memory_bytes: int
    hardware_model: bytes


@dataclass
class MachineSpec:
    """Everything an engine needs to boot one bundle"""
    bundle_dir: str
    cpus: int
    memory_bytes: int
    disk_path: str
    hardware_model_path: str
    machine_identifier_path: str
    auxiliary_storage_path: str
    mac_address: Optional[str] = None
    shared_folder_path: Optional[str] = None
    shared_folder_read_only: bool = True
    headless: bool = False
    # Saved state to resume from instead of booting
    restore_state_path: Optional[str] = None


@dataclass
class InstallResult:
    build: Optional[str] = None
    version: Optional[str] = None


# completion(error) where error is None on success
Completion = Callable[[Optional[BaseException]], None]
# progress(fraction) with fraction in [0, 1]
Progress = Callable[[float], None]
InstallCompletion = Callable[[Optional[InstallResult], Optional[BaseException]], None]


class EngineObserver(ABC):
    """Receives events for a VM after it has started"""

    @abstractmethod
    def on_guest_stopped(self) -> None:
        """The guest shut down or the engine confirmed a stop request."""

    @abstractmethod
    def on_error(self, error: BaseException) -> None:
        """The VM stopped because of an error."""


class HypervisorEngine(ABC):
    """
    Executes virtual machines for bundles.

    One engine instance drives at most one VM at a time.
    """

    @abstractmethod
    def minimum_requirements(self, restore_image: Optional[str]) -> Requirements:
        """Minimum CPUs and memory for a restore image, and the hardware model to persist."""

    @abstractmethod
    def create_auxiliary_storage(self, path: str, hardware_model: bytes) -> None:
        """Create the firmware/NVRAM blob at path."""

    @abstractmethod
    def validate_configuration(self, spec: MachineSpec) -> None:
        """Raise EngineError if spec cannot be booted."""

    @abstractmethod
    def start(self, spec: MachineSpec, observer: EngineObserver, completion: Completion) -> None:
        """Boot the VM; completion is called once start succeeded or failed."""

    @abstractmethod
    def request_graceful_stop(self) -> None:
        """Ask the guest to shut down. Raise EngineError if that cannot be delivered."""

    @abstractmethod
    def force_stop(self, completion: Completion) -> None:
        """Stop the VM immediately."""

    @abstractmethod
    def suspend(self, state_path: str, completion: Completion) -> None:
        """
        Pause the VM, save its state to state_path and stop it.

        On failure the VM keeps running and completion gets the error. On
        success the VM is stopped without an observer callback.
        """

    @abstractmethod
    def install(self, spec: MachineSpec, restore_image: str,
                progress: Optional[Progress], completion: InstallCompletion) -> None:
        """Install the guest OS from restore_image onto the bundle's disk."""
