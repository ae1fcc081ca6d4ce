"""
Ownership lock for running bundles

A running bundle carries a one-line record in <bundle>/vmctl.pid naming the
owning process and whether it is a CLI session or an embedded one. A record
whose process has exited is stale and reads as absent; probing removes it.
"""

import os
import tempfile
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import psutil

from .core_utils import remove_file
from .error_handling import AlreadyRunningError, StorageError
from .vm_paths import get_vm_paths, display_name

logger = logging.getLogger(__name__)

EMBEDDED_PREFIX = "embedded:"


class OwnerKind(Enum):
    CLI = "cli"
    EMBEDDED = "embedded"


@dataclass(frozen=True)
class LockOwner:
    kind: OwnerKind
    pid: int

    @property
    def is_embedded(self) -> bool:
        return self.kind == OwnerKind.EMBEDDED


def parse_lock_record(text: str) -> Optional[LockOwner]:
    """Parse a lock record; anything unrecognised reads as no owner."""
    text = text.strip()
    kind = OwnerKind.CLI
    if text.startswith(EMBEDDED_PREFIX):
        kind = OwnerKind.EMBEDDED
        text = text[len(EMBEDDED_PREFIX):]
    if not text.isdigit():
        return None
    pid = int(text)
    if pid <= 0:
        return None
    return LockOwner(kind, pid)


def format_lock_record(owner: LockOwner) -> str:
    if owner.is_embedded:
        return f"{EMBEDDED_PREFIX}{owner.pid}\n"
    return f"{owner.pid}\n"


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process exists and has not exited.

    Zombies count as dead. A process we are not allowed to inspect exists,
    so it counts as alive.
    """
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def running_message(name: str, owner: LockOwner) -> str:
    """User-facing message for a bundle that is already owned."""
    if owner.is_embedded:
        return (f"VM '{name}' is running inside an embedded host (PID {owner.pid}). "
                f"Stop it there before continuing.")
    return f"VM '{name}' is already running under PID {owner.pid}."


class OwnershipLock:
    """The lock record of one bundle"""

    def __init__(self, bundle_dir: str):
        self.bundle_dir = os.path.abspath(bundle_dir)
        self.path = get_vm_paths(self.bundle_dir)['lock_file']
        self.name = display_name(self.bundle_dir)

    def read(self) -> Optional[LockOwner]:
        """The recorded owner, without checking liveness."""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return parse_lock_record(f.read())
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read lock file {self.path}: {e}")
            return None

    def live_owner(self) -> Optional[LockOwner]:
        """
        The live owner, or None.

        A record pointing at a dead process is deleted. An unparseable record
        is left on disk and treated as absent.
        """
        owner = self.read()
        if owner is None:
            return None
        if is_process_alive(owner.pid):
            return owner
        logger.info(f"Removing stale lock for '{self.name}' (PID {owner.pid})")
        remove_file(self.path)
        return None

    def is_running(self) -> bool:
        return self.live_owner() is not None

    def ensure_not_running(self, message: Optional[str] = None) -> None:
        """
        Raise AlreadyRunningError if a live owner exists.

        Args:
            message: Replaces the default message for CLI owners. Embedded
                owners always get the embedded wording.
        """
        owner = self.live_owner()
        if owner is None:
            return
        if message and not owner.is_embedded:
            raise AlreadyRunningError(message)
        raise AlreadyRunningError(running_message(self.name, owner))

    def _create_record(self, owner: LockOwner) -> bool:
        """Link a complete record into place; False if one already exists."""
        fd, tmp_path = tempfile.mkstemp(prefix=".vmctl.pid.tmp-", dir=self.bundle_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(format_lock_record(owner))
            os.link(tmp_path, self.path)
            return True
        except FileExistsError:
            return False
        finally:
            remove_file(tmp_path)

    def acquire(self, kind: OwnerKind, pid: Optional[int] = None) -> LockOwner:
        """
        Record this process as the owner.

        The record is written to a temp file and hard-linked into place, so
        it never exists half written and of two processes racing past the
        liveness check only one succeeds.

        Raises:
            AlreadyRunningError: a live owner exists or another process won
            StorageError: the record could not be written
        """
        self.ensure_not_running()
        owner = LockOwner(kind, pid or os.getpid())
        try:
            created = self._create_record(owner)
            if not created and self.read() is None:
                # Unparseable leftovers do not block a new owner.
                logger.warning(f"Replacing unreadable lock record {self.path}")
                remove_file(self.path)
                created = self._create_record(owner)
        except OSError as e:
            raise StorageError(f"Failed to create lock file {self.path}: {e}", original_exception=e)
        if not created:
            current = self.live_owner()
            if current is not None:
                raise AlreadyRunningError(running_message(self.name, current))
            raise AlreadyRunningError(f"VM '{self.name}' is being started by another process.")

        logger.info(f"Acquired {owner.kind.value} lock for '{self.name}' (PID {owner.pid})")
        return owner

    def release(self) -> None:
        """Delete the record. Safe to call when nothing was acquired."""
        if remove_file(self.path):
            logger.info(f"Released lock for '{self.name}'")
