"""
Snapshot management for VM bundles

A snapshot is a directory under <bundle>/Snapshots/<name>/ holding verbatim
copies of the bundle's config, disk and identity blobs. Snapshots are never
modified once created.

Reverting also discards a saved suspend state, which no longer matches
the restored disk.

Reverting copies the live artifacts into a hidden backup directory inside
the bundle before overwriting them. The backup is deleted only after every
artifact was restored; if anything fails it stays on disk so nothing is lost.
"""

import os
import sys
import uuid
import shutil
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from ..core_utils import remove_dir
from ..config_store import ConfigStore
from ..error_handling import ValidationError, ConflictError, NotFoundError, StorageError
from ..ownership_lock import OwnershipLock
from ..vm_paths import get_vm_paths, display_name, SNAPSHOT_ARTIFACTS

logger = logging.getLogger(__name__)

REVERT_BACKUP_PREFIX = ".revert-temp-"


@dataclass
class SnapshotInfo:
    name: str
    path: str
    created: datetime
    size_bytes: int


def validate_snapshot_name(name: str) -> str:
    """Reject names that are empty, hidden or would escape the snapshots directory."""
    if name is None or not name.strip():
        raise ValidationError("Snapshot name must not be empty.")
    if '/' in name or '\\' in name:
        raise ValidationError(f"Invalid snapshot name '{name}': must not contain path separators.")
    if name.startswith('.'):
        raise ValidationError(f"Invalid snapshot name '{name}': must not start with '.'.")
    return name


def copy_artifact(source: str, destination: str) -> None:
    """
    Copy one bundle file, keeping disk images sparse.

    On Linux, cp is used so holes are preserved and copy-on-write clones
    are made where the filesystem supports them.
    """
    if sys.platform.startswith('linux') and shutil.which('cp'):
        result = subprocess.run(
            ['cp', '--sparse=always', '--reflink=auto', '--preserve=mode,timestamps',
             source, destination],
            capture_output=True, text=True
        )
        if result.returncode != 0:
            raise OSError(f"cp {source} {destination} failed: {result.stderr.strip()}")
        return
    shutil.copy2(source, destination)


def _dir_size(path: str) -> int:
    total = 0
    for entry in os.scandir(path):
        if entry.is_file(follow_symlinks=False):
            # Disk images are sparse; report the space actually used.
            total += entry.stat().st_blocks * 512
    return total


class SnapshotManager:
    """Create, list, delete and revert snapshots of one bundle"""

    def __init__(self, bundle_dir: str, lock: Optional[OwnershipLock] = None):
        self.bundle_dir = os.path.abspath(bundle_dir)
        self.paths = get_vm_paths(self.bundle_dir)
        self.snapshots_dir = self.paths['snapshots']
        self.name = display_name(self.bundle_dir)
        self.lock = lock or OwnershipLock(self.bundle_dir)

    def snapshot_path(self, snapshot_name: str) -> str:
        return os.path.join(self.snapshots_dir, validate_snapshot_name(snapshot_name))

    def exists(self, snapshot_name: str) -> bool:
        return os.path.isdir(self.snapshot_path(snapshot_name))

    def create(self, snapshot_name: str) -> str:
        """
        Copy the live artifacts into a new snapshot.

        Every artifact must be present; a missing one is reported before
        anything is written. If a copy fails the partially written snapshot
        is removed.

        Returns:
            str: Path of the new snapshot directory
        """
        target = self.snapshot_path(snapshot_name)
        self.lock.ensure_not_running(
            f"VM '{self.name}' is running. Stop it before creating a snapshot.")
        if os.path.exists(target):
            raise ConflictError(f"Snapshot '{snapshot_name}' already exists for VM '{self.name}'.")
        for filename, key in SNAPSHOT_ARTIFACTS:
            if not os.path.isfile(self.paths[key]):
                raise NotFoundError(f"Cannot snapshot VM '{self.name}': {filename} is missing.")

        try:
            os.makedirs(target)
        except OSError as e:
            raise StorageError(f"Failed to create snapshot directory {target}: {e}", original_exception=e)

        try:
            for filename, key in SNAPSHOT_ARTIFACTS:
                copy_artifact(self.paths[key], os.path.join(target, filename))
        except OSError as e:
            remove_dir(target)
            raise StorageError(f"Failed to create snapshot '{snapshot_name}': {e}", original_exception=e)

        logger.info(f"Created snapshot '{snapshot_name}' for VM '{self.name}'")
        return target

    def revert(self, snapshot_name: str) -> None:
        """
        Restore the bundle's artifacts from a snapshot.

        Raises:
            NotFoundError: no such snapshot
            AlreadyRunningError: the VM is running
            StorageError: a copy failed; the message names the backup directory
        """
        source_dir = self.snapshot_path(snapshot_name)
        if not os.path.isdir(source_dir):
            raise NotFoundError(f"Snapshot '{snapshot_name}' not found for VM '{self.name}'.")
        self.lock.ensure_not_running(
            f"VM '{self.name}' is running. Stop it before reverting to a snapshot.")

        backup_dir = os.path.join(self.bundle_dir, f"{REVERT_BACKUP_PREFIX}{uuid.uuid4()}")
        try:
            os.makedirs(backup_dir)
        except OSError as e:
            raise StorageError(f"Failed to create revert backup {backup_dir}: {e}", original_exception=e)

        try:
            for filename, key in SNAPSHOT_ARTIFACTS:
                live = self.paths[key]
                saved = os.path.join(source_dir, filename)
                if os.path.exists(live):
                    copy_artifact(live, os.path.join(backup_dir, filename))
                if os.path.exists(saved):
                    copy_artifact(saved, live)
        except OSError as e:
            logger.error(f"Revert of '{self.name}' to '{snapshot_name}' failed, backup kept at {backup_dir}")
            raise StorageError(
                f"Failed to revert VM '{self.name}' to snapshot '{snapshot_name}': {e}. "
                f"The previous files are preserved in {backup_dir}.",
                details=f"Copy the files from {backup_dir} back into the bundle to undo a partial revert.",
                context={'backup_dir': backup_dir},
                original_exception=e
            )

        # Saved memory state belongs to the disk that was just replaced
        ConfigStore(self.bundle_dir).clear_suspended()
        remove_dir(backup_dir)
        logger.info(f"Reverted VM '{self.name}' to snapshot '{snapshot_name}'")

    def list(self) -> List[SnapshotInfo]:
        """All snapshots sorted by name. Hidden entries are skipped."""
        if not os.path.isdir(self.snapshots_dir):
            return []
        snapshots = []
        for entry in sorted(os.listdir(self.snapshots_dir)):
            path = os.path.join(self.snapshots_dir, entry)
            if entry.startswith('.') or not os.path.isdir(path):
                continue
            try:
                stat = os.stat(path)
                size = _dir_size(path)
            except OSError as e:
                logger.warning(f"Skipping unreadable snapshot {path}: {e}")
                continue
            snapshots.append(SnapshotInfo(
                name=entry,
                path=path,
                created=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
                size_bytes=size,
            ))
        return snapshots

    def delete(self, snapshot_name: str) -> None:
        target = self.snapshot_path(snapshot_name)
        if not os.path.isdir(target):
            raise NotFoundError(f"Snapshot '{snapshot_name}' not found for VM '{self.name}'.")
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise StorageError(f"Failed to delete snapshot '{snapshot_name}': {e}", original_exception=e)
        logger.info(f"Deleted snapshot '{snapshot_name}' from VM '{self.name}'")
