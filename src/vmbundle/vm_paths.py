"""
VM Bundle Path Utilities

Resolves where each piece of a bundle lives on disk. Nothing here touches
the filesystem except is_bundle_dir.
"""

import os

from .config import CONFIG

CONFIG_FILENAME = "config.json"
DISK_FILENAME = "disk.img"
HARDWARE_MODEL_FILENAME = "HardwareModel.bin"
MACHINE_IDENTIFIER_FILENAME = "MachineIdentifier.bin"
AUXILIARY_STORAGE_FILENAME = "AuxiliaryStorage.bin"
LOCK_FILENAME = "vmctl.pid"
SNAPSHOTS_DIRNAME = "Snapshots"
SUSPEND_STATE_FILENAME = "suspend.vmstate"

# Files copied into every snapshot, paired with their get_vm_paths key
SNAPSHOT_ARTIFACTS = (
    (CONFIG_FILENAME, "config"),
    (DISK_FILENAME, "disk"),
    (HARDWARE_MODEL_FILENAME, "hardware_model"),
    (MACHINE_IDENTIFIER_FILENAME, "machine_identifier"),
    (AUXILIARY_STORAGE_FILENAME, "auxiliary_storage"),
)


def get_vm_paths(bundle_dir):
    """
    Returns a dictionary of paths for a given bundle directory.
    """
    bundle_dir = os.path.abspath(bundle_dir)
    return {
        "dir": bundle_dir,
        "config": os.path.join(bundle_dir, CONFIG_FILENAME),
        "disk": os.path.join(bundle_dir, DISK_FILENAME),
        "hardware_model": os.path.join(bundle_dir, HARDWARE_MODEL_FILENAME),
        "machine_identifier": os.path.join(bundle_dir, MACHINE_IDENTIFIER_FILENAME),
        "auxiliary_storage": os.path.join(bundle_dir, AUXILIARY_STORAGE_FILENAME),
        "lock_file": os.path.join(bundle_dir, LOCK_FILENAME),
        "snapshots": os.path.join(bundle_dir, SNAPSHOTS_DIRNAME),
        "suspend_state": os.path.join(bundle_dir, SUSPEND_STATE_FILENAME),
        "qmp_socket": os.path.join(bundle_dir, "qmp.sock"),
    }


def bundle_suffix():
    return "." + CONFIG['BUNDLE_EXTENSION']


def resolve_bundle_path(name_or_path, root_dir=None):
    """
    Maps a VM name or bundle path to an absolute bundle directory.

    Anything containing a path separator or already ending in the bundle
    extension is treated as a path. A bare name resolves to
    <root_dir>/<name>.vmbundle.
    """
    if not name_or_path:
        raise ValueError("VM name must not be empty")
    expanded = os.path.expanduser(name_or_path)
    if os.sep in name_or_path or name_or_path.endswith(bundle_suffix()):
        return os.path.abspath(expanded)
    root_dir = root_dir or CONFIG['VMS_DIR']
    return os.path.abspath(os.path.join(os.path.expanduser(root_dir), name_or_path + bundle_suffix()))


def display_name(bundle_dir):
    """The VM name shown to users: the bundle directory name without its extension."""
    name = os.path.basename(os.path.normpath(bundle_dir))
    if name.endswith(bundle_suffix()):
        name = name[:-len(bundle_suffix())]
    return name


def is_bundle_dir(path):
    return os.path.isdir(path) and path.endswith(bundle_suffix())
