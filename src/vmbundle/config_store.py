"""
Bundle configuration persistence

StoredConfig is the versioned metadata kept in <bundle>/config.json.
ConfigStore loads it, normalizes the paths it holds and writes it back
atomically.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .core_utils import utc_now, format_timestamp, parse_timestamp, expand_path, write_file_atomic, remove_file
from .error_handling import NotFoundError, ConfigDecodeError, StorageError
from .vm_paths import (
    get_vm_paths, display_name,
    DISK_FILENAME, HARDWARE_MODEL_FILENAME,
    MACHINE_IDENTIFIER_FILENAME, AUXILIARY_STORAGE_FILENAME,
)

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1

# Attribute names of paths stored relative to the bundle directory
BUNDLE_RELATIVE_FIELDS = (
    'hardware_model_path',
    'machine_identifier_path',
    'auxiliary_storage_path',
    'disk_path',
)

# Attribute names of paths stored as absolute host paths
HOST_ABSOLUTE_FIELDS = (
    'restore_image_path',
    'shared_folder_path',
)

# JSON keys that older versions wrote and this version no longer keeps
LEGACY_KEYS = ('name',)


@dataclass
class StoredConfig:
    """Persistent VM metadata"""
    cpus: int
    memory_bytes: int
    disk_bytes: int
    restore_image_path: Optional[str] = None
    hardware_model_path: str = HARDWARE_MODEL_FILENAME
    machine_identifier_path: str = MACHINE_IDENTIFIER_FILENAME
    auxiliary_storage_path: str = AUXILIARY_STORAGE_FILENAME
    disk_path: str = DISK_FILENAME
    shared_folder_path: Optional[str] = None
    shared_folder_read_only: bool = True
    installed: bool = False
    last_install_build: Optional[str] = None
    last_install_version: Optional[str] = None
    last_install_date: Optional[datetime] = None
    mac_address: Optional[str] = None
    is_suspended: bool = False
    created_at: datetime = field(default_factory=utc_now)
    modified_at: datetime = field(default_factory=utc_now)
    version: int = CONFIG_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk JSON shape"""
        return {
            'version': self.version,
            'createdAt': format_timestamp(self.created_at),
            'modifiedAt': format_timestamp(self.modified_at),
            'cpus': self.cpus,
            'memoryBytes': self.memory_bytes,
            'diskBytes': self.disk_bytes,
            'restoreImagePath': self.restore_image_path,
            'hardwareModelPath': self.hardware_model_path,
            'machineIdentifierPath': self.machine_identifier_path,
            'auxiliaryStoragePath': self.auxiliary_storage_path,
            'diskPath': self.disk_path,
            'sharedFolderPath': self.shared_folder_path,
            'sharedFolderReadOnly': self.shared_folder_read_only,
            'installed': self.installed,
            'lastInstallBuild': self.last_install_build,
            'lastInstallVersion': self.last_install_version,
            'lastInstallDate': format_timestamp(self.last_install_date) if self.last_install_date else None,
            'macAddress': self.mac_address,
            'isSuspended': self.is_suspended,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoredConfig':
        """Create from the on-disk JSON shape; raises KeyError/TypeError/ValueError on bad input"""
        if not isinstance(data, dict):
            raise TypeError("configuration root must be an object")
        last_install = data.get('lastInstallDate')
        config = cls(
            cpus=int(data['cpus']),
            memory_bytes=int(data['memoryBytes']),
            disk_bytes=int(data['diskBytes']),
            restore_image_path=data.get('restoreImagePath'),
            hardware_model_path=data.get('hardwareModelPath') or HARDWARE_MODEL_FILENAME,
            machine_identifier_path=data.get('machineIdentifierPath') or MACHINE_IDENTIFIER_FILENAME,
            auxiliary_storage_path=data.get('auxiliaryStoragePath') or AUXILIARY_STORAGE_FILENAME,
            disk_path=data.get('diskPath') or DISK_FILENAME,
            shared_folder_path=data.get('sharedFolderPath'),
            shared_folder_read_only=bool(data.get('sharedFolderReadOnly', True)),
            installed=bool(data.get('installed', False)),
            last_install_build=data.get('lastInstallBuild'),
            last_install_version=data.get('lastInstallVersion'),
            last_install_date=parse_timestamp(last_install) if last_install else None,
            mac_address=data.get('macAddress'),
            is_suspended=bool(data.get('isSuspended', False)),
            version=int(data.get('version', CONFIG_VERSION)),
        )
        if data.get('createdAt'):
            config.created_at = parse_timestamp(data['createdAt'])
        if data.get('modifiedAt'):
            config.modified_at = parse_timestamp(data['modifiedAt'])
        else:
            config.modified_at = config.created_at
        return config

    def normalize(self, bundle_dir: str) -> bool:
        """
        Rewrite stored paths into their canonical form.

        Bundle-relative fields: an absolute path inside the bundle becomes
        relative to it, an absolute path elsewhere is reduced to its file
        name. Host paths get '~' expanded and are made absolute.

        Returns:
            bool: True if any field changed. A second call always returns False.
        """
        bundle_dir = os.path.realpath(bundle_dir)
        changed = False
        for name in BUNDLE_RELATIVE_FIELDS:
            value = getattr(self, name)
            if not value or not os.path.isabs(value):
                continue
            resolved = os.path.realpath(value)
            if resolved.startswith(bundle_dir + os.sep):
                new_value = os.path.relpath(resolved, bundle_dir)
            else:
                new_value = os.path.basename(value)
            setattr(self, name, new_value)
            changed = True
        for name in HOST_ABSOLUTE_FIELDS:
            value = getattr(self, name)
            if not value:
                continue
            new_value = expand_path(value)
            if new_value != value:
                setattr(self, name, new_value)
                changed = True
        return changed

    def resolve(self, bundle_dir: str, name: str) -> str:
        """Absolute path of a bundle-relative field"""
        return os.path.join(os.path.abspath(bundle_dir), getattr(self, name))


class ConfigStore:
    """Loads and saves one bundle's config.json"""

    def __init__(self, bundle_dir: str):
        self.bundle_dir = os.path.abspath(bundle_dir)
        self.path = get_vm_paths(self.bundle_dir)['config']

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> StoredConfig:
        """
        Read and normalize the configuration.

        If normalization changed anything the result is saved straight away.

        Raises:
            NotFoundError: config.json does not exist
            ConfigDecodeError: the file is not a valid configuration
            StorageError: the file could not be read or rewritten
        """
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise NotFoundError(f"No configuration found for VM '{display_name(self.bundle_dir)}' at {self.path}.")
        except ValueError as e:
            raise ConfigDecodeError(f"Failed to decode {self.path}: {e}", original_exception=e)
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}", original_exception=e)

        try:
            config = StoredConfig.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigDecodeError(f"Invalid configuration in {self.path}: {e}", original_exception=e)

        changed = config.normalize(self.bundle_dir)
        if any(key in raw for key in LEGACY_KEYS):
            changed = True
        if changed:
            logger.info(f"Normalized configuration in {self.path}")
            self.save(config)
        return config

    def save(self, config: StoredConfig) -> None:
        """
        Stamp modifiedAt, normalize and atomically replace config.json.

        Raises:
            StorageError: the file could not be written
        """
        config.modified_at = utc_now()
        config.normalize(self.bundle_dir)
        payload = json.dumps(config.to_dict(), indent=2, sort_keys=True) + "\n"
        try:
            write_file_atomic(self.path, payload.encode('utf-8'))
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}", original_exception=e)
        logger.debug(f"Saved configuration to {self.path}")

    def clear_suspended(self, config: Optional[StoredConfig] = None) -> bool:
        """
        Forget a saved suspend state: delete the state file and reset the flag.

        Returns:
            bool: True if there was anything to clear
        """
        config = config or self.load()
        state_path = get_vm_paths(self.bundle_dir)['suspend_state']
        had_state = os.path.exists(state_path)
        remove_file(state_path)
        if not config.is_suspended:
            return had_state
        config.is_suspended = False
        self.save(config)
        logger.info(f"Cleared suspend state of '{display_name(self.bundle_dir)}'")
        return True
