"""
Configuration module for vmbundle

This module provides the application settings. Defaults live in CONFIG and
are overridden by an optional user file and a few environment variables.
"""

import os
import json
import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

# Default configuration
CONFIG = {
    'VMS_DIR': os.path.join(os.path.expanduser('~'), 'VMs'),
    'LOG_DIR': os.path.join(os.path.expanduser('~'), '.local', 'state', 'vmbundle', 'logs'),
    'LOG_LEVEL': 'INFO',
    'BUNDLE_EXTENSION': 'vmbundle',
    'QEMU_BINARY': 'qemu-system-x86_64',
    'QEMU_MACHINE': 'q35',
    'QEMU_ACCEL': 'kvm',
    'SHARED_DIR_MOUNT_TAG': 'vmbundle-shared',
    'DEFAULT_CPUS': 4,
    'DEFAULT_MEMORY_GIB': 8,
    'DEFAULT_DISK_GIB': 64,
    'MIN_CPUS': 1,
    'MIN_MEMORY_GIB': 1,
    'MIN_DISK_GIB': 20,
    'STOP_TIMEOUT': 30,
    'START_TIMEOUT': 10,
    'QMP_TIMEOUT': 5,
    'SUSPEND_TIMEOUT': 120,
    # UEFI firmware paths (in order of preference)
    'UEFI_CODE_PATHS': [
        '/usr/share/edk2-ovmf/x64/OVMF_CODE.4m.fd',
        '/usr/share/OVMF/OVMF_CODE.4m.fd',
        '/usr/share/OVMF/OVMF_CODE.fd',
        '/usr/share/edk2/ovmf/OVMF_CODE.fd',
        '/usr/share/qemu/edk2-x86_64-code.fd',
    ],
    # UEFI variable store templates, copied into each bundle as auxiliary storage
    'UEFI_VARS_PATHS': [
        '/usr/share/edk2-ovmf/x64/OVMF_VARS.4m.fd',
        '/usr/share/OVMF/OVMF_VARS.4m.fd',
        '/usr/share/OVMF/OVMF_VARS.fd',
        '/usr/share/edk2/ovmf/OVMF_VARS.fd',
        '/usr/share/qemu/edk2-i386-vars.fd',
    ],
}

CONFIG_FILE = os.environ.get(
    'VMBUNDLE_CONFIG',
    os.path.join(os.path.expanduser('~'), '.config', 'vmbundle', 'config.json')
)


def load_config(path: str = None) -> Dict[str, Any]:
    """
    Load configuration from file and environment

    Args:
        path: Optional configuration file, defaults to CONFIG_FILE

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    path = path or CONFIG_FILE
    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                user_config = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load configuration from {path}: {e}")
        else:
            if isinstance(user_config, dict):
                CONFIG.update(user_config)
                logger.info(f"Loaded configuration from {path}")
            else:
                logger.error(f"Ignoring configuration file {path}: top level is not an object")
    else:
        logger.debug(f"Configuration file {path} not found, using defaults")

    home = os.environ.get('VMBUNDLE_HOME')
    if home:
        CONFIG['VMS_DIR'] = os.path.abspath(os.path.expanduser(home))

    return CONFIG


# Load configuration on module import
load_config()
