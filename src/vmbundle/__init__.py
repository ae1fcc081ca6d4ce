"""
vmbundle - lifecycle manager for self-contained virtual machine bundles.
"""

__version__ = "0.1.0"

from .core import VMController, VMStatus, VMListEntry, StopOutcome
from .session_manager import VMSession, SessionState
from .ownership_lock import OwnershipLock, OwnerKind, LockOwner
from .config_store import ConfigStore, StoredConfig

__all__ = [
    'VMController', 'VMStatus', 'VMListEntry', 'StopOutcome',
    'VMSession', 'SessionState',
    'OwnershipLock', 'OwnerKind', 'LockOwner',
    'ConfigStore', 'StoredConfig',
]
