"""
Bundle storage operations.
"""

from .snapshots import SnapshotManager, SnapshotInfo, validate_snapshot_name

__all__ = ['SnapshotManager', 'SnapshotInfo', 'validate_snapshot_name']
