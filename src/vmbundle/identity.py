"""
Machine identity generation

Each bundle gets a stable machine identifier (a UUID stored as 16 raw
bytes) and a persistent MAC address.
"""

import random
import uuid


def generate_machine_identifier() -> bytes:
    """Raw bytes for MachineIdentifier.bin"""
    return uuid.uuid4().bytes


def machine_uuid(identifier: bytes) -> str:
    """The UUID string encoded by a machine identifier blob"""
    return str(uuid.UUID(bytes=identifier[:16]))


def generate_mac_address() -> str:
    """Generate a MAC address with QEMU's locally administered prefix"""
    return f"52:54:00:{random.randint(0, 255):02x}:{random.randint(0, 255):02x}:{random.randint(0, 255):02x}"
