"""Error taxonomy for validation and provisioning failures."""

from enum import Enum
from typing import Any, Dict, Optional


class RejectReason(Enum):
    """Why a disk set was rejected for the requested level."""
    UNSUPPORTED_LEVEL = "unsupported_level"
    INSUFFICIENT_DISKS = "insufficient_disks"
    ODD_DISK_COUNT_FOR_MIRRORING = "odd_disk_count_for_mirroring"
    EXCESSIVE_FAULT_COUNT = "excessive_fault_count"
    UNPAIRED_MIRROR_FAILURE = "unpaired_mirror_failure"
    INVALID_DISK_FILE = "invalid_disk_file"


class RaidMountError(RuntimeError):
    """Base class for all raidmount failures."""

    def __init__(self, message: str, *, state: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.state = state or {}


class ConfigError(RaidMountError):
    """Raised when the configuration is invalid."""


class ValidationError(RaidMountError):
    """Raised when a disk set does not satisfy the level policy."""

    def __init__(self, message: str, reason: RejectReason, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, state=dict(detail or {}))
        self.reason = reason
        self.detail = dict(detail or {})


class ProvisionError(RaidMountError):
    """Raised when a resource could not be acquired. The ledger is already unwound."""

    step = "provision"

    @property
    def rollback_failures(self) -> list:
        return self.state.get("rollback_failures", [])


class MountpointConflict(ProvisionError):
    """The target path exists but cannot be used as a mount point."""

    step = "mountpoint"


class AttachmentFailure(ProvisionError):
    """An image file could not be attached as a loop device."""

    step = "attach"


class AssemblyFailure(ProvisionError):
    """The md array could not be created."""

    step = "assemble"


class MountFailure(ProvisionError):
    """The assembled array could not be mounted."""

    step = "mount"
