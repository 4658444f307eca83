"""Data models for RAID image provisioning."""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union


class RaidLevel(Enum):
    """RAID levels supported by the provisioner."""
    RAID0 = 0
    RAID1 = 1
    RAID4 = 4
    RAID5 = 5
    RAID6 = 6
    RAID10 = 10

    @classmethod
    def parse(cls, value: Union[int, str, "RaidLevel", None]) -> Optional["RaidLevel"]:
        """
        Parse a level given as an int or a string such as ``"5"`` or ``"raid5"``.

        Returns:
            The matching RaidLevel, or None if the value is not a supported level
        """
        if isinstance(value, RaidLevel):
            return value
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, str):
            text = value.strip().lower()
            if text.startswith('raid'):
                text = text[4:]
            if not text.isdigit():
                return None
            value = int(text)
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def mdadm_name(self) -> str:
        """Level name as understood by ``mdadm --level``."""
        return f"raid{self.value}"


class OrchestratorState(Enum):
    """Lifecycle states of a provisioning run."""
    IDLE = "idle"
    PARSED = "parsed"
    VALIDATED = "validated"
    PROVISIONED = "provisioned"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class DiskSlot:
    """One position in the array: an image file or an absent disk."""
    index: int
    source: Optional[str] = None
    device: Optional[str] = None

    def __post_init__(self):
        if self.index < 1:
            raise ValueError(f"Slot index must be 1-based, got {self.index}")
        if self.source is not None and not self.source:
            raise ValueError(f"Slot {self.index} has an empty source path")
        if self.source is None and self.device is not None:
            raise ValueError(f"Absent slot {self.index} cannot carry a device")

    @property
    def is_absent(self) -> bool:
        return self.source is None

    @classmethod
    def from_argument(cls, index: int, argument: str, absent_marker: str = "missing") -> "DiskSlot":
        """
        Build a slot from a command line argument.

        Args:
            index: 1-based ordinal of the slot
            argument: Image path or the absent marker
            absent_marker: Token that marks the slot as absent

        Returns:
            DiskSlot with an absolute source path, or an absent slot
        """
        if argument == absent_marker:
            return cls(index=index)
        if not argument:
            raise ValueError(f"Slot {index} has an empty source path")
        return cls(index=index, source=os.path.abspath(argument))

    def with_device(self, device: Optional[str]) -> "DiskSlot":
        return replace(self, device=device)

    def describe(self) -> str:
        if self.is_absent:
            return f"slot {self.index} (absent)"
        return f"slot {self.index} ({self.source})"


@dataclass(frozen=True)
class LevelRule:
    """Static fault-tolerance policy for one RAID level."""
    level: RaidLevel
    min_disks: int
    max_faults: Callable[[int], int]
    structure_check: Optional[Callable[[Tuple[DiskSlot, ...]], List[Tuple[int, int]]]] = None


@dataclass(frozen=True)
class RaidRequest:
    """A validated provisioning request."""
    level: RaidLevel
    slots: Tuple[DiskSlot, ...]
    mount_dir: str

    @property
    def disk_count(self) -> int:
        return len(self.slots)

    @property
    def present_slots(self) -> Tuple[DiskSlot, ...]:
        return tuple(slot for slot in self.slots if not slot.is_absent)

    @property
    def absent_slots(self) -> Tuple[DiskSlot, ...]:
        return tuple(slot for slot in self.slots if slot.is_absent)


@dataclass
class ProvisionedArray:
    """Result of a successful provisioning run."""
    array_device: str
    mount_dir: str
    level: RaidLevel
    slots: List[DiskSlot] = field(default_factory=list)
    size_bytes: int = 0

    @property
    def member_devices(self) -> List[Optional[str]]:
        """Loop devices in slot order, None where a slot is absent."""
        return [slot.device for slot in self.slots]

    @property
    def degraded(self) -> bool:
        return any(slot.is_absent for slot in self.slots)
