"""Validation of a requested RAID level against a concrete disk set."""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from . import level_policy
from .errors import RejectReason, ValidationError
from .models import DiskSlot, RaidLevel, RaidRequest


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a disk set: accepted, or rejected with detail."""
    accepted: bool
    level: Optional[RaidLevel]
    slots: Tuple[DiskSlot, ...]
    reason: Optional[RejectReason] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accept(cls, level: RaidLevel, slots: Sequence[DiskSlot]) -> "ValidationResult":
        return cls(accepted=True, level=level, slots=tuple(slots))

    @classmethod
    def reject(cls, level: Optional[RaidLevel], slots: Sequence[DiskSlot],
               reason: RejectReason, /, **detail) -> "ValidationResult":
        return cls(accepted=False, level=level, slots=tuple(slots), reason=reason, detail=detail)

    @property
    def offending_slots(self) -> List[int]:
        return list(self.detail.get('slots', []))

    def raise_for_rejection(self) -> None:
        """Raise ValidationError if this result is a rejection."""
        if not self.accepted:
            raise ValidationError(describe_rejection(self), self.reason, self.detail)

    def to_request(self, mount_dir: str) -> RaidRequest:
        """
        Build the immutable request for an accepted disk set.

        Raises:
            ValidationError: If the disk set was rejected
            ValueError: If mount_dir is empty
        """
        self.raise_for_rejection()
        if not mount_dir or not mount_dir.strip():
            raise ValueError("Mount directory must not be empty")
        return RaidRequest(level=self.level, slots=self.slots, mount_dir=os.path.abspath(mount_dir))


class DiskSetValidator:
    """Applies the level policy to a disk list, first failing rule wins."""

    def __init__(self, is_file: Callable[[str], bool] = os.path.isfile):
        """
        Initialize the validator.

        Args:
            is_file: Predicate telling whether a path is an existing regular file
        """
        self._is_file = is_file

    def validate(self, level: Union[int, str, RaidLevel], disks: Sequence[DiskSlot]) -> ValidationResult:
        """
        Validate a requested level against a disk list.

        Checks run in a fixed order: supported level, minimum disk count,
        even count for RAID10, absent-slot count, RAID10 pairs, and finally
        that every present slot is a regular file.

        Args:
            level: Requested RAID level
            disks: Slots in array order

        Returns:
            ValidationResult describing acceptance or the first failed rule
        """
        slots = tuple(disks)
        ordinals = [slot.index for slot in slots]
        parsed = RaidLevel.parse(level)

        if parsed is None:
            return ValidationResult.reject(
                None, slots, RejectReason.UNSUPPORTED_LEVEL,
                level=level, supported=level_policy.supported_levels(), slots=[],
            )

        rule = level_policy.get_rule(parsed)
        disk_count = len(slots)

        if disk_count < rule.min_disks:
            return ValidationResult.reject(
                parsed, slots, RejectReason.INSUFFICIENT_DISKS,
                level=parsed.value, disk_count=disk_count, min_disks=rule.min_disks, slots=ordinals,
            )

        if level_policy.requires_even_count(parsed) and disk_count % 2 != 0:
            return ValidationResult.reject(
                parsed, slots, RejectReason.ODD_DISK_COUNT_FOR_MIRRORING,
                level=parsed.value, disk_count=disk_count, slots=ordinals,
            )

        absent = [slot.index for slot in slots if slot.is_absent]
        allowed_faults = rule.max_faults(disk_count)
        if len(absent) > allowed_faults:
            return ValidationResult.reject(
                parsed, slots, RejectReason.EXCESSIVE_FAULT_COUNT,
                level=parsed.value, disk_count=disk_count, fault_count=len(absent),
                max_faults=allowed_faults, slots=absent,
            )

        if rule.structure_check is not None:
            broken_pairs = rule.structure_check(slots)
            if broken_pairs:
                return ValidationResult.reject(
                    parsed, slots, RejectReason.UNPAIRED_MIRROR_FAILURE,
                    level=parsed.value, pairs=broken_pairs,
                    slots=[index for pair in broken_pairs for index in pair],
                )

        invalid = [slot for slot in slots if not slot.is_absent and not self._is_file(slot.source)]
        if invalid:
            return ValidationResult.reject(
                parsed, slots, RejectReason.INVALID_DISK_FILE,
                level=parsed.value, slots=[slot.index for slot in invalid],
                paths={slot.index: slot.source for slot in invalid},
            )

        logger.debug(f"Accepted {disk_count} disks ({len(absent)} absent) for {parsed.mdadm_name}")
        return ValidationResult.accept(parsed, slots)


def build_slots(arguments: Sequence[str], absent_marker: str = "missing") -> List[DiskSlot]:
    """Turn positional disk arguments into 1-based slots."""
    return [
        DiskSlot.from_argument(index, argument, absent_marker)
        for index, argument in enumerate(arguments, start=1)
    ]


def describe_rejection(result: ValidationResult) -> str:
    """Render a human-readable diagnostic for a rejected disk set."""
    if result.accepted:
        return "disk set accepted"

    detail = result.detail
    reason = result.reason

    if reason is RejectReason.UNSUPPORTED_LEVEL:
        supported = ', '.join(str(level) for level in detail['supported'])
        return f"Unsupported RAID level {detail['level']!r}; supported levels are {supported}"
    if reason is RejectReason.INSUFFICIENT_DISKS:
        return (f"RAID{detail['level']} needs at least {detail['min_disks']} disks, "
                f"got {detail['disk_count']}")
    if reason is RejectReason.ODD_DISK_COUNT_FOR_MIRRORING:
        return f"RAID{detail['level']} needs an even number of disks, got {detail['disk_count']}"
    if reason is RejectReason.EXCESSIVE_FAULT_COUNT:
        absent = ', '.join(str(index) for index in detail['slots'])
        return (f"RAID{detail['level']} with {detail['disk_count']} disks tolerates at most "
                f"{detail['max_faults']} absent disks, got {detail['fault_count']} (slots {absent})")
    if reason is RejectReason.UNPAIRED_MIRROR_FAILURE:
        pairs = ', '.join(f"{a}+{b}" for a, b in detail['pairs'])
        return f"RAID{detail['level']} mirror pairs with both disks absent: {pairs}"
    if reason is RejectReason.INVALID_DISK_FILE:
        lines = [f"slot {index}: {path}" for index, path in sorted(detail['paths'].items())]
        return "Disk images are not existing regular files: " + '; '.join(lines)
    return f"Rejected: {reason}"
