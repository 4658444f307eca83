"""Minimum disk counts and fault tolerance for each supported RAID level."""

from typing import Dict, List, Sequence, Tuple

from .models import DiskSlot, LevelRule, RaidLevel


def unpaired_mirror_failures(slots: Sequence[DiskSlot]) -> List[Tuple[int, int]]:
    """
    Find RAID10 mirror pairs with both members absent.

    Slots are paired positionally: (1, 2), (3, 4), ... A trailing unpaired
    slot is ignored; the even-count rule reports that case.

    Returns:
        Ordinal pairs whose two slots are both absent
    """
    failures = []
    for first in range(0, len(slots) - 1, 2):
        left, right = slots[first], slots[first + 1]
        if left.is_absent and right.is_absent:
            failures.append((left.index, right.index))
    return failures


LEVEL_RULES: Dict[RaidLevel, LevelRule] = {
    RaidLevel.RAID0: LevelRule(RaidLevel.RAID0, min_disks=2, max_faults=lambda n: 0),
    RaidLevel.RAID1: LevelRule(RaidLevel.RAID1, min_disks=2, max_faults=lambda n: n - 1),
    RaidLevel.RAID4: LevelRule(RaidLevel.RAID4, min_disks=3, max_faults=lambda n: 1),
    RaidLevel.RAID5: LevelRule(RaidLevel.RAID5, min_disks=3, max_faults=lambda n: 1),
    RaidLevel.RAID6: LevelRule(RaidLevel.RAID6, min_disks=4, max_faults=lambda n: 2),
    RaidLevel.RAID10: LevelRule(
        RaidLevel.RAID10,
        min_disks=4,
        max_faults=lambda n: n // 2,
        structure_check=unpaired_mirror_failures,
    ),
}


def supported_levels() -> List[int]:
    return sorted(level.value for level in LEVEL_RULES)


def get_rule(level: RaidLevel) -> LevelRule:
    """Return the policy record for a parsed level."""
    return LEVEL_RULES[level]


def min_disks(level: RaidLevel) -> int:
    return get_rule(level).min_disks


def max_faults(level: RaidLevel, disk_count: int) -> int:
    return get_rule(level).max_faults(disk_count)


def requires_even_count(level: RaidLevel) -> bool:
    """Mirrored-stripe levels need complete pairs."""
    return level is RaidLevel.RAID10
