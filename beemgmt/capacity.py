"""Capacity pool assignment for targets, buddy groups and storage pools.

These helpers turn lists of targets or buddy groups into the per-pool ID lists that the
capacity pool and storage pool queries answer with. Each list of pools has the normal, low
and emergency entries at the positions given by ``CapacityPool.bee_msg_vec_index``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from beemgmt.cap_pool import CapPoolCalculator, CapPoolDynamicLimits, CapPoolLimits

__all__ = [
    "TargetOrBuddyGroup",
    "StoragePoolCapacities",
    "cap_pool_lists",
    "per_pool_cap_pools",
    "build_storage_pool",
]

_POOL_COUNT = 3


@dataclass
class TargetOrBuddyGroup:
    """A target or buddy group with its pool membership and free capacity.

    Unknown free space or free inodes are given as None and count as zero.
    """

    id: int
    pool_id: int | None = None
    node_id: int | None = None
    free_space: int | None = 0
    free_inodes: int | None = 0

    def __post_init__(self) -> None:
        if self.free_space is None:
            self.free_space = 0
        if self.free_inodes is None:
            self.free_inodes = 0


@dataclass
class StoragePoolCapacities:
    """A storage pool with its members sorted into capacity pools."""

    id: int
    alias: bytes
    targets: list[int] = field(default_factory=list)
    buddy_groups: list[int] = field(default_factory=list)
    target_cap_pools: list[list[int]] = field(default_factory=lambda: _empty_lists())
    grouped_target_pools: list[dict[int, list[int]]] = field(
        default_factory=lambda: [{} for _ in range(_POOL_COUNT)]
    )
    target_map: dict[int, int] = field(default_factory=dict)
    buddy_cap_pools: list[list[int]] = field(default_factory=lambda: _empty_lists())


def _empty_lists() -> list[list[int]]:
    return [[] for _ in range(_POOL_COUNT)]


def cap_pool_lists(
    items: Iterable[TargetOrBuddyGroup],
    limits: CapPoolLimits,
    dynamic_limits: CapPoolDynamicLimits | None,
) -> list[list[int]]:
    """Sort the IDs of the given items into normal, low and emergency lists."""
    items = list(items)
    calc = CapPoolCalculator.create(limits, dynamic_limits, items)
    result = _empty_lists()
    for item in items:
        result[calc.cap_pool(item.free_space, item.free_inodes).bee_msg_vec_index()].append(
            item.id
        )
    return result


def per_pool_cap_pools(
    items: Iterable[TargetOrBuddyGroup],
    pool_ids: Iterable[int],
    limits: CapPoolLimits,
    dynamic_limits: CapPoolDynamicLimits | None,
) -> dict[int, list[list[int]]]:
    """Sort the items of each storage pool into capacity pools, calculated per pool."""
    items = list(items)
    return {
        pool_id: cap_pool_lists(
            (item for item in items if item.pool_id == pool_id), limits, dynamic_limits
        )
        for pool_id in pool_ids
    }


def build_storage_pool(
    pool_id: int,
    alias: str | bytes,
    targets: Iterable[TargetOrBuddyGroup],
    buddy_groups: Iterable[TargetOrBuddyGroup],
    limits: CapPoolLimits,
    dynamic_limits: CapPoolDynamicLimits | None,
) -> StoragePoolCapacities:
    """Build the description of one storage pool from all known targets and buddy groups.

    Only targets and buddy groups belonging to ``pool_id`` are used. Every such target must
    be mapped to a node, otherwise ValueError is raised.
    """
    pool_targets = [t for t in targets if t.pool_id == pool_id]
    pool_groups = [g for g in buddy_groups if g.pool_id == pool_id]

    targets_calc = CapPoolCalculator.create(limits, dynamic_limits, pool_targets)
    groups_calc = CapPoolCalculator.create(limits, dynamic_limits, pool_groups)

    pool = StoragePoolCapacities(
        id=pool_id,
        alias=alias.encode() if isinstance(alias, str) else bytes(alias),
    )

    for target in pool_targets:
        if target.node_id is None:
            raise ValueError(f"Target {target.id} has no node id")
        index = targets_calc.cap_pool(target.free_space, target.free_inodes).bee_msg_vec_index()
        pool.target_map[target.id] = target.node_id
        pool.target_cap_pools[index].append(target.id)
        pool.grouped_target_pools[index].setdefault(target.node_id, []).append(target.id)

    for group in pool_groups:
        pool.buddy_groups.append(group.id)
        index = groups_calc.cap_pool(group.free_space, group.free_inodes).bee_msg_vec_index()
        pool.buddy_cap_pools[index].append(group.id)

    pool.targets = list(pool.target_map)
    return pool