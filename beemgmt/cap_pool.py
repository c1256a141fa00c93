"""Capacity pool calculation for targets and buddy groups.

A target or buddy group is put in one of three pools, normal, low or emergency, by comparing
its free space and free inodes against configured limits. Optional dynamic limits raise these
limits when the values inside a pool are spread too far apart.
"""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

__all__ = [
    "CapacityPool",
    "CapPoolLimits",
    "CapPoolDynamicLimits",
    "CapacityInfo",
    "CapPoolCalculator",
]

_LOW_BELOW_EMERGENCY = "The low limit is lower than the emergency limit"


class CapacityPool(enum.Enum):
    """The capacity pool a target or buddy group belongs to."""

    NORMAL = "normal"
    LOW = "low"
    EMERGENCY = "emergency"

    def bee_msg_vec_index(self) -> int:
        """Position of this pool in the pool lists sent over BeeMsg."""
        return _VEC_INDEX[self]


_VEC_INDEX = {
    CapacityPool.NORMAL: 0,
    CapacityPool.LOW: 1,
    CapacityPool.EMERGENCY: 2,
}


@dataclass(frozen=True)
class CapPoolLimits:
    """Static boundaries between the normal, low and emergency pools."""

    inodes_low: int = 0
    inodes_emergency: int = 0
    space_low: int = 0
    space_emergency: int = 0

    def check(self) -> None:
        """Raise ValueError if a low limit is below its emergency limit."""
        if self.space_low < self.space_emergency or self.inodes_low < self.inodes_emergency:
            raise ValueError(_LOW_BELOW_EMERGENCY)


@dataclass(frozen=True)
class CapPoolDynamicLimits:
    """Raised limits and the spread thresholds that switch them on."""

    inodes_normal_threshold: int = 0
    inodes_low_threshold: int = 0
    space_normal_threshold: int = 0
    space_low_threshold: int = 0
    inodes_low: int = 0
    inodes_emergency: int = 0
    space_low: int = 0
    space_emergency: int = 0

    def check(self) -> None:
        """Raise ValueError if a low limit is below its emergency limit."""
        if self.space_low < self.space_emergency or self.inodes_low < self.inodes_emergency:
            raise ValueError("the low limit is lower than the emergency limit")


@runtime_checkable
class CapacityInfo(Protocol):
    """Anything that reports free space and free inodes."""

    @property
    def free_space(self) -> int: ...

    @property
    def free_inodes(self) -> int: ...


class _MinMax:
    """Tracks the range of values, treating an all-zero state as empty."""

    __slots__ = ("low", "high")

    def __init__(self) -> None:
        self.low = 0
        self.high = 0

    def apply(self, value: int) -> None:
        if self.low == 0 and self.high == 0:
            self.low = value
            self.high = value
        elif value < self.low:
            self.low = value
        elif value > self.high:
            self.high = value

    @property
    def spread(self) -> int:
        return self.high - self.low


def _checked(limits: CapPoolLimits | CapPoolDynamicLimits) -> None:
    try:
        limits.check()
    except ValueError as err:
        raise ValueError(f"cap pool calculator: {err}") from err


class CapPoolCalculator:
    """Assigns capacity pools based on a fixed set of effective limits."""

    __slots__ = ("limits",)

    def __init__(self, limits: CapPoolLimits) -> None:
        self.limits = limits

    def __repr__(self) -> str:
        return f"CapPoolCalculator(limits={self.limits!r})"

    @classmethod
    def create(
        cls,
        limits: CapPoolLimits,
        dynamic_limits: CapPoolDynamicLimits | None,
        values: Iterable[CapacityInfo],
    ) -> CapPoolCalculator:
        """Build a dynamic calculator if dynamic limits are given, a static one otherwise."""
        if dynamic_limits is not None:
            return cls.new_dynamic(limits, dynamic_limits, values)
        return cls.new_static(limits)

    @classmethod
    def new_static(cls, limits: CapPoolLimits) -> CapPoolCalculator:
        """Build a calculator that uses the given limits unchanged."""
        _checked(limits)
        return cls(limits)

    @classmethod
    def new_dynamic(
        cls,
        limits: CapPoolLimits,
        dynamic_limits: CapPoolDynamicLimits,
        values: Iterable[CapacityInfo],
    ) -> CapPoolCalculator:
        """Build a calculator whose limits are raised where the values spread too far."""
        _checked(limits)
        _checked(dynamic_limits)

        normal_space = _MinMax()
        normal_inodes = _MinMax()
        low_space = _MinMax()
        low_inodes = _MinMax()

        for item in values:
            space, inodes = item.free_space, item.free_inodes
            if space >= limits.space_low and inodes >= limits.inodes_low:
                normal_space.apply(space)
                normal_inodes.apply(inodes)
            elif space >= limits.space_emergency and inodes >= limits.inodes_emergency:
                low_space.apply(space)
                low_inodes.apply(inodes)

        changes: dict[str, int] = {}
        if normal_space.spread > dynamic_limits.space_normal_threshold:
            changes["space_low"] = dynamic_limits.space_low
        if normal_inodes.spread > dynamic_limits.inodes_normal_threshold:
            changes["inodes_low"] = dynamic_limits.inodes_low
        if low_space.spread > dynamic_limits.space_low_threshold:
            changes["space_emergency"] = dynamic_limits.space_emergency
        if low_inodes.spread > dynamic_limits.inodes_low_threshold:
            changes["inodes_emergency"] = dynamic_limits.inodes_emergency

        return cls(dataclasses.replace(limits, **changes))

    def cap_pool(self, space: int, inodes: int) -> CapacityPool:
        """Return the pool for the given free space and free inodes."""
        lim = self.limits
        if space >= lim.space_low and inodes >= lim.inodes_low:
            return CapacityPool.NORMAL
        if space >= lim.space_emergency and inodes >= lim.inodes_emergency:
            return CapacityPool.LOW
        return CapacityPool.EMERGENCY