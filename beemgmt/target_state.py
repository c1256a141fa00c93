"""Reachability state of targets as reported to other nodes.

A target's reachability follows from the time since its last update and its role in a
buddy group. Primaries of buddy groups are never reported offline, because an offline
primary is an invalid state. Instead they stay "probably offline" until the switchover
happens. While the management prepares to shut down, only secondaries are judged by their
age. Every other target is reported "probably offline".
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

__all__ = [
    "TargetReachabilityState",
    "reachability_state",
    "split_target_states",
]


class TargetReachabilityState(enum.Enum):
    """How reachable a target is believed to be."""

    ONLINE = "online"
    PROBABLY_OFFLINE = "probably_offline"
    OFFLINE = "offline"


def _as_timedelta(value: timedelta | int | float, what: str) -> timedelta:
    if isinstance(value, timedelta):
        result = value
    else:
        result = timedelta(seconds=value)
    if result < timedelta(0):
        raise ValueError(f"{what} must not be negative, got {value!r}")
    return result


def reachability_state(
    age: timedelta | int | float,
    is_primary: bool,
    is_secondary: bool,
    pre_shutdown: bool,
    node_offline_timeout: timedelta | int | float,
) -> TargetReachabilityState:
    """Return the reachability of a target last updated ``age`` ago.

    ``age`` and ``node_offline_timeout`` are timedeltas or numbers of seconds. A target
    is offline once its age exceeds the timeout (unless it is a buddy group primary) and
    probably offline once its age exceeds half the timeout.
    """
    age = _as_timedelta(age, "age")
    timeout = _as_timedelta(node_offline_timeout, "node offline timeout")

    if pre_shutdown and not is_secondary:
        return TargetReachabilityState.PROBABLY_OFFLINE

    if not is_primary and age > timeout:
        return TargetReachabilityState.OFFLINE
    if age > timeout / 2:
        return TargetReachabilityState.PROBABLY_OFFLINE
    return TargetReachabilityState.ONLINE


def split_target_states(
    targets: Iterable[tuple[int, Any, TargetReachabilityState]],
) -> tuple[list[int], list[Any], list[TargetReachabilityState]]:
    """Split (target id, consistency, reachability) triples into three parallel lists.

    Returns the target ids, the consistency states and the reachability states, each in
    the order of the input.
    """
    target_ids: list[int] = []
    consistency_states: list[Any] = []
    reachability_states: list[TargetReachabilityState] = []
    for target_id, consistency, reachability in targets:
        target_ids.append(target_id)
        consistency_states.append(consistency)
        reachability_states.append(reachability)
    return target_ids, consistency_states, reachability_states