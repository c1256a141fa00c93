from datetime import timedelta

import pytest

from beemgmt.target_state import (
    TargetReachabilityState,
    reachability_state,
    split_target_states,
)

TIMEOUT = timedelta(seconds=180)


@pytest.mark.parametrize(
    "age, expected",
    [
        (0, TargetReachabilityState.ONLINE),
        (90, TargetReachabilityState.ONLINE),
        (91, TargetReachabilityState.PROBABLY_OFFLINE),
        (180, TargetReachabilityState.PROBABLY_OFFLINE),
        (181, TargetReachabilityState.OFFLINE),
    ],
)
def test_plain_target_by_age(age, expected):
    assert reachability_state(age, False, False, False, TIMEOUT) is expected


@pytest.mark.parametrize("age", [91, 180, 181, 10_000])
def test_primary_never_offline(age):
    assert (
        reachability_state(age, True, False, False, TIMEOUT)
        is TargetReachabilityState.PROBABLY_OFFLINE
    )


def test_primary_recent_is_online():
    assert reachability_state(10, True, False, False, TIMEOUT) is TargetReachabilityState.ONLINE


@pytest.mark.parametrize("age", [0, 50, 1000])
@pytest.mark.parametrize("is_primary", [False, True])
def test_pre_shutdown_non_secondary_is_probably_offline(age, is_primary):
    assert (
        reachability_state(age, is_primary, False, True, TIMEOUT)
        is TargetReachabilityState.PROBABLY_OFFLINE
    )


@pytest.mark.parametrize(
    "age, expected",
    [
        (0, TargetReachabilityState.ONLINE),
        (100, TargetReachabilityState.PROBABLY_OFFLINE),
        (200, TargetReachabilityState.OFFLINE),
    ],
)
def test_pre_shutdown_secondary_judged_by_age(age, expected):
    assert reachability_state(age, False, True, True, TIMEOUT) is expected


@pytest.mark.parametrize("age", [0, 45, 90, 91, 179, 180, 181, 500])
@pytest.mark.parametrize("is_primary", [False, True])
def test_timedelta_and_seconds_agree(age, is_primary):
    from_seconds = reachability_state(age, is_primary, False, False, 180)
    from_delta = reachability_state(timedelta(seconds=age), is_primary, False, False, TIMEOUT)
    assert from_seconds is from_delta


def test_state_never_improves_with_age():
    order = [
        TargetReachabilityState.ONLINE,
        TargetReachabilityState.PROBABLY_OFFLINE,
        TargetReachabilityState.OFFLINE,
    ]
    ranks = [
        order.index(reachability_state(age, False, False, False, TIMEOUT))
        for age in range(0, 400, 7)
    ]
    assert ranks == sorted(ranks)


def test_negative_age_rejected():
    with pytest.raises(ValueError):
        reachability_state(-1, False, False, False, TIMEOUT)


def test_split_target_states_keeps_order():
    triples = [
        (3, "good", TargetReachabilityState.ONLINE),
        (1, "needs_resync", TargetReachabilityState.OFFLINE),
        (2, "bad", TargetReachabilityState.PROBABLY_OFFLINE),
    ]
    ids, consistency, reachability = split_target_states(triples)
    assert ids == [3, 1, 2]
    assert consistency == ["good", "needs_resync", "bad"]
    assert reachability == [
        TargetReachabilityState.ONLINE,
        TargetReachabilityState.OFFLINE,
        TargetReachabilityState.PROBABLY_OFFLINE,
    ]
    assert list(zip(ids, consistency, reachability)) == triples


def test_split_target_states_accepts_generator():
    gen = ((i, "good", TargetReachabilityState.ONLINE) for i in range(4))
    ids, consistency, reachability = split_target_states(gen)
    assert ids == [0, 1, 2, 3]
    assert len(consistency) == len(reachability) == 4


def test_split_target_states_empty():
    assert split_target_states([]) == ([], [], [])