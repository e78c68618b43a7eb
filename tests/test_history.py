import asyncio

import pytest

from homesync.history import HistoryTrimmer, next_history_timestamp, sorted_history_keys
from homesync.store.memory import InMemoryRemoteStore


def test_keys_sort_numerically_with_odd_keys_first():
    assert sorted_history_keys(["100", "9", "legacy", "20"]) == ["legacy", "9", "20", "100"]


@pytest.mark.parametrize(
    "existing, now, expected",
    [
        ([], 1000, 1000),
        (["10", "20"], 1000, 1000),
        (["10", "1000"], 1000, 1001),
        (["10", "2000"], 1000, 2001),
        (["legacy"], 5, 5),
    ],
)
def test_next_timestamp_is_unique_and_newest(existing, now, expected):
    assert next_history_timestamp(existing, now) == expected


def test_toggle_update_is_one_combined_write():
    trimmer = HistoryTrimmer(InMemoryRemoteStore(), limit=100)

    fields = trimmer.build_toggle_update(toggle_count=4, new_state=False, timestamp=1234)

    assert fields == {
        "state": False,
        "lastUpdated": 1234,
        "toggle/state": False,
        "toggle/lastToggle": 1234,
        "toggle/toggleCount": 5,
        "toggle/history/1234": {"state": False, "timestamp": 1234, "action": "OFF"},
    }


def test_evicts_only_keys_beyond_limit():
    trimmer = HistoryTrimmer(InMemoryRemoteStore(), limit=3)

    assert trimmer.keys_over_limit(["1", "2", "3"]) == []
    assert trimmer.keys_over_limit(["4", "1", "3", "2"]) == ["1"]
    assert trimmer.keys_over_limit(["5", "1", "4", "2", "3"]) == ["1", "2"]


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        HistoryTrimmer(InMemoryRemoteStore(), limit=0)


def test_trim_reads_history_from_store():
    history = {str(ts): {"state": True, "timestamp": ts, "action": "ON"} for ts in (1, 2, 3, 4)}
    store = InMemoryRemoteStore(initial={"devices": {"d1": {"toggle": {"history": history}}}})
    trimmer = HistoryTrimmer(store, limit=3)

    evicted = asyncio.run(trimmer.trim("d1"))

    assert evicted == ["1"]
    assert sorted(store.dump()["devices"]["d1"]["toggle"]["history"]) == ["2", "3", "4"]


def test_trim_without_history_is_a_noop():
    store = InMemoryRemoteStore(initial={"devices": {"d1": {"name": "Lamp"}}})

    assert asyncio.run(HistoryTrimmer(store, limit=3).trim("d1")) == []
    assert store.dump() == {"devices": {"d1": {"name": "Lamp"}}}
