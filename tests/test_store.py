"""Tests for the in-memory store."""

import pytest

from entitysync.entity import Entity, Property
from entitysync.exceptions import InvalidCursorError, NoSuchEntityError
from entitysync.keys import Key
from entitysync.store import KEY_PROPERTY, Cursor, MemoryStore

from tests.conftest import RANGE_TEST_IDS, TEST_SCATTER_PROPERTY


def _ids(rows):
    return [key.id for key, _ in rows]


def test_put_completes_incomplete_keys():
    store = MemoryStore()
    parent = Key.from_path("Account", 1)
    first = store.put(Entity(Key.new("Log", parent=parent), [Property("m", "x")]))
    second = store.put(Entity(Key.new("Log", parent=parent), [Property("m", "y")]))
    assert not first.incomplete
    assert first.parent == parent
    assert first != second
    assert store.get(first).get("m") == "x"


def test_put_never_reuses_stored_ids():
    store = MemoryStore()
    store.put(Entity(Key.from_path("K", 1), [Property("V", "original")]))
    store.put(Entity(Key.from_path("K", 5), [Property("V", "five")]))
    new_key = store.put(Entity(Key.new("K"), [Property("V", "new")]))

    assert new_key.id not in (1, 5)
    assert store.get(Key.from_path("K", 1)).get("V") == "original"
    assert store.get(Key.from_path("K", 5)).get("V") == "five"
    assert len(store) == 3


def test_get_missing_raises():
    with pytest.raises(NoSuchEntityError):
        MemoryStore().get(Key.from_path("A", 1))


def test_allocate_ids_are_unique():
    store = MemoryStore()
    keys = store.allocate_ids("A", 3)
    assert len(set(keys)) == 3
    assert all(k.kind == "A" and not k.incomplete for k in keys)


def test_stored_properties_are_copies():
    store = MemoryStore()
    entity = Entity(Key.from_path("A", 1), [Property("p", 1)])
    store.put(entity)
    entity.properties[0].value = 2
    assert store.get(Key.from_path("A", 1)).get("p") == 1


def test_range_query_is_ordered_and_bounded(store):
    lower = Key.from_path("RangeTest", 2)
    upper = Key.from_path("RangeTest", 50)
    assert _ids(store.range_query("RangeTest", lower, upper)) == [2, 6, 30, 40]


def test_range_query_open_ended(store):
    rows = list(store.range_query("RangeTest", Key.from_path("RangeTest", 1)))
    assert _ids(rows) == sorted(RANGE_TEST_IDS)


def test_range_query_equal(store):
    key = Key.from_path("Sample", 2)
    assert _ids(store.range_query("Sample", key, key, equal=True)) == [2]


def test_range_query_without_lower_returns_whole_kind(store):
    assert _ids(store.range_query("Sample", None)) == [1, 2, 3]


def test_cursor_resumes_after_last_row(store):
    lower = Key.from_path("RangeTest", 1)
    iterator = store.range_query("RangeTest", lower)
    next(iterator)
    next(iterator)
    cursor = iterator.cursor()
    resumed = store.range_query("RangeTest", lower, start_cursor=cursor)
    assert _ids(resumed) == [6, 30, 40, 50, 1000, 1001]


def test_cursor_is_none_before_first_row(store):
    assert store.range_query("Sample", None).cursor() is None


def test_cursor_bound_to_query_shape(store):
    iterator = store.range_query("RangeTest", Key.from_path("RangeTest", 1))
    next(iterator)
    cursor = iterator.cursor()
    with pytest.raises(InvalidCursorError):
        store.range_query("RangeTest", Key.from_path("RangeTest", 2), start_cursor=cursor)
    with pytest.raises(InvalidCursorError):
        store.range_query("RangeTest", None, start_cursor=Cursor("garbage"))


def test_iterator_skips_deleted_entities(store):
    iterator = store.range_query("Sample", None)
    store.delete(Key.from_path("Sample", 2))
    assert _ids(iterator) == [1, 3]


def test_limit(store):
    assert _ids(store.range_query("RangeTest", None, limit=3)) == [1, 2, 6]


def test_sample_keys_by_key(store):
    assert store.sample_keys("RangeTest", KEY_PROPERTY, 1) == [Key.from_path("RangeTest", 1)]
    assert store.sample_keys("Nothing", KEY_PROPERTY, 1) == []


def test_sample_keys_orders_by_property_and_skips_missing(store):
    samples = store.sample_keys("RangeTest", TEST_SCATTER_PROPERTY, 10)
    assert [k.id for k in samples] == [1000, 50, 30]
    assert store.sample_keys("RangeTest", TEST_SCATTER_PROPERTY, 2) == samples[:2]
    assert store.sample_keys("RangeTest", TEST_SCATTER_PROPERTY, 0) == []
