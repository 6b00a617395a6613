"""Tests for canonical hashing."""

from types import MappingProxyType

from adaptive_engine.core.hashing import canonical_json, stable_digest


def test_canonical_json_sorts_nested_keys():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_digest_ignores_key_order():
    assert stable_digest({"x": 1, "y": [1, 2]}) == stable_digest({"y": [1, 2], "x": 1})


def test_digest_distinguishes_list_order():
    assert stable_digest({"ids": [1, 2]}) != stable_digest({"ids": [2, 1]})


def test_sets_are_order_free():
    assert stable_digest({"ids": {3, 1, 2}}) == stable_digest({"ids": frozenset({2, 3, 1})})


def test_tuples_and_lists_hash_alike():
    assert canonical_json((1, 2)) == canonical_json([1, 2])


def test_read_only_mappings_are_supported():
    assert stable_digest(MappingProxyType({"a": 1})) == stable_digest({"a": 1})


def test_unknown_objects_use_str():
    class Region:
        def __str__(self) -> str:
            return "us-east-1"

    assert canonical_json({"r": Region()}) == '{"r":"us-east-1"}'

