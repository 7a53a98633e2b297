"""
Key/value sort used to group agents by cell id.

The pipeline only needs agents sharing a cell id to end up in one contiguous
run, with the value array permuted exactly like the key array. Order inside a
run does not matter, so unstable sorts are fine. Any object with a
``sort_by_key(keys, values)`` method that permutes both arrays in place can be
passed to the simulation.
"""

from __future__ import annotations

from typing import Protocol

import numpy as np


class KeyValueSorter(Protocol):
    def sort_by_key(self, keys: np.ndarray, values: np.ndarray) -> None:
        ...


class ArgsortKeyValueSorter:
    """Sort with numpy.argsort on the keys, then gather both arrays.

    Attributes:
        kind: numpy sort algorithm; "quicksort" (introsort) is unstable
    """

    def __init__(self, kind: str = "quicksort") -> None:
        self.kind = kind

    def sort_by_key(self, keys: np.ndarray, values: np.ndarray) -> None:
        if keys.shape[0] != values.shape[0]:
            raise ValueError("keys/values length mismatch")
        order = np.argsort(keys, kind=self.kind)
        keys[:] = keys[order]
        values[:] = values[order]


# Small fixed fixture: key k appears with the values listed for it.
SELF_TEST_KEYS = (0, 1, 1, 2, 2, 3, 3, 3, 4, 5)
SELF_TEST_VALUES = (2, 3, 0, 4, 7, 1, 9, 6, 8, 5)


def self_test_sorter(sorter: KeyValueSorter | None = None) -> list[str]:
    """Check that ``sorter`` groups a shuffled fixture by key.

    Runs outside the step pipeline. Returns a list of problems, empty on
    success.
    """
    sorter = sorter if sorter is not None else ArgsortKeyValueSorter()
    expected: dict[int, set[int]] = {}
    for k, v in zip(SELF_TEST_KEYS, SELF_TEST_VALUES):
        expected.setdefault(k, set()).add(v)

    order = np.random.default_rng(0).permutation(len(SELF_TEST_KEYS))
    keys = np.asarray(SELF_TEST_KEYS, dtype=np.int32)[order]
    values = np.asarray(SELF_TEST_VALUES, dtype=np.int32)[order]

    sorter.sort_by_key(keys, values)

    issues: list[str] = []
    if np.any(keys[1:] < keys[:-1]):
        issues.append(f"keys not ascending after sort: {keys.tolist()}")
    got: dict[int, set[int]] = {}
    for k, v in zip(keys.tolist(), values.tolist()):
        got.setdefault(k, set()).add(v)
    for k, vals in expected.items():
        if got.get(k) != vals:
            issues.append(f"key {k}: expected values {sorted(vals)}, got {sorted(got.get(k, set()))}")
    if sorted(values.tolist()) != sorted(SELF_TEST_VALUES):
        issues.append("values were lost or duplicated by the sort")
    return issues
