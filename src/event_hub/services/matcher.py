"""Subscription filter matching."""
from __future__ import annotations

from typing import Any, Mapping

_NUMBER = (int, float)


def _strict_equal(left: Any, right: Any) -> bool:
    # bool is an int subclass in Python; JSON keeps them apart
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, _NUMBER) and isinstance(right, _NUMBER):
        return left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return left.keys() == right.keys() and all(
            _strict_equal(left[key], right[key]) for key in left
        )
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            _strict_equal(a, b) for a, b in zip(left, right)
        )
    return type(left) is type(right) and left == right


def matches(payload: Mapping[str, Any], filter_criteria: Mapping[str, Any] | None) -> bool:
    """True when every filter key is present in ``payload`` with an equal value.

    No criteria means match everything. Values are compared without coercion,
    so ``"1"`` does not match ``1`` and ``True`` does not match ``1``.
    """
    if not filter_criteria:
        return True
    for key, expected in filter_criteria.items():
        if key not in payload:
            return False
        if not _strict_equal(payload[key], expected):
            return False
    return True
