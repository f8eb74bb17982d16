"""Shallow comparison of observer results."""

import dataclasses
from typing import Any

_SCALARS = (str, int, float, bool, type(None))


def _same(a: Any, b: Any) -> bool:
    if a is b:
        return True
    # scalars compare by value, everything else by identity
    return isinstance(a, _SCALARS) and type(a) is type(b) and a == b


def shallow_equal(a: Any, b: Any) -> bool:
    """
    Compare two dataclass instances field by field.

    Fields holding scalars are compared by value; fields holding anything else
    (data payloads, exceptions) are compared by identity, so a refetch that
    returns an equal but new object still counts as a change.
    """
    if a is b:
        return True
    if a is None or b is None or type(a) is not type(b):
        return False
    return all(
        _same(getattr(a, f.name), getattr(b, f.name)) for f in dataclasses.fields(a)
    )
