"""
Query Key Hashing
=================

This module turns arbitrary structured query keys into stable string hashes.

Two keys hash to the same string when they are deeply equal after every
mapping has had its keys sorted, at every nesting level. Sequences keep their
order, since position is meaningful in a key:

```python
hash_key(["todos", {"page": 1, "done": False}])
# '["todos",{"done":false,"page":1}]'

hash_key(["todos", {"done": False, "page": 1}])  # same string
hash_key([{"page": 1}, "todos"])                 # different string
```

The resulting hash is compact JSON, so it stays readable in logs.
"""

import dataclasses
import json
from typing import Any, Mapping

QueryKey = Any


def _mapping_keys(value: Mapping) -> list:
    keys = list(value)
    for key in keys:
        if not isinstance(key, str):
            raise TypeError(
                f"Query key mappings must have str keys, got {type(key).__name__}"
            )
    return sorted(keys)


def normalize_key(value: Any) -> Any:
    """
    Recursively replace structured values with canonical equivalents.

    Mappings become plain dicts whose keys are inserted in sorted order,
    tuples and lists become lists, sets become sorted lists, and dataclass
    instances become the mapping of their fields. Integral floats become ints,
    since ``1 == 1.0``. Other scalars are returned as-is.

    Args:
        value: Any part of a query key

    Returns:
        A JSON-serializable value that is equal for equal keys

    Raises:
        TypeError: If a mapping has a key that is not a str
    """
    if isinstance(value, Mapping):
        return {k: normalize_key(value[k]) for k in _mapping_keys(value)}
    if isinstance(value, (list, tuple)):
        return [normalize_key(item) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [normalize_key(item) for item in value]
        return sorted(items, key=json.dumps)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return normalize_key(
            {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        )
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def as_key(query_key: QueryKey) -> list:
    """Wrap a bare scalar key into a one-element key."""
    if isinstance(query_key, (list, tuple)):
        return list(query_key)
    return [query_key]


def hash_key(query_key: QueryKey) -> str:
    """
    Compute the canonical hash of a query key.

    Args:
        query_key: A sequence of primitive or structured values. A bare scalar
            is treated as a one-element key.

    Returns:
        Compact JSON text of the normalized key

    Raises:
        TypeError: If part of the key cannot be serialized
    """
    return json.dumps(
        normalize_key(as_key(query_key)),
        separators=(",", ":"),
        ensure_ascii=False,
    )


def partial_match_key(a: Any, b: Any) -> bool:
    """
    Check whether key ``b`` is contained in key ``a``.

    Sequences match positionally, so ``["todos"]`` matches
    ``["todos", {"page": 1}]``. Mappings match when every entry of ``b`` is
    matched by ``a``. Scalars must be equal.
    """
    a = normalize_key(a)
    b = normalize_key(b)
    return _partial_match(a, b)


def _partial_match(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if isinstance(a, list) and isinstance(b, list):
        if len(b) > len(a):
            return False
        return all(_partial_match(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return all(k in a and _partial_match(a[k], v) for k, v in b.items())
    return False
