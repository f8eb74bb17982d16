"""
querycache Utils
================

Building blocks with no knowledge of queries:

- hashing: canonical hashing and prefix matching of structured keys
- subscribable: ordered listener registry with re-entrant-safe broadcast
- timers: event-loop and virtual-time schedulers
- abort: abort controller/signal handed to fetch functions
- shallow: field-wise result comparison
"""

from .abort import AbortController, AbortSignal
from .hashing import hash_key, normalize_key, partial_match_key
from .shallow import shallow_equal
from .subscribable import Subscribable
from .timers import LoopTimerScheduler, ManualTimerScheduler

__all__ = [
    "AbortController",
    "AbortSignal",
    "hash_key",
    "normalize_key",
    "partial_match_key",
    "shallow_equal",
    "Subscribable",
    "LoopTimerScheduler",
    "ManualTimerScheduler",
]
