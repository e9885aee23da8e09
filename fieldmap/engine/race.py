# fieldmap/engine/race.py
from collections import defaultdict
from typing import Hashable


class RaceTokenGuard:
    """
    Generation counters keyed by logical operation (a datastream id, the
    highlight target, the search). A result is committed only while the token
    it was started with is still the latest one issued for its key.

    Re-check ``is_current`` right before committing a result and right before
    starting a dependent await.
    """

    def __init__(self):
        self._counters: dict[Hashable, int] = defaultdict(int)

    def issue(self, key: Hashable) -> int:
        self._counters[key] += 1
        return self._counters[key]

    def is_current(self, key: Hashable, token: int) -> bool:
        return self._counters.get(key, 0) == token

    def invalidate(self, key: Hashable) -> None:
        """Make every outstanding token for ``key`` stale without starting new work."""
        self._counters[key] += 1
