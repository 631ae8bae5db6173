from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator

from ..constants import DEFAULT_TOMBSTONE_MAX_SURVIVALS
from ..models import EntityKind, Tombstone


class TombstoneSet:
    """
    Ids deleted locally whose removal the server has not confirmed yet.

    A tombstone leaves the set only through `corroborate` / `retain_present`,
    i.e. when a fetch proves the server no longer has the id. Each fetch that
    still returns the id counts as a survival; past `max_survivals` the id is
    reported as stuck.
    """

    def __init__(
        self,
        kind: EntityKind,
        *,
        max_survivals: int = DEFAULT_TOMBSTONE_MAX_SURVIVALS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_survivals < 1:
            raise ValueError("max_survivals must be >= 1")
        self.kind = kind
        self.max_survivals = max_survivals
        self._clock = clock
        self._items: dict[str, Tombstone] = {}
        self._survivals: dict[str, int] = {}

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def ids(self) -> set[str]:
        return set(self._items)

    def get(self, entity_id: str) -> Tombstone | None:
        return self._items.get(entity_id)

    def add(self, entity_id: str) -> Tombstone:
        existing = self._items.get(entity_id)
        if existing is not None:
            return existing
        ts = Tombstone(id=entity_id, kind=self.kind, created_at=self._clock())
        self._items[entity_id] = ts
        self._survivals[entity_id] = 0
        return ts

    def survivals(self, entity_id: str) -> int:
        return self._survivals.get(entity_id, 0)

    def retain_present(self, server_ids: Iterable[str]) -> set[str]:
        """
        Shrink to `tombstones & server_ids` after a full fetch.

        Returns the ids whose deletion was corroborated (and dropped).
        """

        present = set(server_ids)
        gone = {i for i in self._items if i not in present}
        for i in gone:
            self._drop(i)
        for i in self._items:
            self._survivals[i] += 1
        return gone

    def corroborate(self, removed_ids: Iterable[str]) -> set[str]:
        """Drop tombstones the server explicitly reported as removed."""

        gone = {i for i in removed_ids if i in self._items}
        for i in gone:
            self._drop(i)
        return gone

    def observe_present(self, present_ids: Iterable[str]) -> None:
        """Count one more survival for tombstoned ids the server still returns."""

        for i in set(present_ids):
            if i in self._items:
                self._survivals[i] += 1

    def stuck(self) -> list[str]:
        return sorted(i for i, n in self._survivals.items() if n > self.max_survivals)

    def reset_survivals(self, ids: Iterable[str]) -> None:
        for i in ids:
            if i in self._survivals:
                self._survivals[i] = 0

    def _drop(self, entity_id: str) -> None:
        self._items.pop(entity_id, None)
        self._survivals.pop(entity_id, None)
