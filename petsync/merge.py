from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .local_cache import LocalCache
from .records import Collection, SyncRecord

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeReport:
    applied: int = 0
    skipped: int = 0
    acknowledged: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"applied": self.applied, "skipped": self.skipped, "acknowledged": self.acknowledged}


class MergeApplier:
    """Fold a server delta into the local cache with last-write-wins.

    A delta record replaces the cached copy only when the cached copy is absent
    or strictly older; on equal timestamps the device keeps what it has.
    """

    def __init__(self, cache: LocalCache) -> None:
        self._cache = cache

    def apply(
        self,
        delta: Mapping[Collection, Iterable[SyncRecord]],
        pushed: Mapping[Collection, Iterable[SyncRecord]] | None = None,
    ) -> MergeReport:
        report = MergeReport()
        for collection in Collection:
            winners: list[SyncRecord] = []
            for record in delta.get(collection, ()):
                local = self._cache.get(collection, record.scope_id, record.id)
                if local is None or record.is_newer_than(local):
                    winners.append(record)
                else:
                    report.skipped += 1
            report.applied += self._cache.save_synced(winners)

        if pushed:
            outgoing = [record for records in pushed.values() for record in records]
            report.acknowledged = self._cache.mark_synced(outgoing)

        _LOGGER.debug(
            "Merged delta: %d applied, %d kept local, %d acknowledged",
            report.applied,
            report.skipped,
            report.acknowledged,
        )
        return report


__all__ = ["MergeApplier", "MergeReport"]
