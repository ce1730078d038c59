from __future__ import annotations

import json
from collections import defaultdict
from typing import Callable, Optional

from habitsync.models import EntityKind, MutationEvent
from habitsync.store.local_store import LocalStore


class ChangeTracker:
    """Marks entities dirty when the presentation layer commits them.

    Writes made by the sync engine itself arrive with `origin="sync"` and are
    ignored, so applied remote records are never queued for upload.
    """

    def __init__(self, store: LocalStore, log_func, on_settled: Optional[Callable[[], None]] = None):
        self.store = store
        self.log_func = log_func
        self.on_settled = on_settled
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe_to_mutations(self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle(self, event: MutationEvent) -> int:
        if event.origin != "local":
            return 0

        by_kind: dict[EntityKind, set[str]] = defaultdict(set)
        for kind, entity_id in (*event.inserted, *event.updated):
            by_kind[kind].add(entity_id)
        if not by_kind:
            return 0

        marked = 0
        for kind, ids in by_kind.items():
            marked += self.store.mark_dirty(kind, sorted(ids), event.committed_at)
        self.log_func(
            "DEBUG",
            "change_tracker",
            "entities_marked_dirty",
            json.dumps({k.value: len(v) for k, v in by_kind.items()}, ensure_ascii=False),
        )

        if self.on_settled is not None:
            self.on_settled()
        return marked
