from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

STATUS_FIELD_BY_COLLECTION: dict[str, str] = {
    "/lab/orders": "status",
    "/medical-records": "prescription_status",
    "/pharmacy/pending": "prescription_status",
    "/lab/orders/my-orders": "status",
    "/billing": "status",
}


# Read-only listings whose entities are mutated through another collection.
WRITE_COLLECTION: dict[str, str] = {
    "/pharmacy/pending": "/medical-records",
    "/lab/orders/my-orders": "/lab/orders",
}


def status_field(collection: str) -> str:
    return STATUS_FIELD_BY_COLLECTION.get(collection, "status")


@dataclass
class CollectionView:
    """One client's local copy of a polled collection.

    Each view owns its state; two dashboards watching the same collection get
    two independent views.
    """

    collection: str
    params: dict = field(default_factory=dict)
    entities: list[dict] = field(default_factory=list)
    closed: bool = False
    generation: int = 0
    mutation_seq: int = 0
    last_synced_at: Optional[float] = None
    provisional: dict[Any, dict] = field(default_factory=dict)

    @property
    def status_field(self) -> str:
        return status_field(self.collection)

    @property
    def write_collection(self) -> str:
        return WRITE_COLLECTION.get(self.collection, self.collection)

    def get(self, entity_id: Any) -> Optional[dict]:
        for entity in self.entities:
            if entity.get("id") == entity_id:
                return entity
        return None

    def statuses(self) -> dict[Any, str]:
        return {entity.get("id"): entity.get(self.status_field) for entity in self.entities}


class Reconciler:
    """Applies snapshots and optimistic patches to a :class:`CollectionView`.

    A snapshot always replaces the whole list. A snapshot whose fetch began
    before a local patch is dropped so it cannot roll the patch back.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def begin_fetch(self, view: CollectionView) -> int:
        return view.mutation_seq

    def apply_snapshot(self, view: CollectionView, items: list[dict], fetch_token: Optional[int] = None) -> bool:
        if view.closed:
            return False
        if fetch_token is not None and fetch_token != view.mutation_seq:
            return False
        view.entities = [copy.deepcopy(item) for item in items]
        view.provisional.clear()
        view.generation += 1
        view.last_synced_at = self._clock()
        return True

    def _replace(self, view: CollectionView, entity_id: Any, entity: dict) -> bool:
        for index, existing in enumerate(view.entities):
            if existing.get("id") == entity_id:
                if entity_id not in view.provisional:
                    view.provisional[entity_id] = copy.deepcopy(existing)
                view.entities[index] = entity
                view.mutation_seq += 1
                return True
        return False

    def patch_status(self, view: CollectionView, entity_id: Any, status: str) -> bool:
        """Provisionally show ``status`` before the server has answered."""
        if view.closed:
            return False
        current = view.get(entity_id)
        if current is None:
            return False
        patched = copy.deepcopy(current)
        patched[view.status_field] = status
        return self._replace(view, entity_id, patched)

    def optimistic_patch(self, view: CollectionView, entity: dict) -> bool:
        """Replace one entity with the server's answer to a successful transition."""
        if view.closed:
            return False
        entity_id = entity.get("id")
        patched = self._replace(view, entity_id, copy.deepcopy(entity))
        view.provisional.pop(entity_id, None)
        return patched

    def revert(self, view: CollectionView, entity_id: Any) -> bool:
        if view.closed:
            return False
        original = view.provisional.pop(entity_id, None)
        if original is None:
            return False
        for index, existing in enumerate(view.entities):
            if existing.get("id") == entity_id:
                view.entities[index] = original
                break
        view.mutation_seq += 1
        return True

    def close(self, view: CollectionView) -> None:
        view.closed = True
        view.provisional.clear()
