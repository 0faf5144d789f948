"""Keeps local entity lists usably fresh without a push channel.

Composition of three independent pieces:

- :class:`~sync.client.ClinicApiClient` for reads (cached) and transitions
- :class:`~sync.scheduler.PollScheduler` for the fixed-interval timer
- :class:`~sync.view.Reconciler` for snapshot replacement and optimistic patches
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from errors import StaleState
from sync.client import ClinicApiClient
from sync.scheduler import DEFAULT_POLL_INTERVAL, PollScheduler, PollState
from sync.view import CollectionView, Reconciler

logger = logging.getLogger("medflow.sync")


class SyncEngine:
    def __init__(
        self,
        client: ClinicApiClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        reconciler: Optional[Reconciler] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.reconciler = reconciler or Reconciler()
        self._sleep = sleep
        self._schedulers: dict[int, PollScheduler] = {}
        self._views: dict[int, CollectionView] = {}

    @property
    def views(self) -> list[CollectionView]:
        return list(self._views.values())

    def watch(self, collection: str, params: Optional[dict] = None, *, start: bool = True) -> CollectionView:
        view = CollectionView(collection=collection, params=dict(params or {}))
        scheduler = PollScheduler(
            lambda: self.refresh(view, fresh=True),
            self.poll_interval,
            sleep=self._sleep,
            name=collection,
        )
        self._views[id(view)] = view
        self._schedulers[id(view)] = scheduler
        if start:
            scheduler.start()
        return view

    def scheduler_for(self, view: CollectionView) -> PollScheduler:
        return self._schedulers[id(view)]

    async def refresh(self, view: CollectionView, *, fresh: bool = False) -> bool:
        """Fetch a snapshot and apply it wholesale; returns False when it was discarded.

        Scheduled polls always pass ``fresh=True``; the cache only serves the
        reads made between polls.
        """
        token = self.reconciler.begin_fetch(view)
        items = await self.client.get_collection(view.collection, view.params, fresh=fresh)
        applied = self.reconciler.apply_snapshot(view, items, token)
        if not applied and not view.closed:
            logger.debug("[POLL] %s snapshot predates a local change; dropped", view.collection)
        return applied

    async def _expected(self, view: CollectionView, entity_id: Any) -> tuple[Optional[str], Optional[int]]:
        entity = view.get(entity_id)
        if entity is None:
            entity = await self.client.get_entity(view.write_collection, entity_id)
        return entity.get(view.status_field), entity.get("version")

    async def transition(self, view: CollectionView, entity_id: Any, status: str, **payload: Any) -> dict:
        """Request a status change for one entity in ``view``.

        The view shows the requested status at once and is then patched with
        the server's entity. Any rejection reverts the provisional change.
        ``StaleState`` triggers one forced re-read and a single retry against
        the fresh state.
        """
        expected_status, expected_version = await self._expected(view, entity_id)
        attempts = 0
        while True:
            self.reconciler.patch_status(view, entity_id, status)
            try:
                entity = await self.client.update_status(
                    view.write_collection,
                    entity_id,
                    status,
                    expected_status=expected_status,
                    expected_version=expected_version,
                    **payload,
                )
            except StaleState as exc:
                self.reconciler.revert(view, entity_id)
                if attempts >= 1:
                    raise
                attempts += 1
                logger.info("[SYNC] %s #%s was stale (%s); re-reading", view.collection, entity_id, exc.detail)
                await self.refresh(view, fresh=True)
                fresh = await self.client.get_entity(view.write_collection, entity_id)
                expected_status, expected_version = fresh.get(view.status_field), fresh.get("version")
                continue
            except BaseException:
                # Rejections, cancellation on teardown and unexpected failures alike.
                self.reconciler.revert(view, entity_id)
                raise

            self.reconciler.optimistic_patch(view, entity)
            return entity

    async def delete(self, view: CollectionView, entity_id: Any) -> None:
        await self.client.delete(view.write_collection, entity_id)
        if not view.closed:
            view.entities = [e for e in view.entities if e.get("id") != entity_id]
            view.mutation_seq += 1

    def unwatch(self, view: CollectionView) -> None:
        """Tear down a view. An in-flight poll may finish; its result is discarded."""
        self.reconciler.close(view)
        scheduler = self._schedulers.pop(id(view), None)
        self._views.pop(id(view), None)
        if scheduler is None:
            return
        if scheduler.state == PollState.POLLING:
            scheduler.stop()
        else:
            scheduler.cancel()

    async def aclose(self) -> None:
        schedulers = list(self._schedulers.values())
        for view in self.views:
            self.unwatch(view)
        tasks = [s.task for s in schedulers if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
