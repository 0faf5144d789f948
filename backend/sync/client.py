"""Async HTTP client for the lifecycle endpoints.

Reads go through a :class:`ResponseCache`; every successful mutation drops the
cached reads of the collections it can affect. Transient failures (network
errors and 5xx responses) are retried with capped exponential backoff; all
other rejections surface immediately as the matching exception from
``errors``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from errors import TransientError, error_from_payload
from models import EntityKind
from services.consistency import COLLECTION_PATHS, dependent_collections
from sync.cache import ResponseCache, cache_key, ttl_for

logger = logging.getLogger("medflow.sync")

KIND_BY_COLLECTION: dict[str, EntityKind] = {path: EntityKind(kind) for kind, path in COLLECTION_PATHS.items()}


class ClinicApiClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[ResponseCache] = None,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.token = token
        self.cache = cache if cache is not None else ResponseCache()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep

    async def __aenter__(self) -> "ClinicApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Cache-Control": "no-cache"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_cap, self.backoff_base * (2 ** attempt))

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
            raise error_from_payload(payload, response.status_code)
        return response

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        while True:
            try:
                return await self._send(method, url, **kwargs)
            except TransientError:
                if attempt >= self.max_retries:
                    raise
                delay = self._backoff(attempt)
                logger.warning("[RETRY] %s %s in %.2fs (attempt %d)", method, url, delay, attempt + 1)
                attempt += 1
                await self._sleep(delay)

    async def login(self, email: str, password: str) -> dict:
        response = await self.request("POST", "/auth/login", json={"email": email, "password": password})
        data = response.json()
        self.token = data["access_token"]
        self.cache.invalidate()
        return data["user"]

    async def get_collection(self, collection: str, params: Optional[dict] = None, *, fresh: bool = False) -> list[dict]:
        key = cache_key(collection, params)
        if not fresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        query = {k: v for k, v in (params or {}).items() if v is not None}
        mark = self.cache.mark()
        response = await self.request("GET", collection, params=query)
        body = response.json()
        items = body["items"] if isinstance(body, dict) else body
        if not self.cache.set(key, items, ttl_for(collection), since=mark):
            logger.debug("[CACHE] %s changed while the read was in flight; not cached", key)
        return items

    async def get_entity(self, collection: str, entity_id: int) -> dict:
        response = await self.request("GET", f"{collection}/{entity_id}")
        return response.json()

    def invalidate_after_write(self, collection: str) -> None:
        kind = KIND_BY_COLLECTION.get(collection)
        prefixes = dependent_collections(kind) if kind is not None else [collection]
        for prefix in prefixes:
            self.cache.invalidate(prefix)

    async def update_status(
        self,
        collection: str,
        entity_id: int,
        status: str,
        *,
        expected_status: Optional[str] = None,
        expected_version: Optional[int] = None,
        **payload: Any,
    ) -> dict:
        body: dict[str, Any] = {"status": status, **payload}
        if expected_status is not None:
            body["expectedStatus"] = expected_status
        if expected_version is not None:
            body["expectedVersion"] = expected_version
        response = await self.request("PATCH", f"{collection}/{entity_id}/status", json=body)
        self.invalidate_after_write(collection)
        return response.json()

    async def create(self, collection: str, body: dict) -> dict:
        response = await self.request("POST", collection, json=body)
        self.invalidate_after_write(collection)
        return response.json()

    async def delete(self, collection: str, entity_id: int) -> None:
        await self.request("DELETE", f"{collection}/{entity_id}")
        self.invalidate_after_write(collection)
