"""
Metrics Engine — Metric Cache Layer

Read-through cache in front of the metric store with three key families:

- ``definition:{code}``                          active definition by code
- ``snapshot:{definition_id}:{dimension_hash}``  latest successful snapshot
- ``series:{definition_id}:{dimension_hash}:{period_hash}``  time-series range

Definition entries also write ``definition-id:{definition_id}`` holding the
code, so ``invalidate(definition_id)`` can reach the code-keyed entry.

TTL comes from the metric's configuration (engine default when unset). A
configuration with caching disabled bypasses the cache entirely for that
metric. Backend failures are logged and treated as misses.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from ..collection.periods import dimension_hash, period_hash
from ..errors import CacheError
from ..models import MetricDefinition, MetricSnapshot
from ..storage.store import MetricStore
from .interface import CacheInterface

logger = logging.getLogger(__name__)

_UNSET = object()


class CacheFamily(str, Enum):
    DEFINITION = "definition"
    SNAPSHOT = "snapshot"
    SERIES = "series"


def definition_key(code: str) -> str:
    return f"definition:{code}"


def definition_alias_key(definition_id: str) -> str:
    return f"definition-id:{definition_id}"


def snapshot_key(definition_id: str, dim_hash: str) -> str:
    return f"snapshot:{definition_id}:{dim_hash}"


def series_key(definition_id: str, dim_hash: str, range_hash: str) -> str:
    return f"series:{definition_id}:{dim_hash}:{range_hash}"


class MetricCache:
    """Metric-aware cache over a generic backend."""

    def __init__(self, backend: CacheInterface, store: MetricStore, default_ttl: int = 300):
        self.backend = backend
        self.store = store
        self.default_ttl = default_ttl

        self._counters: dict[CacheFamily, dict[str, int]] = {
            family: {"hits": 0, "misses": 0} for family in CacheFamily
        }
        # definition_id -> ttl (None = caching disabled)
        self._ttl_policies: dict[str, int | None] = {}
        # code -> definition_id, learned from store loads
        self._definition_ids: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    async def ttl_for(self, definition_id: str) -> int | None:
        """TTL for a metric's entries, or None when its configuration disables caching."""
        cached = self._ttl_policies.get(definition_id, _UNSET)
        if cached is not _UNSET:
            return cached  # type: ignore[return-value]

        configuration = await self.store.get_configuration_for_metric(definition_id)
        if configuration is None:
            ttl: int | None = self.default_ttl
        elif not configuration.cache_enabled:
            ttl = None
        else:
            ttl = configuration.cache_ttl_seconds or self.default_ttl

        self._ttl_policies[definition_id] = ttl
        return ttl

    # ------------------------------------------------------------------
    # Backend access
    # ------------------------------------------------------------------

    async def _lookup(self, key: str) -> Any | None:
        try:
            return await self.backend.get(key)
        except CacheError:
            return None

    def _count(self, family: CacheFamily, hit: bool) -> None:
        self._counters[family]["hits" if hit else "misses"] += 1

    async def _read(self, family: CacheFamily, key: str) -> Any | None:
        value = await self._lookup(key)
        self._count(family, value is not None)
        return value

    async def _write(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.backend.set(key, value, ttl)
        except CacheError as e:
            logger.warning(f"Cache write skipped for {key}: {e}", extra={"key": key})

    # ------------------------------------------------------------------
    # Read-through families
    # ------------------------------------------------------------------

    async def get_definition(self, code: str) -> MetricDefinition | None:
        """
        Active definition by code.

        Metrics whose configuration disables caching are read from the store
        and never counted against the definition family.
        """
        key = definition_key(code)
        known_id = self._definition_ids.get(code)
        if known_id is None or await self.ttl_for(known_id) is not None:
            cached = await self._lookup(key)
            if cached is not None:
                self._count(CacheFamily.DEFINITION, hit=True)
                return MetricDefinition.model_validate(cached)

        definition = await self.store.get_definition_by_code(code, active_only=True)
        if definition is None:
            self._count(CacheFamily.DEFINITION, hit=False)
            return None

        # codes are immutable, so the mapping never goes stale
        self._definition_ids[code] = definition.id
        ttl = await self.ttl_for(definition.id)
        if ttl is not None:
            self._count(CacheFamily.DEFINITION, hit=False)
            await self._write(key, definition.model_dump(mode="json"), ttl)
            await self._write(definition_alias_key(definition.id), code, ttl)
        return definition

    async def get_latest_snapshot(
        self,
        definition_id: str,
        dimensions: dict[str, Any] | None = None,
    ) -> MetricSnapshot | None:
        """Most recent successful snapshot for a metric and dimension set."""
        dim_hash = dimension_hash(dimensions)
        ttl = await self.ttl_for(definition_id)
        if ttl is None:
            return await self.store.latest_snapshot(definition_id, dim_hash)

        key = snapshot_key(definition_id, dim_hash)
        cached = await self._read(CacheFamily.SNAPSHOT, key)
        if cached is not None:
            return MetricSnapshot.model_validate(cached)

        snapshot = await self.store.latest_snapshot(definition_id, dim_hash)
        if snapshot is not None:
            await self._write(key, snapshot.model_dump(mode="json"), ttl)
        return snapshot

    async def get_time_series(
        self,
        definition_id: str,
        start: datetime,
        end: datetime,
        dimensions: dict[str, Any] | None = None,
    ) -> list[MetricSnapshot]:
        """Successful snapshots whose period lies within [start, end], oldest first."""
        dim_hash = dimension_hash(dimensions)
        ttl = await self.ttl_for(definition_id)
        if ttl is None:
            return await self._load_series(definition_id, dim_hash, start, end)

        key = series_key(definition_id, dim_hash, period_hash(start, end))
        cached = await self._read(CacheFamily.SERIES, key)
        if cached is not None:
            return [MetricSnapshot.model_validate(item) for item in cached]

        series = await self._load_series(definition_id, dim_hash, start, end)
        await self._write(key, [snapshot.model_dump(mode="json") for snapshot in series], ttl)
        return series

    async def _load_series(
        self, definition_id: str, dim_hash: str, start: datetime, end: datetime
    ) -> list[MetricSnapshot]:
        return await self.store.list_snapshots(
            definition_id,
            dimension_hash=dim_hash,
            period_start_from=start,
            period_end_to=end,
        )

    # ------------------------------------------------------------------
    # Invalidation and maintenance
    # ------------------------------------------------------------------

    async def invalidate(self, definition_id: str) -> int:
        """
        Remove every entry referencing a definition across all families.

        Returns:
            Number of keys removed
        """
        self._ttl_policies.pop(definition_id, None)
        try:
            keys = await self.backend.keys(f"{CacheFamily.SNAPSHOT.value}:{definition_id}:*")
            keys += await self.backend.keys(f"{CacheFamily.SERIES.value}:{definition_id}:*")

            alias = definition_alias_key(definition_id)
            code = await self.backend.get(alias)
            if code is not None:
                keys += [definition_key(code), alias]

            removed = await self.backend.delete_many(keys) if keys else 0
        except CacheError as e:
            logger.error(
                f"Cache invalidation failed for {definition_id}: {e}",
                extra={"definition_id": definition_id},
            )
            raise

        logger.debug(
            f"Invalidated {removed} cache entries",
            extra={"definition_id": definition_id, "removed": removed},
        )
        return removed

    async def warm(self) -> int:
        """Pre-load definitions and latest snapshots of dashboard-visible metrics."""
        warmed = 0
        for configuration in await self.store.list_configurations(show_on_dashboard=True):
            if not configuration.cache_enabled:
                continue
            definition = await self.store.get_definition(configuration.metric_id)
            if definition is None or not definition.active:
                continue
            await self.get_definition(definition.code)
            await self.get_latest_snapshot(definition.id)
            warmed += 1

        logger.info(f"Cache warmed for {warmed} dashboard metrics", extra={"warmed": warmed})
        return warmed

    async def clear(self) -> int:
        """Drop every metric entry and reset counters."""
        removed = 0
        for pattern in ("definition:*", "definition-id:*", "snapshot:*", "series:*"):
            removed += await self.backend.delete_pattern(pattern)
        self._ttl_policies.clear()
        for counters in self._counters.values():
            counters["hits"] = counters["misses"] = 0
        return removed

    async def get_stats(self) -> dict[str, Any]:
        """Hit/miss counters and live key counts by family."""
        families: dict[str, dict[str, Any]] = {}
        total_hits = total_misses = total_keys = 0
        for family in CacheFamily:
            hits = self._counters[family]["hits"]
            misses = self._counters[family]["misses"]
            keys = len(await self.backend.keys(f"{family.value}:*"))
            lookups = hits + misses
            families[family.value] = {
                "hits": hits,
                "misses": misses,
                "keys": keys,
                "hit_rate": round(hits / lookups * 100, 2) if lookups else 0.0,
            }
            total_hits += hits
            total_misses += misses
            total_keys += keys

        lookups = total_hits + total_misses
        return {
            "hits": total_hits,
            "misses": total_misses,
            "keys": total_keys,
            "hit_rate": round(total_hits / lookups * 100, 2) if lookups else 0.0,
            "default_ttl": self.default_ttl,
            "families": families,
            "backend": await self.backend.get_stats(),
        }
