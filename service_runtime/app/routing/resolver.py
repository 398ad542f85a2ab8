"""
Resolve (method, path) pairs to registered routes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from shared.errors import RouteDisabled, RouteNotFound
from shared.logging import get_logger

from service_runtime.app.adapters.registry import InMemoryRegistry
from service_runtime.app.domain.models import PARAM_MARKER, Route, split_path


def match_path(pattern: str, path: str) -> bool:
    """Positional segment match; ``:name`` segments match any single segment."""
    pattern_parts = split_path(pattern)
    path_parts = split_path(path)

    if len(pattern_parts) != len(path_parts):
        return False

    for expected, actual in zip(pattern_parts, path_parts):
        if expected.startswith(PARAM_MARKER):
            continue
        if expected != actual:
            return False
    return True


def extract_params(pattern: str, path: str) -> Dict[str, str]:
    """Map parameter names of ``pattern`` to the matching segments of ``path``."""
    params: Dict[str, str] = {}
    for expected, actual in zip(split_path(pattern), split_path(path)):
        if expected.startswith(PARAM_MARKER):
            params[expected[len(PARAM_MARKER):]] = actual
    return params


@dataclass(frozen=True)
class ResolvedRoute:
    """A route together with the parameters extracted from the concrete path."""

    route: Route
    path: str
    params: Dict[str, str]


class RouteResolver:
    """Exact-match-first resolver with a TTL cache in front of the registry.

    Cache keys are concrete paths, so parameterized routes add one entry per
    distinct value. ``start()`` runs a sweep of expired entries every
    ``sweep_interval`` seconds (the TTL by default). The cache never holds
    more than ``max_entries``; the oldest entries are evicted first.
    """

    def __init__(
        self,
        registry: InMemoryRegistry,
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10000,
        sweep_interval: Optional[float] = None,
    ):
        self.registry = registry
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval if sweep_interval is not None else max(cache_ttl_seconds, 1.0)
        self.logger = get_logger("runtime.resolver")
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[Route, float]] = {}
        self._hits = 0
        self._misses = 0
        self._last_invalidation: Optional[datetime] = None
        self._sweeper: Optional[asyncio.Task] = None
        registry.on_change(self.invalidate_all)

    async def resolve(self, method: str, path: str) -> ResolvedRoute:
        """Return the route for ``method``/``path`` or raise RouteNotFound / RouteDisabled."""
        method = method.upper()
        normalized = "/" + "/".join(split_path(path))

        route = self._get_cached(method, normalized)
        if route is None:
            route = await self._find(method, normalized)
            if route is None:
                raise RouteNotFound(method, normalized)
            self._store(method, normalized, route)

        if not route.enabled:
            raise RouteDisabled(route.id)

        return ResolvedRoute(route=route, path=normalized, params=extract_params(route.path, normalized))

    async def _find(self, method: str, path: str) -> Optional[Route]:
        exact = await self.registry.get_route(method, path)
        if exact is not None:
            return exact

        candidates: List[Tuple[int, Route]] = [
            (index, route)
            for index, route in enumerate(await self.registry.get_routes(method))
            if match_path(route.path, path)
        ]
        if not candidates:
            return None

        # Enabled first, then the most literal segments, then registration order
        candidates.sort(key=lambda item: (not item[1].enabled, -item[1].literal_segment_count, item[0]))
        if len(candidates) > 1:
            self.logger.debug(
                "Multiple route patterns matched",
                path=path,
                selected=candidates[0][1].id,
                candidates=[route.id for _, route in candidates],
            )
        return candidates[0][1]

    def _get_cached(self, method: str, path: str) -> Optional[Route]:
        key = (method, path)
        cached = self._cache.get(key)
        if cached is not None and self._clock() < cached[1]:
            self._hits += 1
            return cached[0]
        if cached is not None:
            del self._cache[key]
        self._misses += 1
        return None

    def _store(self, method: str, path: str, route: Route) -> None:
        if self.cache_ttl_seconds <= 0 or self.max_entries <= 0:
            return
        if len(self._cache) >= self.max_entries:
            self.sweep()
        while len(self._cache) >= self.max_entries:
            del self._cache[next(iter(self._cache))]
        self._cache[(method, path)] = (route, self._clock() + self.cache_ttl_seconds)

    def invalidate(self, method: str, path: str) -> None:
        self._cache.pop((method.upper(), "/" + "/".join(split_path(path))), None)

    def invalidate_all(self) -> None:
        self._cache.clear()
        self._last_invalidation = datetime.now(timezone.utc)

    def sweep(self) -> int:
        """Drop expired cache entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                self.logger.debug("Expired route cache entries removed", removed=removed)

    async def start(self) -> None:
        """Start the periodic cache sweep."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the cache sweep."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def stats(self) -> Dict[str, object]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": f"{(self._hits / total) * 100:.2f}%" if total else "0%",
            "size": len(self._cache),
            "last_invalidation": self._last_invalidation.isoformat() if self._last_invalidation else None,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
