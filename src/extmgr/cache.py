"""Persistent metadata cache for registry lookups.

Entries expire by timestamp comparison only; nothing is evicted in the
background. Timestamps are stored in epoch milliseconds.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from extmgr.core.logging.logger import get_logger
from extmgr.marketplace.source_utils import atomic_write_json, parse_registry_source
from extmgr.models import RegistryPackage

if TYPE_CHECKING:
    from extmgr.config import Settings
    from extmgr.models import InstalledPackage
    from extmgr.paths import ExtmgrPaths

logger = get_logger(__name__)

CACHE_VERSION = 1


@dataclass
class CachedPackageData:
    name: str
    timestamp: float
    description: str | None = None
    version: str | None = None
    size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class CachedSearch:
    query: str
    results: list[str]
    timestamp: float


@dataclass(frozen=True)
class CacheStats:
    total: int
    valid: int
    expired: int


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _normalize_entry(key: str, value: Any) -> CachedPackageData | None:
    if not isinstance(value, dict):
        return None
    timestamp = value.get("timestamp")
    if not _is_number(timestamp) or timestamp <= 0:
        return None

    raw_name = value.get("name")
    name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else key
    entry = CachedPackageData(name=name, timestamp=timestamp)

    if isinstance(value.get("description"), str):
        entry.description = value["description"]
    if isinstance(value.get("version"), str):
        entry.version = value["version"]
    size = value.get("size")
    if _is_number(size) and size >= 0:
        entry.size = int(size)
    return entry


def _normalize_search(value: Any) -> CachedSearch | None:
    if not isinstance(value, dict):
        return None
    query = value.get("query")
    timestamp = value.get("timestamp")
    results = value.get("results")
    if not isinstance(query, str) or not _is_number(timestamp) or not isinstance(results, list):
        return None
    return CachedSearch(
        query=query,
        timestamp=timestamp,
        results=[item for item in results if isinstance(item, str)],
    )


class MetadataCache:
    """TTL-gated package metadata backed by a single JSON file.

    Reads always see the in-memory state; saves are serialized so at most one
    write to the file is in flight at a time.
    """

    def __init__(
        self,
        path: Path,
        *,
        metadata_ttl: float = 24 * 60 * 60,
        search_ttl: float = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.metadata_ttl = metadata_ttl
        self.search_ttl = search_ttl
        self._clock = clock
        self._version = CACHE_VERSION
        self._packages: dict[str, CachedPackageData] | None = None
        self._last_search: CachedSearch | None = None
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, paths: ExtmgrPaths) -> MetadataCache:
        return cls(
            paths.metadata_cache_path,
            metadata_ttl=settings.metadata_ttl_seconds,
            search_ttl=settings.search_ttl_seconds,
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _is_fresh(self, timestamp: float, ttl_seconds: float) -> bool:
        return self._now_ms() - timestamp < ttl_seconds * 1000

    async def _ensure_loaded(self) -> dict[str, CachedPackageData]:
        if self._packages is not None:
            return self._packages
        async with self._load_lock:
            if self._packages is None:
                await asyncio.to_thread(self._load_sync)
        assert self._packages is not None
        return self._packages

    def _reset(self) -> None:
        self._version = CACHE_VERSION
        self._packages = {}
        self._last_search = None

    def _load_sync(self) -> None:
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            self._reset()
            return
        except UnicodeDecodeError:
            self._backup_corrupt_file()
            self._reset()
            return
        except OSError as exc:
            logger.warning(
                "Cache load failed, resetting",
                data={"path": str(self.path), "error": str(exc)},
            )
            self._reset()
            return

        if not content:
            self._reset()
            return

        try:
            payload = json.loads(content)
        except ValueError:
            self._backup_corrupt_file()
            self._reset()
            return

        self._reset()
        if not isinstance(payload, dict):
            return
        packages: dict[str, CachedPackageData] = {}
        version = payload.get("version")
        if _is_number(version):
            self._version = int(version)
        raw_packages = payload.get("packages")
        if isinstance(raw_packages, dict):
            for key, value in raw_packages.items():
                entry = _normalize_entry(str(key), value)
                if entry is not None:
                    packages[str(key)] = entry
        self._packages = packages
        self._last_search = _normalize_search(payload.get("lastSearch"))

    def _backup_corrupt_file(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = self.path.with_name(f"{self.path.stem}.invalid-{stamp}.json")
        try:
            self.path.rename(backup_path)
        except OSError as exc:
            logger.warning(
                "Failed to back up invalid cache file",
                data={"path": str(self.path), "error": str(exc)},
            )
            return
        logger.warning(
            "Invalid metadata cache JSON; backed up and reset",
            data={"backup": str(backup_path)},
        )

    def _snapshot(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self._version,
            "packages": {key: entry.to_dict() for key, entry in (self._packages or {}).items()},
        }
        if self._last_search is not None:
            payload["lastSearch"] = asdict(self._last_search)
        return payload

    async def _save(self) -> None:
        async with self._write_lock:
            payload = self._snapshot()
            try:
                await asyncio.to_thread(atomic_write_json, self.path, payload)
            except OSError as exc:
                logger.warning(
                    "Cache save failed",
                    data={"path": str(self.path), "error": str(exc)},
                )

    async def get(self, name: str) -> CachedPackageData | None:
        packages = await self._ensure_loaded()
        entry = packages.get(name)
        if entry is None or not self._is_fresh(entry.timestamp, self.metadata_ttl):
            return None
        return entry

    async def set(
        self,
        name: str,
        *,
        description: str | None = None,
        version: str | None = None,
        size: int | None = None,
    ) -> None:
        """Store fields for ``name``; fields passed as ``None`` keep their cached value."""
        packages = await self._ensure_loaded()
        entry = packages.get(name)
        if entry is None:
            entry = packages[name] = CachedPackageData(name=name, timestamp=self._now_ms())
        entry.timestamp = self._now_ms()
        if description is not None:
            entry.description = description
        if version is not None:
            entry.version = version
        if size is not None:
            entry.size = size
        await self._save()

    async def get_size(self, name: str) -> int | None:
        entry = await self.get(name)
        return entry.size if entry is not None else None

    async def set_size(self, name: str, size: int) -> None:
        packages = await self._ensure_loaded()
        existing = packages.get(name)
        if existing is not None:
            existing.size = size
            existing.timestamp = self._now_ms()
        else:
            packages[name] = CachedPackageData(name=name, timestamp=self._now_ms(), size=size)
        await self._save()

    async def get_search(self, query: str) -> list[RegistryPackage] | None:
        """Rebuild a fresh search result; names no longer in the map are dropped."""
        packages = await self._ensure_loaded()
        search = self._last_search
        if search is None or search.query != query:
            return None
        if not self._is_fresh(search.timestamp, self.search_ttl):
            return None

        results: list[RegistryPackage] = []
        for name in search.results:
            entry = packages.get(name)
            if entry is not None:
                results.append(
                    RegistryPackage(
                        name=entry.name,
                        description=entry.description,
                        version=entry.version,
                    )
                )
        return results

    async def set_search(self, query: str, results: Iterable[RegistryPackage]) -> None:
        packages = await self._ensure_loaded()
        now = self._now_ms()
        names: list[str] = []
        for package in results:
            packages[package.name] = CachedPackageData(
                name=package.name,
                timestamp=now,
                description=package.description,
                version=package.version,
            )
            names.append(package.name)
        self._last_search = CachedSearch(query=query, results=names, timestamp=now)
        await self._save()

    async def clear_search(self) -> None:
        await self._ensure_loaded()
        if self._last_search is None:
            return
        self._last_search = None
        await self._save()

    async def get_descriptions(self, packages: Iterable[InstalledPackage]) -> dict[str, str]:
        """Map registry sources to fresh cached descriptions."""
        cached = await self._ensure_loaded()
        descriptions: dict[str, str] = {}
        for package in packages:
            spec = parse_registry_source(package.source)
            if spec is None:
                continue
            entry = cached.get(spec.name)
            if (
                entry is not None
                and entry.description
                and self._is_fresh(entry.timestamp, self.metadata_ttl)
            ):
                descriptions[package.source] = entry.description
        return descriptions

    async def clear(self) -> None:
        await self._ensure_loaded()
        self._reset()
        await self._save()

    async def stats(self) -> CacheStats:
        packages = await self._ensure_loaded()
        valid = sum(
            1 for entry in packages.values() if self._is_fresh(entry.timestamp, self.metadata_ttl)
        )
        return CacheStats(total=len(packages), valid=valid, expired=len(packages) - valid)
