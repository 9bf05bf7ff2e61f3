"""Dependency cache: key resolution, scoped lookup, retention and quota.

Entries are gzip tarballs of the cached paths stored through the blob
storage backend, plus a JSON index at ``caches/index.json``. Writes are
first-writer-wins per (scope, key); a scope is the git ref of the run that
wrote the entry, and restores fall back to the default branch scope.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import json
import logging
import tarfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from gantry.config import settings
from gantry.engine.expressions import interpolate_string
from gantry.engine.storage import StorageBackend

logger = logging.getLogger(__name__)

INDEX_PATH = "caches/index.json"
MAX_KEY_LENGTH = 512
DAY = 24 * 60 * 60


class QuotaExceeded(Exception):
    """An entry cannot be admitted even after LRU eviction."""


class CacheKeyError(ValueError):
    """A cache key is empty, too long or contains a comma."""


@dataclass
class CacheEntry:
    key: str
    scope: str
    blob: str
    paths: list[str] = field(default_factory=list)
    size: int = 0
    created_at: float = 0.0
    last_accessed_at: float = 0.0
    seq: int = 0


@dataclass
class CacheResult:
    """Outcome of a lookup. ``hit`` is true only for an exact key match."""

    hit: bool = False
    matched_key: str | None = None
    entry: CacheEntry | None = None


def _check_key(key: str) -> str:
    if not key:
        raise CacheKeyError("Cache key must not be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise CacheKeyError(f"Cache key exceeds {MAX_KEY_LENGTH} characters")
    if "," in key:
        raise CacheKeyError(f"Cache key must not contain commas: {key!r}")
    return key


def resolve(
    key_template: str,
    restore_keys: list[str] | str | None,
    context: Any,
) -> tuple[str, list[str]]:
    """Evaluate the key template and restore-key prefixes.

    ``restore_keys`` may be a list or a newline-separated string (the form
    used in ``with:`` blocks). Returns the exact key and the ordered
    fallback prefix chain.
    """
    key = _check_key(interpolate_string(key_template, context).strip())
    if isinstance(restore_keys, str):
        templates = restore_keys.splitlines()
    else:
        templates = list(restore_keys or [])
    chain: list[str] = []
    for template in templates:
        prefix = interpolate_string(template, context).strip()
        if prefix:
            chain.append(_check_key(prefix))
    return key, chain


def pack_paths(paths: list[Path]) -> bytes:
    """Tar+gzip the given files/directories; member ``i`` is ``paths[i]``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for i, path in enumerate(paths):
            if path.exists():
                tar.add(str(path), arcname=str(i), recursive=True)
    return buffer.getvalue()


def unpack_paths(payload: bytes, paths: list[Path]) -> int:
    """Extract a :func:`pack_paths` payload back onto *paths*.

    Returns the number of files written. Links and members escaping their
    target are skipped.
    """
    written = 0
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        for member in tar.getmembers():
            parts = PurePosixPath(member.name).parts
            if not parts or not parts[0].isdigit() or ".." in parts:
                logger.warning(f"Skipping suspicious cache member: {member.name}")
                continue
            index = int(parts[0])
            if index >= len(paths):
                continue
            target = paths[index].joinpath(*parts[1:]) if len(parts) > 1 else paths[index]
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                target.write_bytes(source.read())
                target.chmod(member.mode & 0o777 or 0o644)
                written += 1
    return written


def _blob_name(scope: str, key: str) -> str:
    digest = hashlib.sha256(f"{scope}\0{key}".encode()).hexdigest()
    return f"caches/blobs/{digest}.tar.gz"


class CacheStore:
    """Cache index and blobs for one repository."""

    def __init__(
        self,
        storage: StorageBackend,
        *,
        quota_bytes: int | None = None,
        retention_days: float | None = None,
        default_scope: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.cache_quota_bytes
        self.retention_days = (
            retention_days if retention_days is not None else settings.cache_retention_days
        )
        self.default_scope = default_scope or f"refs/heads/{settings.default_branch}"
        self.clock = clock
        self._lock = asyncio.Lock()

    # -- index ------------------------------------------------------------

    async def _load(self) -> list[CacheEntry]:
        raw = await self.storage.read(INDEX_PATH)
        if raw is None:
            return []
        data = json.loads(raw.decode("utf-8"))
        return [CacheEntry(**e) for e in data.get("entries", [])]

    async def _save(self, entries: list[CacheEntry]) -> None:
        payload = {"entries": [asdict(e) for e in entries]}
        await self.storage.write(INDEX_PATH, json.dumps(payload, indent=2).encode("utf-8"))

    async def entries(self) -> list[CacheEntry]:
        async with self._lock:
            return await self._load()

    # -- lookup -----------------------------------------------------------

    def _scopes(self, scope: str | None) -> list[str]:
        scopes = [scope] if scope else []
        if self.default_scope not in scopes:
            scopes.append(self.default_scope)
        return scopes

    @staticmethod
    def _find(entries: list[CacheEntry], key: str, restore_keys: list[str],
              scopes: list[str]) -> CacheResult:
        for scope in scopes:
            in_scope = [e for e in entries if e.scope == scope]
            for entry in in_scope:
                if entry.key == key:
                    return CacheResult(hit=True, matched_key=entry.key, entry=entry)
            for prefix in restore_keys:
                candidates = [e for e in in_scope if e.key.startswith(prefix)]
                if candidates:
                    best = max(candidates, key=lambda e: e.seq)
                    return CacheResult(hit=False, matched_key=best.key, entry=best)
        return CacheResult()

    async def lookup(self, key: str, restore_keys: list[str] | None = None,
                     scope: str | None = None) -> CacheResult:
        """Find an entry: exact key first, then each prefix (newest wins)."""
        async with self._lock:
            entries = await self._load()
            result = self._find(entries, key, list(restore_keys or []), self._scopes(scope))
            if result.entry is not None:
                result.entry.last_accessed_at = self.clock()
                await self._save(entries)
        return result

    async def restore(self, key: str, restore_keys: list[str] | None, scope: str | None,
                      paths: list[Path]) -> CacheResult:
        result = await self.lookup(key, restore_keys, scope)
        if result.entry is None:
            logger.info(f"Cache not found for key: {key}")
            return result
        payload = await self.storage.read(result.entry.blob)
        if payload is None:
            logger.warning(f"Cache blob missing for key '{result.entry.key}'")
            return CacheResult()
        count = unpack_paths(payload, paths)
        logger.info(f"Cache restored from key: {result.matched_key} ({count} files)")
        return result

    # -- writes -----------------------------------------------------------

    def _stale(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.last_accessed_at > self.retention_days * DAY

    async def _evict(self, entries: list[CacheEntry], victims: list[CacheEntry]) -> None:
        for victim in victims:
            entries.remove(victim)
            await self.storage.delete(victim.blob)
            logger.info(f"Evicted cache entry '{victim.key}' ({victim.scope})")

    async def evict_stale(self) -> list[CacheEntry]:
        """Remove entries not accessed within the retention window."""
        async with self._lock:
            entries = await self._load()
            now = self.clock()
            victims = [e for e in entries if self._stale(e, now)]
            if victims:
                await self._evict(entries, victims)
                await self._save(entries)
            return victims

    async def _admit(self, entries: list[CacheEntry], size: int) -> None:
        now = self.clock()
        stale = [e for e in entries if self._stale(e, now)]
        if stale:
            await self._evict(entries, stale)
        if size > self.quota_bytes:
            raise QuotaExceeded(f"Entry of {size} bytes exceeds quota of {self.quota_bytes}")
        total = sum(e.size for e in entries)
        while entries and total + size > self.quota_bytes:
            lru = min(entries, key=lambda e: (e.last_accessed_at, e.seq))
            await self._evict(entries, [lru])
            total -= lru.size

    async def put(self, key: str, scope: str, paths: list[str], payload: bytes) -> CacheEntry | None:
        """Store *payload* under (scope, key).

        Returns None when the key already exists (first writer wins) or the
        entry is larger than the whole quota.
        """
        _check_key(key)
        async with self._lock:
            entries = await self._load()
            if any(e.key == key and e.scope == scope for e in entries):
                logger.info(f"Cache entry '{key}' already exists; not saving")
                return None
            try:
                await self._admit(entries, len(payload))
            except QuotaExceeded as e:
                logger.warning(f"Cache '{key}' not saved: {e}")
                await self._save(entries)
                return None

            now = self.clock()
            entry = CacheEntry(
                key=key,
                scope=scope,
                blob=_blob_name(scope, key),
                paths=list(paths),
                size=len(payload),
                created_at=now,
                last_accessed_at=now,
                seq=max((e.seq for e in entries), default=0) + 1,
            )
            await self.storage.write(entry.blob, payload)
            entries.append(entry)
            await self._save(entries)
        logger.info(f"Cache saved with key: {key} ({entry.size} bytes)")
        return entry

    async def exists(self, key: str, scope: str) -> bool:
        async with self._lock:
            entries = await self._load()
        return any(e.key == key and e.scope == scope for e in entries)

    async def save(self, key: str, scope: str, paths: list[str], workspace: Path) -> CacheEntry | None:
        """Pack *paths* (relative to *workspace*) and store them."""
        if await self.exists(key, scope):
            logger.info(f"Cache entry '{key}' already exists; not saving")
            return None
        resolved = [resolve_cache_path(p, workspace) for p in paths]
        if not any(p.exists() for p in resolved):
            logger.warning(f"Cache '{key}' not saved: none of the paths exist")
            return None
        payload = await asyncio.to_thread(pack_paths, resolved)
        return await self.put(key, scope, paths, payload)

    async def delete(self, key: str, scope: str | None = None) -> int:
        async with self._lock:
            entries = await self._load()
            victims = [e for e in entries if e.key == key and (scope is None or e.scope == scope)]
            await self._evict(entries, victims)
            await self._save(entries)
        return len(victims)


def resolve_cache_path(path: str, workspace: Path) -> Path:
    expanded = Path(path).expanduser()
    return expanded if expanded.is_absolute() else (workspace / expanded)


def parse_path_list(value: Any) -> list[str]:
    """Split a ``path:`` input (newline separated string or list)."""
    if isinstance(value, list):
        items = [str(v) for v in value]
    else:
        items = str(value or "").splitlines()
    return [item.strip() for item in items if item.strip()]
