"""Per-run job outputs and named artifacts."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from gantry.config import settings
from gantry.engine.storage import StorageBackend

logger = logging.getLogger(__name__)

IF_NO_FILES_FOUND = ("warn", "error", "ignore")
DAY = 24 * 60 * 60


class OutputConflict(Exception):
    """An (instance, output) pair was written twice."""


class ArtifactNotFound(Exception):
    """No artifact with the requested name exists in the run."""


class ArtifactConflict(Exception):
    """An artifact with this name was already uploaded in the run."""


class NoFilesFound(Exception):
    """Upload matched no files and ``if-no-files-found`` is ``error``."""


class OutputStore:
    """Append-only mapping (instance, output name) -> value for one run."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str], Any] = {}

    def set(self, instance: str, name: str, value: Any) -> None:
        key = (instance, name)
        if key in self._values:
            raise OutputConflict(f"Output '{name}' of '{instance}' already written")
        self._values[key] = value

    def get(self, instance: str, name: str) -> Any:
        return self._values[(instance, name)]

    def for_instance(self, instance: str) -> dict[str, Any]:
        return {n: v for (i, n), v in self._values.items() if i == instance}

    def __len__(self) -> int:
        return len(self._values)


@dataclass
class ArtifactInfo:
    name: str
    run_id: str
    files: list[str] = field(default_factory=list)
    size: int = 0
    created_at: float = 0.0
    retention_days: int = 90
    expires_at: float = 0.0

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at


def _collect(paths: list[str], workspace: Path) -> tuple[list[Path], Path | None]:
    """Expand path globs; returns the matched files and their common root."""
    files: set[Path] = set()
    excluded: set[Path] = set()
    for raw in paths:
        pattern = raw.strip()
        negate = pattern.startswith("!")
        if negate:
            pattern = pattern[1:]
        candidate = Path(pattern).expanduser()
        if not candidate.is_absolute():
            candidate = workspace / candidate
        if any(ch in pattern for ch in "*?["):
            anchor = Path(candidate.anchor)
            matched = [p for p in anchor.glob(str(candidate.relative_to(anchor)))]
        else:
            matched = [candidate] if candidate.exists() else []
        found: set[Path] = set()
        for m in matched:
            if m.is_dir():
                found.update(p for p in m.rglob("*") if p.is_file())
            elif m.is_file():
                found.add(m)
        if negate:
            excluded |= found
        else:
            files |= found
    selected = sorted(p.resolve() for p in files - excluded)
    if not selected:
        return [], None

    # Least common ancestor of the search paths that produced files
    roots = []
    for raw in paths:
        if raw.strip().startswith("!"):
            continue
        base = Path(raw.strip()).expanduser()
        if not base.is_absolute():
            base = workspace / base
        parts = []
        for part in base.parts:
            if any(ch in part for ch in "*?["):
                break
            parts.append(part)
        root = Path(*parts).resolve() if parts else workspace.resolve()
        if root.is_file():
            root = root.parent
        roots.append(str(root))
    common = Path(os.path.commonpath(roots)) if roots else workspace.resolve()
    return selected, common


class ArtifactStore:
    """Artifacts of one run, kept in blob storage."""

    def __init__(self, storage: StorageBackend, run_id: str) -> None:
        self.storage = storage
        self.run_id = run_id
        self._lock = asyncio.Lock()

    def _prefix(self, name: str) -> str:
        return f"artifacts/{self.run_id}/{name}/"

    async def get(self, name: str) -> ArtifactInfo | None:
        raw = await self.storage.read(self._prefix(name) + "manifest.json")
        if raw is None:
            return None
        return ArtifactInfo(**json.loads(raw.decode("utf-8")))

    async def list(self) -> list[ArtifactInfo]:
        infos = []
        for path in await self.storage.list(f"artifacts/{self.run_id}/"):
            if path.endswith("/manifest.json"):
                raw = await self.storage.read(path)
                if raw is not None:
                    infos.append(ArtifactInfo(**json.loads(raw.decode("utf-8"))))
        return sorted(infos, key=lambda i: i.name)

    async def delete(self, name: str) -> None:
        for path in await self.storage.list(self._prefix(name)):
            await self.storage.delete(path)

    async def upload(
        self,
        name: str,
        paths: list[str],
        workspace: Path,
        *,
        if_no_files_found: str = "warn",
        retention_days: int | None = None,
        overwrite: bool = False,
    ) -> ArtifactInfo | None:
        """Upload files matching *paths* as artifact *name*.

        Returns None when nothing matched and the policy tolerates it.
        """
        if if_no_files_found not in IF_NO_FILES_FOUND:
            raise ValueError(f"Invalid if-no-files-found value: {if_no_files_found!r}")
        if not name or "/" in name or "\\" in name:
            raise ValueError(f"Invalid artifact name: {name!r}")

        files, root = _collect(paths, workspace)
        if not files:
            message = f"No files were found with the provided path: {', '.join(paths)}"
            if if_no_files_found == "error":
                raise NoFilesFound(message)
            if if_no_files_found == "warn":
                logger.warning(f"{message}. No artifacts will be uploaded.")
            return None

        async with self._lock:
            if await self.get(name) is not None:
                if not overwrite:
                    raise ArtifactConflict(
                        f"Artifact '{name}' already exists in run {self.run_id}"
                    )
                await self.delete(name)

            prefix = self._prefix(name)
            size = 0
            relative: list[str] = []
            for path in files:
                rel = path.relative_to(root).as_posix() if root else path.name
                content = path.read_bytes()
                await self.storage.write(prefix + "files/" + rel, content)
                relative.append(rel)
                size += len(content)

            days = retention_days or settings.artifact_retention_days
            now = time.time()
            info = ArtifactInfo(
                name=name,
                run_id=self.run_id,
                files=relative,
                size=size,
                created_at=now,
                retention_days=days,
                expires_at=now + days * DAY,
            )
            await self.storage.write(
                prefix + "manifest.json", json.dumps(asdict(info), indent=2).encode("utf-8")
            )
        logger.info(f"Artifact '{name}' uploaded ({len(relative)} files, {size} bytes)")
        return info

    async def _download_one(self, info: ArtifactInfo, destination: Path) -> list[Path]:
        written = []
        prefix = self._prefix(info.name) + "files/"
        for rel in info.files:
            content = await self.storage.read(prefix + rel)
            if content is None:
                raise ArtifactNotFound(f"Artifact '{info.name}' is missing file '{rel}'")
            target = (destination / rel).resolve()
            if destination.resolve() not in target.parents:
                raise ValueError(f"Artifact file escapes destination: {rel}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            written.append(target)
        return written

    async def download(self, name: str | None, destination: Path) -> list[Path]:
        """Download one artifact, or every artifact of the run when *name* is None.

        With no name, each artifact goes into ``destination/<name>/``.
        """
        if name:
            info = await self.get(name)
            if info is None:
                raise ArtifactNotFound(f"Artifact '{name}' not found in run {self.run_id}")
            return await self._download_one(info, destination)

        written: list[Path] = []
        for info in await self.list():
            written.extend(await self._download_one(info, destination / info.name))
        return written


async def purge_expired(storage: StorageBackend, now: float | None = None) -> list[ArtifactInfo]:
    """Delete every artifact (any run) whose retention has elapsed."""
    now = now if now is not None else time.time()
    purged = []
    for path in await storage.list("artifacts/"):
        if not path.endswith("/manifest.json"):
            continue
        raw = await storage.read(path)
        if raw is None:
            continue
        info = ArtifactInfo(**json.loads(raw.decode("utf-8")))
        if info.expires_at <= now:
            store = ArtifactStore(storage, info.run_id)
            await store.delete(info.name)
            purged.append(info)
            logger.info(f"Purged expired artifact '{info.name}' of run {info.run_id}")
    return purged


async def list_all(storage: StorageBackend) -> list[ArtifactInfo]:
    infos = []
    for path in await storage.list("artifacts/"):
        if path.endswith("/manifest.json"):
            raw = await storage.read(path)
            if raw is not None:
                infos.append(ArtifactInfo(**json.loads(raw.decode("utf-8"))))
    return infos
