"""Tests for artifact storage and job output records."""

from __future__ import annotations

import time

import pytest

from gantry.engine.artifacts import (
    ArtifactConflict,
    ArtifactNotFound,
    ArtifactStore,
    NoFilesFound,
    OutputConflict,
    OutputStore,
    list_all,
    purge_expired,
)


@pytest.fixture
def build_dir(workspace):
    dist = workspace / "dist"
    (dist / "sub").mkdir(parents=True)
    (dist / "app.whl").write_bytes(b"wheel")
    (dist / "sub" / "notes.txt").write_text("notes")
    (dist / "debug.log").write_text("noise")
    return dist


class TestOutputStore:
    def test_write_once(self):
        store = OutputStore()
        store.set("build", "version", "1.0")
        with pytest.raises(OutputConflict):
            store.set("build", "version", "2.0")
        assert store.get("build", "version") == "1.0"
        assert store.for_instance("build") == {"version": "1.0"}
        assert len(store) == 1


class TestUpload:
    @pytest.mark.asyncio
    async def test_directory_upload_keeps_relative_layout(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        info = await store.upload("dist", ["dist"], workspace)

        assert sorted(info.files) == ["app.whl", "debug.log", "sub/notes.txt"]
        assert info.size == len(b"wheel") + len("notes") + len("noise")
        assert info.expires_at > info.created_at

    @pytest.mark.asyncio
    async def test_glob_with_exclusion(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        info = await store.upload("dist", ["dist/**/*", "!dist/*.log"], workspace)
        assert sorted(info.files) == ["app.whl", "sub/notes.txt"]

    @pytest.mark.asyncio
    async def test_no_files_policies(self, storage, workspace):
        store = ArtifactStore(storage, "run-1")
        assert await store.upload("x", ["nothing/*"], workspace) is None
        assert await store.upload("x", ["nothing/*"], workspace, if_no_files_found="ignore") is None
        with pytest.raises(NoFilesFound):
            await store.upload("x", ["nothing/*"], workspace, if_no_files_found="error")

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        await store.upload("dist", ["dist/app.whl"], workspace)
        with pytest.raises(ArtifactConflict):
            await store.upload("dist", ["dist/debug.log"], workspace)

    @pytest.mark.asyncio
    async def test_overwrite_replaces(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        await store.upload("dist", ["dist/app.whl"], workspace)
        info = await store.upload("dist", ["dist/debug.log"], workspace, overwrite=True)
        assert info.files == ["debug.log"]
        assert (await store.get("dist")).files == ["debug.log"]

    @pytest.mark.asyncio
    async def test_invalid_name(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        with pytest.raises(ValueError):
            await store.upload("a/b", ["dist"], workspace)

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, storage, workspace, build_dir):
        await ArtifactStore(storage, "run-1").upload("dist", ["dist"], workspace)
        await ArtifactStore(storage, "run-2").upload("dist", ["dist"], workspace)
        assert len(await list_all(storage)) == 2


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_by_name(self, storage, workspace, build_dir, tmp_path):
        store = ArtifactStore(storage, "run-1")
        await store.upload("dist", ["dist"], workspace)

        written = await store.download("dist", tmp_path / "out")
        assert len(written) == 3
        assert (tmp_path / "out" / "sub" / "notes.txt").read_text() == "notes"

    @pytest.mark.asyncio
    async def test_download_all(self, storage, workspace, build_dir, tmp_path):
        store = ArtifactStore(storage, "run-1")
        await store.upload("wheel", ["dist/app.whl"], workspace)
        await store.upload("logs", ["dist/debug.log"], workspace)

        await store.download(None, tmp_path / "all")
        assert (tmp_path / "all" / "wheel" / "app.whl").read_bytes() == b"wheel"
        assert (tmp_path / "all" / "logs" / "debug.log").read_text() == "noise"

    @pytest.mark.asyncio
    async def test_missing_artifact(self, storage, tmp_path):
        store = ArtifactStore(storage, "run-1")
        with pytest.raises(ArtifactNotFound):
            await store.download("ghost", tmp_path)


class TestRetention:
    @pytest.mark.asyncio
    async def test_purge_expired(self, storage, workspace, build_dir):
        store = ArtifactStore(storage, "run-1")
        await store.upload("short", ["dist/app.whl"], workspace, retention_days=1)
        await store.upload("long", ["dist/app.whl"], workspace, retention_days=30)

        purged = await purge_expired(storage, now=time.time() + 2 * 24 * 3600)
        assert [p.name for p in purged] == ["short"]
        assert [i.name for i in await store.list()] == ["long"]
