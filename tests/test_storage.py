"""
Test the content-addressed store: staging cleanup, commit layout and
deduplication, including concurrent commits of identical content.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timezone
from pathlib import Path

import pytest

from imgd.core.errors import InternalError
from imgd.services.storage import STAGING_PREFIX, ContentAddressedStore, relative_path_for
from tests.helpers import make_webp, staging_files, stored_objects

FEB_2024 = datetime(2024, 2, 29, 23, 59, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> ContentAddressedStore:
    return ContentAddressedStore(tmp_path / "images", extension="webp")


async def _stage_and_commit(store: ContentAddressedStore, data: bytes, now: datetime | None = None):
    async with store.stage() as staged:
        await staged.write(data)
        return await store.commit(staged, now=now)


def test_relative_path_layout() -> None:
    digest = "ab" * 32

    assert relative_path_for(digest, "webp", FEB_2024) == f"/2024/02/{digest}.webp"


class TestStage:
    @pytest.mark.asyncio
    async def test_staging_file_is_private_and_exclusive(self, store: ContentAddressedStore) -> None:
        async with store.stage() as staged:
            assert staged.temp_path.parent == store.tmp_dir
            assert staged.temp_path.name.startswith(STAGING_PREFIX)
            assert staged.temp_path.exists()

        assert not staged.temp_path.exists()

    @pytest.mark.asyncio
    async def test_tracks_size_digest_and_header(self, store: ContentAddressedStore) -> None:
        data = make_webp(b"payload")

        async with store.stage(header_length=12) as staged:
            for i in range(0, len(data), 3):
                await staged.write(data[i : i + 3])

            assert staged.size == len(data)
            assert bytes(staged.header) == data[:12]
            assert staged.hexdigest() == hashlib.sha256(data).hexdigest()

    @pytest.mark.asyncio
    async def test_staging_file_is_removed_on_error(self, store: ContentAddressedStore) -> None:
        with pytest.raises(ValueError):
            async with store.stage() as staged:
                await staged.write(b"partial")
                raise ValueError("abort")

        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_staging_file_is_removed_on_cancellation(
        self, store: ContentAddressedStore
    ) -> None:
        started = asyncio.Event()

        async def slow_upload() -> None:
            async with store.stage() as staged:
                await staged.write(b"partial")
                started.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(slow_upload())
        await started.wait()
        assert len(staging_files(store.root)) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, store: ContentAddressedStore) -> None:
        async with store.stage() as staged:
            await staged.write(b"x")
            await staged.close()
            await staged.close()

            with pytest.raises(RuntimeError):
                await staged.write(b"y")


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_places_object(self, store: ContentAddressedStore) -> None:
        data = make_webp(b"commit me")

        stored = await _stage_and_commit(store, data, now=FEB_2024)

        digest = hashlib.sha256(data).hexdigest()
        assert stored.sha256 == digest
        assert stored.size == len(data)
        assert stored.path == f"/2024/02/{digest}.webp"
        assert stored.deduplicated is False
        assert store.absolute_path(stored.path).read_bytes() == data
        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_second_commit_is_deduplicated(self, store: ContentAddressedStore) -> None:
        data = make_webp(b"same")

        first = await _stage_and_commit(store, data, now=FEB_2024)
        second = await _stage_and_commit(store, data, now=FEB_2024)

        assert first.path == second.path
        assert first.deduplicated is False
        assert second.deduplicated is True
        assert len(stored_objects(store.root)) == 1
        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_existing_object_is_never_overwritten(self, store: ContentAddressedStore) -> None:
        data = make_webp(b"original")
        stored = await _stage_and_commit(store, data, now=FEB_2024)
        final = store.absolute_path(stored.path)
        inode = final.stat().st_ino

        await _stage_and_commit(store, data, now=FEB_2024)

        assert final.stat().st_ino == inode

    @pytest.mark.asyncio
    async def test_concurrent_identical_commits_converge(self, store: ContentAddressedStore) -> None:
        data = make_webp(b"racing")

        results = await asyncio.gather(
            *(_stage_and_commit(store, data, now=FEB_2024) for _ in range(8))
        )

        assert len({r.path for r in results}) == 1
        assert sum(1 for r in results if not r.deduplicated) == 1
        assert len(stored_objects(store.root)) == 1
        assert store.absolute_path(results[0].path).read_bytes() == data
        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_unwritable_destination_is_internal_error(
        self, store: ContentAddressedStore
    ) -> None:
        store.root.mkdir(parents=True)
        # A regular file where the year directory should be
        (store.root / "2024").write_bytes(b"")

        with pytest.raises(InternalError) as excinfo:
            await _stage_and_commit(store, make_webp(b"blocked"), now=FEB_2024)

        assert excinfo.value.reason == "mkdir_final"
        assert staging_files(store.root) == []
