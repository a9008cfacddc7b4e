"""
Test the ingestion pipeline directly, without HTTP.

Each call must end in exactly one of upload_ok / upload_fail and leave no
staging file behind.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator

import pytest

from imgd.core.errors import (
    BadRequestError,
    FileTooLargeError,
    ImgdError,
    InternalError,
    UnsupportedMediaTypeError,
)
from imgd.core.metrics import UploadMetrics
from imgd.services.ingest import IngestionPipeline
from imgd.services.storage import ContentAddressedStore
from tests.helpers import (
    achunks,
    make_webp,
    multipart_body,
    multipart_headers,
    multipart_part,
    staging_files,
    stored_objects,
)

CONTENT_TYPE = multipart_headers()["Content-Type"]


@pytest.fixture
def metrics() -> UploadMetrics:
    return UploadMetrics()


@pytest.fixture
def store(tmp_path: Path) -> ContentAddressedStore:
    return ContentAddressedStore(tmp_path / "images", extension="webp")


@pytest.fixture
def pipeline(store: ContentAddressedStore, metrics: UploadMetrics) -> IngestionPipeline:
    return IngestionPipeline(
        store=store,
        metrics=metrics,
        max_upload_bytes=64,
        max_body_bytes=64 + 1024,
    )


def _file_body(data: bytes, filename: str = "a.webp") -> bytes:
    return multipart_body(multipart_part("file", data, filename=filename))


class TestIngest:
    @pytest.mark.asyncio
    async def test_success_counts_ok(
        self, pipeline: IngestionPipeline, metrics: UploadMetrics, store: ContentAddressedStore
    ) -> None:
        data = make_webp(b"ok")

        stored = await pipeline.ingest(achunks(_file_body(data), 5), content_type=CONTENT_TYPE)

        assert stored.size == len(data)
        assert store.absolute_path(stored.path).read_bytes() == data
        assert metrics.snapshot() == {"upload_ok": 1, "upload_fail": 0, "upload_limited": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body, error, reason",
        [
            (b"", BadRequestError, "missing_file"),
            (
                multipart_body(multipart_part("image", make_webp(), filename="a.webp")),
                BadRequestError,
                "invalid_field",
            ),
            (
                multipart_body(multipart_part("file", make_webp(), filename=None)),
                BadRequestError,
                "missing_filename",
            ),
            (_file_body(make_webp(), filename="a.jpg"), UnsupportedMediaTypeError, "extension"),
            (_file_body(b"hello, world", filename="fake.webp"), UnsupportedMediaTypeError, "signature"),
            (_file_body(make_webp(b"\x00" * 64)), FileTooLargeError, "too_large"),
        ],
    )
    async def test_failures_count_fail_and_clean_up(
        self,
        pipeline: IngestionPipeline,
        metrics: UploadMetrics,
        store: ContentAddressedStore,
        body: bytes,
        error: type[ImgdError],
        reason: str,
    ) -> None:
        with pytest.raises(error) as excinfo:
            await pipeline.ingest(achunks(body), content_type=CONTENT_TYPE)

        assert excinfo.value.reason == reason
        assert metrics.snapshot() == {"upload_ok": 0, "upload_fail": 1, "upload_limited": 0}
        assert stored_objects(store.root) == []
        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_declared_length_over_body_limit(
        self, pipeline: IngestionPipeline, metrics: UploadMetrics
    ) -> None:
        with pytest.raises(FileTooLargeError):
            await pipeline.ingest(
                achunks(_file_body(make_webp())),
                content_type=CONTENT_TYPE,
                content_length=str(64 + 1024 + 1),
            )

        assert metrics.snapshot()["upload_fail"] == 1

    @pytest.mark.asyncio
    async def test_non_numeric_declared_length(self, pipeline: IngestionPipeline) -> None:
        with pytest.raises(BadRequestError) as excinfo:
            await pipeline.ingest(
                achunks(_file_body(make_webp())),
                content_type=CONTENT_TYPE,
                content_length="abc",
            )

        assert excinfo.value.reason == "content_length"

    @pytest.mark.asyncio
    async def test_file_exactly_at_limit(self, pipeline: IngestionPipeline) -> None:
        data = make_webp(b"\x00" * (64 - 12))

        stored = await pipeline.ingest(achunks(_file_body(data)), content_type=CONTENT_TYPE)

        assert stored.size == 64

    @pytest.mark.asyncio
    async def test_cancellation_counts_fail_and_cleans_up(
        self, pipeline: IngestionPipeline, metrics: UploadMetrics, store: ContentAddressedStore
    ) -> None:
        head = _file_body(make_webp(b"never finished"))[:-30]

        async def stalled_body() -> AsyncIterator[bytes]:
            yield head
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await pipeline.ingest(stalled_body(), content_type=CONTENT_TYPE)

        assert metrics.snapshot()["upload_fail"] == 1
        assert staging_files(store.root) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(
        self, pipeline: IngestionPipeline, metrics: UploadMetrics
    ) -> None:
        async def broken_body() -> AsyncIterator[bytes]:
            raise KeyError("boom")
            yield b""  # pragma: no cover

        with pytest.raises(InternalError) as excinfo:
            await pipeline.ingest(broken_body(), content_type=CONTENT_TYPE)

        assert excinfo.value.reason == "unexpected"
        assert metrics.snapshot()["upload_fail"] == 1
