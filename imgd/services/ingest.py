"""
Upload ingestion pipeline.

Per request:

    AwaitField -> Streaming -> Staged -> Validated -> Committed

Any state may instead end in Aborted.

- AwaitField: the first multipart part must be the `file` field with a
  filename whose extension matches the accepted format. Later parts are
  never read.
- Streaming: each chunk is size-checked, captured for the signature,
  written to an exclusive staging file and hashed.
- Staged -> Validated: magic signature check on the captured header.
- Validated -> Committed: content-addressed, race-safe commit.

Each call ends in exactly one of upload_ok / upload_fail, and every abort
removes the staging file (see ContentAddressedStore.stage).
"""

from __future__ import annotations

import logging
import time
from contextlib import aclosing
from typing import AsyncIterable

import anyio

from imgd.core.errors import (
    BadRequestError,
    FileTooLargeError,
    ImgdError,
    InternalError,
    UnsupportedMediaTypeError,
)
from imgd.core.metrics import UploadMetrics
from imgd.core.security import Identity

from .multipart import PartData, PartEnd, PartStart, iter_multipart
from .storage import ContentAddressedStore, StoredObject
from .webp import WEBP, ImageFormat

logger = logging.getLogger(__name__)

FILE_FIELD = "file"


class IngestionPipeline:
    def __init__(
        self,
        *,
        store: ContentAddressedStore,
        metrics: UploadMetrics,
        max_upload_bytes: int,
        max_body_bytes: int,
        image_format: ImageFormat = WEBP,
    ):
        self.store = store
        self.metrics = metrics
        self.max_upload_bytes = max_upload_bytes
        self.max_body_bytes = max_body_bytes
        self.image_format = image_format

    async def ingest(
        self,
        body: AsyncIterable[bytes],
        *,
        content_type: str | None,
        content_length: str | None = None,
        client_ip: str = "-",
        identity: Identity | None = None,
        request_id: str = "-",
    ) -> StoredObject:
        """
        Stream one multipart upload into the store.

        Raises:
            ImgdError: The client-facing failure; unexpected exceptions are
                logged and re-raised as InternalError
        """
        started = time.perf_counter()
        log_extra = {
            "client_ip": client_ip,
            "request_id": request_id,
            "token_id": identity.token_id if identity else None,
        }

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            stored = await self._ingest(body, content_type, content_length)
        except ImgdError as e:
            self.metrics.increment_fail()
            level = logging.ERROR if isinstance(e, InternalError) else logging.WARNING
            logger.log(
                level,
                "upload rejected",
                extra={**log_extra, "result": "fail", "reason": e.reason, "elapsed_ms": elapsed_ms()},
            )
            raise
        except anyio.get_cancelled_exc_class():
            self.metrics.increment_fail()
            logger.warning(
                "upload cancelled",
                extra={**log_extra, "result": "fail", "reason": "cancelled", "elapsed_ms": elapsed_ms()},
            )
            raise
        except Exception as e:
            self.metrics.increment_fail()
            logger.exception(
                f"upload failed: {type(e).__name__}",
                extra={**log_extra, "result": "fail", "reason": "unexpected", "elapsed_ms": elapsed_ms()},
            )
            raise InternalError("unexpected") from e

        self.metrics.increment_ok()
        logger.info(
            "upload finished",
            extra={
                **log_extra,
                "result": "ok",
                "sha256": stored.sha256,
                "size": stored.size,
                "path": stored.path,
                "deduplicated": stored.deduplicated,
                "elapsed_ms": elapsed_ms(),
            },
        )
        return stored

    def _check_declared_length(self, content_length: str | None) -> None:
        if not content_length:
            return
        try:
            declared = int(content_length)
        except ValueError as e:
            raise BadRequestError("content_length") from e
        if declared > self.max_body_bytes:
            raise FileTooLargeError("body_limit")

    def _check_part(self, part: PartStart) -> None:
        if part.name != FILE_FIELD:
            raise BadRequestError("invalid_field")
        if part.filename is None:
            raise BadRequestError("missing_filename")
        if not self.image_format.has_extension(part.filename):
            raise UnsupportedMediaTypeError("extension")

    async def _ingest(
        self,
        body: AsyncIterable[bytes],
        content_type: str | None,
        content_length: str | None,
    ) -> StoredObject:
        self._check_declared_length(content_length)
        events = iter_multipart(body, content_type, max_body_bytes=self.max_body_bytes)

        async with aclosing(events):
            first = await anext(events, None)
            if first is None:
                raise BadRequestError("missing_file")
            if not isinstance(first, PartStart):
                raise BadRequestError("multipart_read")
            self._check_part(first)

            signature_length = self.image_format.signature_length
            async with self.store.stage(header_length=signature_length) as staged:
                async for event in events:
                    if isinstance(event, PartEnd):
                        break
                    if not isinstance(event, PartData):
                        raise BadRequestError("multipart_read")

                    if staged.size + len(event.data) > self.max_upload_bytes:
                        raise FileTooLargeError("too_large")
                    try:
                        await staged.write(event.data)
                    except OSError as e:
                        raise InternalError("tmp_write") from e
                else:
                    # Body ended before the part was terminated
                    raise BadRequestError("multipart_read")

                try:
                    await staged.close()
                except OSError as e:
                    raise InternalError("tmp_write") from e

                if not self.image_format.matches_signature(bytes(staged.header)):
                    raise UnsupportedMediaTypeError("signature")

                return await self.store.commit(staged)
