"""
Content-addressed object store on the local filesystem.

Layout under the storage root:
    .tmp/.uploading-<uuid4>        private staging files, one per request
    YYYY/MM/<sha256>.<ext>         committed objects, immutable

Commit is a hard link from the staging name onto the final name. The link
fails if the destination exists, so concurrent committers of identical
content can never clobber each other: whoever loses the race sees
FileExistsError and simply drops its staged copy. "Already there" and
"lost the race" are both a successful, deduplicated commit.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import anyio
from anyio import AsyncFile, to_thread

from imgd.config import TMP_DIR_NAME
from imgd.core.errors import InternalError

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".uploading-"


@dataclass(frozen=True)
class StoredObject:
    sha256: str
    size: int
    path: str
    deduplicated: bool = False


def relative_path_for(sha256_hex: str, extension: str, now: datetime | None = None) -> str:
    """Public path for an object: /YYYY/MM/<sha256>.<ext>, UTC date."""
    now = now or datetime.now(timezone.utc)
    return f"/{now.year:04d}/{now.month:02d}/{sha256_hex}.{extension}"


@dataclass
class StagedUpload:
    """
    One in-flight upload. Owned by the request task that created it.

    Tracks the running SHA-256, the byte count and the first
    `header_length` bytes for the signature check.
    """

    temp_path: Path
    file: AsyncFile[bytes] | None
    header_length: int = 12
    size: int = 0
    header: bytearray = field(default_factory=bytearray)
    committed: bool = False
    _hasher: Any = field(default_factory=hashlib.sha256, repr=False)

    async def write(self, chunk: bytes) -> None:
        if self.file is None:
            raise RuntimeError("write to a closed staged upload")
        if len(self.header) < self.header_length:
            self.header += chunk[: self.header_length - len(self.header)]
        await self.file.write(chunk)
        self._hasher.update(chunk)
        self.size += len(chunk)

    async def close(self) -> None:
        """Flush and close the staging file. Safe to call twice."""
        if self.file is None:
            return
        file, self.file = self.file, None
        try:
            await file.flush()
        finally:
            await file.aclose()

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


class ContentAddressedStore:
    def __init__(self, root: Path, extension: str):
        self.root = Path(root)
        self.extension = extension
        self.tmp_dir = self.root / TMP_DIR_NAME

    def absolute_path(self, relative_path: str) -> Path:
        return self.root / relative_path.lstrip("/")

    async def _discard(self, temp_path: Path) -> None:
        """Best-effort removal of a staging file; failures are only logged."""
        try:
            await anyio.Path(temp_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove staging file {temp_path.name}: {e}")

    @asynccontextmanager
    async def stage(self, header_length: int = 12) -> AsyncIterator[StagedUpload]:
        """
        Create an exclusive staging file for the duration of the block.

        Unless the block commits the upload, the staging file is removed on
        exit, including when the request task is cancelled.

        Raises:
            InternalError: If the staging file cannot be created
        """
        temp_path = self.tmp_dir / f"{STAGING_PREFIX}{uuid.uuid4()}"
        try:
            await anyio.Path(self.tmp_dir).mkdir(parents=True, exist_ok=True)
            file = await anyio.open_file(temp_path, "xb")
        except OSError as e:
            logger.error(f"Failed to create staging file: {e}", extra={"reason": "tmp_create"})
            raise InternalError("tmp_create") from e

        staged = StagedUpload(temp_path=temp_path, file=file, header_length=header_length)
        try:
            yield staged
        finally:
            with anyio.CancelScope(shield=True):
                try:
                    await staged.close()
                except OSError as e:
                    logger.warning(f"Failed to close staging file {temp_path.name}: {e}")
                if not staged.committed:
                    await self._discard(temp_path)

    async def commit(self, staged: StagedUpload, now: datetime | None = None) -> StoredObject:
        """
        Move a fully written, validated staged upload into place.

        Raises:
            InternalError: If the destination directory cannot be created or
                the link fails for any reason other than an existing object
        """
        await staged.close()

        digest = staged.hexdigest()
        relative = relative_path_for(digest, self.extension, now)
        final_path = self.absolute_path(relative)

        try:
            await anyio.Path(final_path.parent).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create {final_path.parent}: {e}", extra={"reason": "mkdir_final"})
            raise InternalError("mkdir_final") from e

        deduplicated = True
        if not await anyio.Path(final_path).exists():
            try:
                await to_thread.run_sync(os.link, staged.temp_path, final_path)
                deduplicated = False
            except FileExistsError:
                logger.debug(f"Lost commit race for {digest}; keeping existing object")
            except OSError as e:
                logger.error(f"Failed to link {final_path}: {e}", extra={"reason": "link_final"})
                raise InternalError("link_final") from e

        # The staged name is no longer needed either way; the object (if
        # linked) survives under its final name.
        staged.committed = True
        await self._discard(staged.temp_path)

        return StoredObject(sha256=digest, size=staged.size, path=relative, deduplicated=deduplicated)
