"""
Content validation for accepted image uploads.

Two checks at different pipeline stages:
- extension: cheap, on the declared filename, before any byte is staged
- signature: on the first bytes of the body, after the body is fully staged
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath


@dataclass(frozen=True)
class ImageFormat:
    """A RIFF-style container: 4-byte container tag, length, 4-byte format tag."""

    extension: str
    container_tag: bytes
    format_tag: bytes

    # Bytes needed for a signature check: tag(4) + length(4) + format(4)
    signature_length: int = 12

    def has_extension(self, filename: str | None) -> bool:
        if not filename:
            return False
        suffix = PurePosixPath(filename.replace("\\", "/")).suffix
        return suffix[1:].lower() == self.extension.lower() if suffix else False

    def matches_signature(self, header: bytes) -> bool:
        if len(header) < self.signature_length:
            return False
        return (
            header[0:4] == self.container_tag
            and header[8:12] == self.format_tag
        )


WEBP = ImageFormat(extension="webp", container_tag=b"RIFF", format_tag=b"WEBP")
