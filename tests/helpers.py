"""
Test helpers shared across the imgd suite.

Plain functions (not fixtures) so they can be called with arguments inside
test bodies.
"""

from __future__ import annotations

import struct
from pathlib import Path
from typing import AsyncIterator

PUBLIC_BASE_URL = "https://img.example.com"
BOUNDARY = "imgdtestboundary7MA4YWxkTrZu0gW"


def make_webp(payload: bytes = b"VP8 test-frame") -> bytes:
    """Minimal RIFF/WEBP container around `payload`."""
    return b"RIFF" + struct.pack("<I", 4 + len(payload)) + b"WEBP" + payload


def multipart_part(
    name: str | None,
    data: bytes,
    filename: str | None = None,
    content_type: str | None = "image/webp",
) -> bytes:
    disposition = "Content-Disposition: form-data"
    if name is not None:
        disposition += f'; name="{name}"'
    if filename is not None:
        disposition += f'; filename="{filename}"'

    lines = [disposition.encode()]
    if content_type is not None:
        lines.append(f"Content-Type: {content_type}".encode())
    return f"--{BOUNDARY}\r\n".encode() + b"\r\n".join(lines) + b"\r\n\r\n" + data + b"\r\n"


def multipart_body(*parts: bytes, terminate: bool = True) -> bytes:
    body = b"".join(parts)
    if terminate:
        body += f"--{BOUNDARY}--\r\n".encode()
    return body


def multipart_headers(token: str | None = None) -> dict[str, str]:
    headers = {"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"}
    if token is not None:
        headers["X-Upload-Token"] = token
    return headers


async def achunks(data: bytes, size: int = 7) -> AsyncIterator[bytes]:
    """Yield `data` in small chunks, like a slow client."""
    for i in range(0, len(data), size):
        yield data[i : i + size]


def stored_objects(root: Path) -> list[Path]:
    """Committed objects under a storage root (staging excluded)."""
    return sorted(
        p for p in root.rglob("*") if p.is_file() and ".tmp" not in p.relative_to(root).parts
    )


def staging_files(root: Path) -> list[Path]:
    tmp = root / ".tmp"
    if not tmp.exists():
        return []
    return sorted(p for p in tmp.iterdir() if p.is_file())
