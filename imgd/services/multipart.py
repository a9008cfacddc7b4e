"""
Incremental multipart/form-data reader.

Feeds raw body chunks into python-multipart's callback parser and yields
part events as they complete, so a part's bytes can be hashed and staged
without ever holding the whole body in memory. Mirrors the event-queue
approach of Starlette's own form parser, minus the spooling to
SpooledTemporaryFile.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Union

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect

from imgd.core.errors import BadRequestError, FileTooLargeError

MULTIPART_FORM_DATA = b"multipart/form-data"


@dataclass(frozen=True)
class PartStart:
    """Headers of a part, emitted once they are complete."""

    name: str | None
    filename: str | None
    content_type: str | None = None


@dataclass(frozen=True)
class PartData:
    data: bytes


@dataclass(frozen=True)
class PartEnd:
    pass


MultipartEvent = Union[PartStart, PartData, PartEnd]


def _decode(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def parse_boundary(content_type: str | None) -> bytes:
    """
    Extract the boundary from a multipart/form-data Content-Type.

    Raises:
        BadRequestError: If the body is not multipart or has no boundary
    """
    if not content_type:
        raise BadRequestError("content_type")
    ctype, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if ctype.lower() != MULTIPART_FORM_DATA or not boundary:
        raise BadRequestError("content_type")
    return boundary


class _EventCollector:
    """python-multipart callbacks that buffer events for the async consumer."""

    def __init__(self) -> None:
        self.events: list[MultipartEvent] = []
        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }

    def on_part_begin(self) -> None:
        self._headers = {}

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if end > start:
            self.events.append(PartData(bytes(data[start:end])))

    def on_part_end(self) -> None:
        self.events.append(PartEnd())

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        disposition = self._headers.get(b"content-disposition")
        name = filename = None
        if disposition is not None:
            _, options = parse_options_header(disposition)
            if b"name" in options:
                name = _decode(options[b"name"])
            if b"filename" in options:
                filename = _decode(options[b"filename"])

        content_type = self._headers.get(b"content-type")
        self.events.append(
            PartStart(
                name=name,
                filename=filename,
                content_type=_decode(content_type) if content_type is not None else None,
            )
        )


async def iter_multipart(
    chunks: AsyncIterable[bytes],
    content_type: str | None,
    *,
    max_body_bytes: int,
) -> AsyncIterator[MultipartEvent]:
    """
    Yield part events from a streaming multipart body.

    Raises:
        BadRequestError: On malformed framing, bad Content-Type or a client
            disconnect
        FileTooLargeError: If the raw body exceeds `max_body_bytes`
    """
    boundary = parse_boundary(content_type)
    collector = _EventCollector()
    parser = MultipartParser(boundary, collector.callbacks())  # type: ignore[arg-type]

    received = 0
    try:
        async for chunk in chunks:
            if not chunk:
                continue
            received += len(chunk)
            if received > max_body_bytes:
                raise FileTooLargeError("body_limit")
            try:
                parser.write(chunk)
            except MultipartParseError as exc:
                raise BadRequestError("multipart_read") from exc

            events, collector.events = collector.events, []
            for event in events:
                yield event
    except ClientDisconnect as exc:
        raise BadRequestError("multipart_read") from exc

    try:
        parser.finalize()
    except MultipartParseError as exc:
        raise BadRequestError("multipart_read") from exc
    for event in collector.events:
        yield event
