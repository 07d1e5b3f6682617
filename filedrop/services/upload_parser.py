from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, List, Optional, Tuple

import python_multipart
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header

from filedrop.errors import UploadAborted, ValidationError
from logger_config import setup_logger

logger = setup_logger()


@dataclass
class FilePart:
    field_name: str = ""
    filename: Optional[str] = None
    content_type: Optional[str] = None
    headers: List[Tuple[bytes, bytes]] = field(default_factory=list)

    @property
    def is_file(self) -> bool:
        return self.filename is not None


class MultipartUploadReader:
    """Incremental reader for a ``multipart/form-data`` upload body.

    The request stream is fed to the parser one chunk at a time and file data
    is handed to the caller as it arrives, so the body is never buffered in
    full. Only file parts under ``field_name`` are accepted; plain form
    fields are skipped.
    """

    def __init__(self, content_type: Optional[str], stream: AsyncIterator[bytes], field_name: str = "file"):
        ctype, params = parse_options_header(content_type or "")
        if ctype.strip().lower() != b"multipart/form-data":
            raise ValidationError("Expected a multipart/form-data request")
        try:
            boundary = params[b"boundary"]
        except KeyError:
            raise ValidationError("Missing boundary in multipart request")

        self.field_name = field_name
        self._stream = stream.__aiter__()
        self._exhausted = False
        self._events: Deque[Tuple[str, object]] = deque()
        self._current = FilePart()
        self._header_name = b""
        self._header_value = b""
        self._parser = python_multipart.MultipartParser(boundary, {
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
        })

    # Parser callbacks. They only queue events; file data is consumed
    # asynchronously by the caller between stream chunks.

    def _on_part_begin(self):
        self._current = FilePart()

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_name += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._current.headers.append((self._header_name.lower(), self._header_value))
        self._header_name = b""
        self._header_value = b""

    def _on_headers_finished(self):
        part = self._current
        for name, value in part.headers:
            if name == b"content-disposition":
                _, options = parse_options_header(value)
                part.field_name = options.get(b"name", b"").decode("utf-8", "replace")
                if b"filename" in options:
                    part.filename = options[b"filename"].decode("utf-8", "replace")
            elif name == b"content-type":
                part.content_type = value.decode("latin-1")
        self._events.append(("part", part))

    def _on_part_data(self, data: bytes, start: int, end: int):
        if self._current.is_file:
            self._events.append(("data", data[start:end]))

    def _on_part_end(self):
        self._events.append(("end", self._current))

    async def _pump(self) -> bool:
        """Feed the next stream chunk to the parser. Returns False once the body is consumed."""
        if self._exhausted:
            return False
        try:
            chunk = await self._stream.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            try:
                self._parser.finalize()
            except MultipartParseError as e:
                raise ValidationError(f"Malformed multipart body: {e}") from e
            return False

        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise ValidationError(f"Malformed multipart body: {e}") from e
        return True

    def _check_part(self, part: FilePart) -> bool:
        """Return True if ``part`` is the upload we are after."""
        if not part.is_file:
            return False
        if part.field_name != self.field_name:
            raise ValidationError(f"Unexpected file field '{part.field_name}'")
        # Browsers send an empty filename when no file was chosen
        return bool(part.filename)

    async def next_file(self) -> Optional[FilePart]:
        """Advance to the upload's file part, or return None if the body holds none."""
        while True:
            while self._events:
                kind, payload = self._events.popleft()
                if kind == "part" and self._check_part(payload):
                    logger.debug(f"Found file part '{payload.filename}' ({payload.content_type})")
                    return payload
            if not await self._pump():
                return None

    async def iter_data(self) -> AsyncIterator[bytes]:
        """Yield the current file part's bytes until the part ends."""
        while True:
            while self._events:
                kind, payload = self._events.popleft()
                if kind == "data":
                    yield payload
                elif kind == "end":
                    return
            if not await self._pump():
                raise UploadAborted("Request body ended before the file was complete")

    async def finish(self):
        """Drain the rest of the body, rejecting a second file part."""
        while True:
            while self._events:
                kind, payload = self._events.popleft()
                if kind == "part" and self._check_part(payload):
                    raise ValidationError("Only one file may be uploaded per request")
            if not await self._pump():
                return
