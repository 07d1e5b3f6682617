import mimetypes
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import urljoin, urlparse

import aiofiles
import httpx

import config
from filedrop.errors import SizeLimitExceeded, StorageIOError, UploadAborted, ValidationError
from filedrop.models import UploadResult
from filedrop.utils import format_bytes
from logger_config import setup_logger

logger = setup_logger()


def _quote_param(value: str) -> str:
    # Same escaping browsers apply to multipart filenames
    return value.replace("\\", "\\\\").replace('"', "%22").replace("\r", "%0D").replace("\n", "%0A")


class MultipartFileBody:
    """Streams one file as a ``multipart/form-data`` body without loading it.

    File reads go through aiofiles so a large upload does not block the
    event loop.
    """

    def __init__(self, path: Path, field_name: str = config.UPLOAD_FIELD,
                 content_type: Optional[str] = None, chunk_size: int = config.CHUNK_SIZE):
        self.path = Path(path)
        self.boundary = uuid.uuid4().hex
        self.chunk_size = chunk_size
        content_type = content_type or mimetypes.guess_type(self.path.name)[0] or "application/octet-stream"
        self._head = (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{_quote_param(field_name)}"; '
            f'filename="{_quote_param(self.path.name)}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")
        self._tail = f"\r\n--{self.boundary}--\r\n".encode("ascii")

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def content_length(self, file_size: int) -> int:
        return len(self._head) + file_size + len(self._tail)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self._head
        async with aiofiles.open(self.path, 'rb') as f:
            while chunk := await f.read(self.chunk_size):
                yield chunk
        yield self._tail


class UploadClient:
    def __init__(self, base_url: str, max_size: int = config.MAX_FILE_SIZE,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = self.validate_url(base_url)
        self.max_size = max_size
        self.timeout = timeout
        self._transport = transport

    def validate_url(self, url: str) -> str:
        """Validate the server base URL."""
        if not url:
            raise ValueError("Server URL is required")

        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Invalid server URL: {url}")

        return url.rstrip("/") + "/"

    def check_size(self, path: Path) -> int:
        """Advisory size check done before any bytes are sent."""
        size = Path(path).stat().st_size
        if size > self.max_size:
            logger.info(f"{Path(path).name} is too large ({format_bytes(size)}), max {format_bytes(self.max_size)}")
            raise SizeLimitExceeded(self.max_size)
        return size

    def absolute_url(self, download_url: str) -> str:
        """Turn the server-relative download path into a full link."""
        return urljoin(self.base_url, download_url)

    async def upload(self, path: Path) -> UploadResult:
        """Upload a local file and return the server's descriptor."""
        path = Path(path)
        size = self.check_size(path)
        body = MultipartFileBody(path)
        headers = {
            "Content-Type": body.content_type,
            "Content-Length": str(body.content_length(size)),
        }
        logger.info(f"Uploading {path.name} ({format_bytes(size)})")

        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self._transport) as client:
                response = await client.post("upload", content=body, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"Upload request error for {path.name}: {str(e)}")
            raise UploadAborted(f"Error sending upload: {str(e)}") from e

        if response.status_code == 413:
            raise SizeLimitExceeded(self.max_size)
        if response.status_code == 400:
            raise ValidationError(self._error_detail(response))
        if response.status_code >= 500:
            raise StorageIOError(self._error_detail(response))
        response.raise_for_status()

        result = UploadResult.model_validate(response.json())
        logger.info(f"Uploaded {result.filename}: {self.absolute_url(result.download_url)}")
        return result

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            return response.json().get("detail", response.text)
        except ValueError:
            return response.text
