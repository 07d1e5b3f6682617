import os
import sys
import tempfile

import pytest

# Add the project root to sys.path so tests can import main and config
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Keep test runs from writing into the working directory
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "file_drop_test_logs"))

from filedrop.services.storage_manager import StorageManager


@pytest.fixture
def storage_dirs(tmp_path):
    data_dir = tmp_path / "uploads"
    temp_dir = tmp_path / "temp"
    return data_dir, temp_dir


@pytest.fixture
def storage_manager(storage_dirs):
    data_dir, temp_dir = storage_dirs
    data_dir.mkdir(parents=True)
    temp_dir.mkdir(parents=True)
    return StorageManager(data_dir, temp_dir)


def multipart_body(parts, boundary="testboundary"):
    """Build a multipart/form-data body from (name, filename, content_type, data) tuples."""
    body = b""
    for name, filename, content_type, data in parts:
        body += f"--{boundary}\r\n".encode()
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        body += disposition.encode("utf-8") + b"\r\n"
        if content_type:
            body += f"Content-Type: {content_type}\r\n".encode()
        body += b"\r\n" + data + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return body


async def chunked(data: bytes, size: int = 7):
    for i in range(0, len(data), size):
        yield data[i:i + size]
