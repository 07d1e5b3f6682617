import asyncio
import logging
import os
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

import config
from conftest import multipart_body
from filedrop.errors import StorageIOError
from filedrop.services.storage_manager import StorageManager
from logger_config import LOGGER_NAME
from main import app
from monitor import UploadMonitor

# Create a test client
client = TestClient(app)


@pytest.fixture(autouse=True)
def app_state(storage_manager):
    """Attach a fresh storage manager and monitor to the app for every test."""
    app.state.storage_manager = storage_manager
    app.state.monitor = UploadMonitor(failure_threshold=3, window_seconds=60)
    yield storage_manager


def generate_random_content(size_bytes):
    return os.urandom(size_bytes)


def stored_files(storage_manager):
    return sorted(p.name for p in storage_manager.data_dir.iterdir())


def temp_files(storage_manager):
    return sorted(p.name for p in storage_manager.temp_dir.iterdir())


def test_upload_and_download_notes():
    """Upload a 10 byte text file and fetch it back through its download URL."""
    content = b"0123456789"
    response = client.post("/upload", files={"file": ("notes.txt", content, "text/plain")})
    assert response.status_code == 200

    body = response.json()
    assert body["filename"] == "notes.txt"
    assert body["size"] == 10
    assert body["downloadUrl"].startswith("/downloads/")
    assert body["downloadUrl"].endswith("-notes.txt")

    response = client.get(body["downloadUrl"])
    assert response.status_code == 200
    assert response.content == content
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["content-length"] == "10"
    assert 'filename="notes.txt"' in response.headers["content-disposition"]


def test_round_trip_binary(app_state):
    content = generate_random_content(300 * 1024)
    response = client.post("/upload", files={"file": ("blob.bin", content, "application/octet-stream")})
    assert response.status_code == 200
    assert response.json()["size"] == len(content)

    response = client.get(response.json()["downloadUrl"])
    assert response.status_code == 200
    assert response.content == content
    assert len(stored_files(app_state)) == 1
    assert temp_files(app_state) == []


def test_repeated_downloads_are_identical():
    content = generate_random_content(4096)
    url = client.post("/upload", files={"file": ("data.bin", content)}).json()["downloadUrl"]

    downloads = [client.get(url).content for _ in range(3)]
    assert downloads == [content, content, content]


def test_storage_key_layout(app_state):
    response = client.post("/upload", files={"file": ("../../etc/passwd", b"root")})
    assert response.status_code == 200
    assert response.json()["filename"] == "../../etc/passwd"

    key = response.json()["downloadUrl"].rsplit("/", 1)[1]
    assert stored_files(app_state) == [key]
    name, created_at = StorageManager.parse_key(key)
    assert name == "passwd"
    assert created_at is not None


def test_any_file_type_accepted():
    for filename, content_type in [("script.exe", "application/x-msdownload"),
                                   ("noextension", None),
                                   ("photo.JPG", "image/jpeg")]:
        file_tuple = (filename, b"payload") if content_type is None else (filename, b"payload", content_type)
        response = client.post("/upload", files={"file": file_tuple})
        assert response.status_code == 200


def test_empty_file_upload():
    response = client.post("/upload", files={"file": ("empty.txt", b"")})
    assert response.status_code == 200
    assert response.json()["size"] == 0
    assert client.get(response.json()["downloadUrl"]).content == b""


def test_no_file_uploaded(app_state):
    response = client.post("/upload", files={"note": (None, "just a text field")})
    assert response.status_code == 400
    assert "No file uploaded" in response.text
    assert stored_files(app_state) == []


def test_non_multipart_request_rejected():
    response = client.post("/upload", content=b"raw body", headers={"Content-Type": "application/octet-stream"})
    assert response.status_code == 400
    assert "multipart/form-data" in response.text


def test_unexpected_file_field_rejected(app_state):
    response = client.post("/upload", files={"document": ("a.txt", b"a")})
    assert response.status_code == 400
    assert "Unexpected file field" in response.text
    assert stored_files(app_state) == []


def test_second_file_part_rolls_back(app_state):
    response = client.post("/upload", files=[
        ("file", ("a.txt", b"first")),
        ("file", ("b.txt", b"second")),
    ])
    assert response.status_code == 400
    assert "Only one file" in response.text
    assert stored_files(app_state) == []


def test_oversized_upload_rejected_while_streaming(app_state, monkeypatch):
    """Cumulative size is checked during transfer, nothing lands in storage."""
    monkeypatch.setattr(config, "MAX_FILE_SIZE", 1024)
    # Large allowance so the Content-Length shortcut does not trigger
    monkeypatch.setattr(config, "MULTIPART_OVERHEAD", 10 * 1024 * 1024)

    response = client.post("/upload", files={"file": ("big.bin", generate_random_content(4096))})
    assert response.status_code == 413
    assert "too large" in response.text.lower()
    assert "1024 bytes" in response.text
    assert stored_files(app_state) == []
    assert temp_files(app_state) == []


def test_upload_at_exact_limit_accepted(monkeypatch):
    monkeypatch.setattr(config, "MAX_FILE_SIZE", 1024)
    response = client.post("/upload", files={"file": ("exact.bin", generate_random_content(1024))})
    assert response.status_code == 200
    assert response.json()["size"] == 1024


def test_declared_size_over_limit_rejected_early(app_state):
    """A 2GB Content-Length is refused before the body is read."""
    headers = {
        "Content-Type": "multipart/form-data; boundary=abc",
        "Content-Length": str(2 * 1024 ** 3),
    }
    response = client.post("/upload", content=b"small content", headers=headers)
    assert response.status_code == 413
    assert "too large" in response.text.lower()
    assert stored_files(app_state) == []


def test_storage_failure_returns_generic_error(app_state):
    with patch.object(StorageManager, "persist", side_effect=StorageIOError("No space left on /srv/uploads/x")):
        response = client.post("/upload", files={"file": ("notes.txt", b"0123456789")})

    assert response.status_code == 500
    assert response.json()["detail"] == "Upload failed"
    assert "/srv/uploads" not in response.text
    assert app.state.monitor.stats["totals"]["storage_failure"] == 1

    # A failed upload does not affect subsequent requests
    response = client.post("/upload", files={"file": ("notes.txt", b"0123456789")})
    assert response.status_code == 200


def test_download_unknown_key():
    response = client.get("/downloads/does-not-exist")
    assert response.status_code == 404


def test_download_never_issued_uuid_key():
    response = client.get("/downloads/00000000-0000-4000-8000-000000000000-1700000000000-notes.txt")
    assert response.status_code == 404


def test_download_traversal_attempts(app_state):
    secret = app_state.data_dir.parent / "secret.txt"
    secret.write_bytes(b"top secret")

    for path in ["/downloads/..%2Fsecret.txt",
                 "/downloads/..secret.txt",
                 "/downloads/.hidden",
                 "/downloads/name%5C..%5Csecret.txt"]:
        response = client.get(path)
        assert response.status_code in (400, 404), path
        assert b"top secret" not in response.content


def test_download_invalid_characters():
    response = client.get("/downloads/bad@key")
    assert response.status_code == 400
    assert "Invalid storage key" in response.text


def test_index_page():
    response = client.get("/")
    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert 'name="file"' in response.text


def test_health_reports_upload_stats():
    client.post("/upload", files={"file": ("a.txt", b"a")})
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["uploads"]["totals"]["stored"] == 1


@pytest.mark.asyncio
async def test_concurrent_same_name_uploads_get_unique_keys(app_state):
    transport = httpx.ASGITransport(app=app)
    contents = [generate_random_content(2048) for _ in range(10)]

    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        responses = await asyncio.gather(*[
            ac.post("/upload", files={"file": ("same.txt", content)}) for content in contents
        ])
        assert all(r.status_code == 200 for r in responses)

        urls = [r.json()["downloadUrl"] for r in responses]
        assert len(set(urls)) == len(urls)

        for url, content in zip(urls, contents):
            download = await ac.get(url)
            assert download.content == content

    assert len(stored_files(app_state)) == 10


def test_media_type_matched_case_insensitively(app_state):
    body = multipart_body([("file", "notes.txt", "text/plain", b"0123456789")])
    response = client.post("/upload", content=body,
                           headers={"Content-Type": "Multipart/Form-Data; boundary=testboundary"})
    assert response.status_code == 200
    assert response.json()["size"] == 10
    assert len(stored_files(app_state)) == 1


def test_large_text_fields_alongside_file_accepted(monkeypatch):
    """Form fields sent with the file count against the overhead allowance, not the file limit."""
    monkeypatch.setattr(config, "MAX_FILE_SIZE", 1024)
    response = client.post("/upload",
                           data={"comment": "x" * 100 * 1024},
                           files={"file": ("exact.bin", generate_random_content(1024))})
    assert response.status_code == 200
    assert response.json()["size"] == 1024


def test_success_log_reports_part_type_and_declared_size(caplog):
    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(caplog.handler)
    try:
        response = client.post("/upload", files={"file": ("notes.txt", b"0123456789", "text/plain")})
    finally:
        logger.removeHandler(caplog.handler)

    assert response.status_code == 200
    declared = response.request.headers["content-length"]
    messages = [record.getMessage() for record in caplog.records if record.getMessage().startswith("Stored upload")]
    assert len(messages) == 1
    assert "of text/plain" in messages[0]
    assert f"request declared {declared} bytes" in messages[0]


async def call_upload(body_chunks, content_length):
    """Drive the app directly, ending the request with ``http.disconnect``."""
    messages = [{"type": "http.request", "body": chunk, "more_body": True} for chunk in body_chunks]
    sent = []

    async def receive():
        if messages:
            return messages.pop(0)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/upload",
        "raw_path": b"/upload",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"multipart/form-data; boundary=testboundary"),
            (b"content-length", str(content_length).encode()),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    await app(scope, receive, send)
    return sent


@pytest.mark.asyncio
async def test_disconnect_mid_file_leaves_nothing(app_state):
    body = multipart_body([("file", "dropped.bin", "application/octet-stream", b"x" * 4096)])
    cut = body.index(b"x" * 2048)

    sent = await call_upload([body[:cut], body[cut:cut + 1024]], len(body))

    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 400
    assert stored_files(app_state) == []
    assert temp_files(app_state) == []
    assert app.state.monitor.stats["totals"]["aborted"] == 1
    assert app.state.monitor.stats["totals"]["stored"] == 0


@pytest.mark.asyncio
async def test_disconnect_after_file_part_discards_stored_file(app_state):
    body = multipart_body([
        ("file", "notes.txt", "text/plain", b"0123456789"),
        ("comment", None, None, b"sent after the file"),
    ])
    # The file part and its closing boundary arrive, the trailing field does not
    cut = body.index(b'name="comment"')

    sent = await call_upload([body[:cut]], len(body))

    assert sent[0]["status"] == 400
    assert stored_files(app_state) == []
    assert temp_files(app_state) == []
    assert app.state.monitor.stats["totals"]["aborted"] == 1
