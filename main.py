import mimetypes
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from starlette.requests import ClientDisconnect

import config
from filedrop.errors import (
    InvalidStorageKey,
    NotFound,
    SizeLimitExceeded,
    StorageIOError,
    UploadAborted,
    ValidationError,
)
from filedrop.models import StoredFile, UploadRequest, UploadResult
from filedrop.services.storage_manager import StorageManager
from filedrop.services.upload_parser import MultipartUploadReader
from filedrop.utils import format_bytes
from logger_config import setup_logger
from monitor import ABORTED, INVALID, STORAGE_FAILURE, STORED, TOO_LARGE, UploadMonitor

# Data storage path
UPLOAD_DIR = Path(config.UPLOAD_DIR)
TEMP_DIR = Path(config.TEMP_DIR)
STATIC_DIR = Path(__file__).parent / "filedrop" / "static"

# Logger setup
logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.storage_manager = StorageManager(UPLOAD_DIR, TEMP_DIR)
    await app.state.storage_manager.initialize()
    app.state.monitor = UploadMonitor(config.FAILURE_THRESHOLD, config.FAILURE_WINDOW_SECONDS)
    yield


app = FastAPI(title="File Drop Server", lifespan=lifespan)


def size_limit_message() -> str:
    return f"File too large. Maximum size is {format_bytes(config.MAX_FILE_SIZE)} ({config.MAX_FILE_SIZE} bytes)"


def get_declared_size(request: Request) -> Optional[int]:
    """Return the Content-Length header as an int, or None when absent.

    Raises ValueError for a malformed header.
    """
    content_length = request.headers.get("content-length")
    if content_length is None:
        return None
    size = int(content_length)
    if size < 0:
        raise ValueError(f"Negative Content-Length: {size}")
    return size


@app.get("/")
async def index():
    """Upload entry page."""
    return FileResponse(STATIC_DIR / "index.html", media_type="text/html")


@app.get("/health")
async def health(request: Request):
    return {"status": "ok", "uploads": request.app.state.monitor.stats}


def reject(monitor: UploadMonitor, outcome: str, status_code: int, detail: str) -> HTTPException:
    monitor.record(outcome)
    return HTTPException(status_code=status_code, detail=detail)


@app.post("/upload", response_model=UploadResult)
async def upload_file(request: Request):
    """Store the single file sent in the ``file`` multipart field.

    The body is parsed as it streams in, so an oversized upload is cut off
    as soon as it crosses the size ceiling rather than after full receipt.
    """
    storage_manager: StorageManager = request.app.state.storage_manager
    monitor: UploadMonitor = request.app.state.monitor

    try:
        declared_size = get_declared_size(request)
    except ValueError:
        raise reject(monitor, INVALID, 400, "Invalid Content-Length header")
    logger.info(f"Receiving upload request, Content-Length: {declared_size}")

    # The declared size is advisory but lets us refuse obvious oversize early
    if declared_size is not None and declared_size > config.MAX_FILE_SIZE + config.MULTIPART_OVERHEAD:
        logger.info(f"Rejected upload declaring {declared_size} bytes")
        raise reject(monitor, TOO_LARGE, 413, size_limit_message())

    storage_key = None
    try:
        reader = MultipartUploadReader(
            request.headers.get("content-type"),
            request.stream(),
            field_name=config.UPLOAD_FIELD,
        )
        part = await reader.next_file()
        if part is None:
            raise reject(monitor, INVALID, 400, "No file uploaded")

        upload = UploadRequest(
            original_name=part.filename,
            content_type=part.content_type,
            declared_size=declared_size,
        )
        storage_key = storage_manager.generate_storage_key(upload.original_name)
        logger.debug(f"Storing '{upload.original_name}' ({upload.content_type}) as {storage_key}")

        size = await storage_manager.persist(reader.iter_data(), storage_key, config.MAX_FILE_SIZE)
        try:
            await reader.finish()
        except (ValidationError, UploadAborted, ClientDisconnect):
            await storage_manager.discard(storage_key)
            raise

    except ValidationError as e:
        logger.info(f"Rejected upload: {e}")
        raise reject(monitor, INVALID, 400, str(e))
    except SizeLimitExceeded:
        logger.info(f"Rejected upload over {config.MAX_FILE_SIZE} bytes")
        raise reject(monitor, TOO_LARGE, 413, size_limit_message())
    except StorageIOError as e:
        logger.error(f"Error storing upload {storage_key}: {e}", exc_info=True)
        raise reject(monitor, STORAGE_FAILURE, 500, "Upload failed")
    except (UploadAborted, ClientDisconnect):
        logger.warning(f"Client disconnected during upload {storage_key}, partial data discarded")
        raise reject(monitor, ABORTED, 400, "Upload aborted")

    monitor.record(STORED)
    stored = StoredFile(
        storage_key=storage_key,
        original_name=upload.original_name,
        size_bytes=size,
        created_at=datetime.now(timezone.utc),
    )
    logger.info(
        f"Stored upload {storage_key}: {format_bytes(size)} of {upload.content_type or 'unknown type'}, "
        f"request declared {upload.declared_size if upload.declared_size is not None else 'no'} bytes"
    )
    return UploadResult.from_stored(stored)


@app.get("/downloads/{storage_key}")
async def download_file(storage_key: str, request: Request):
    """Stream a stored file back to the client."""
    storage_manager: StorageManager = request.app.state.storage_manager
    logger.info(f"Receiving download request for {storage_key}")

    try:
        stored = await storage_manager.resolve(storage_key)
    except InvalidStorageKey:
        raise HTTPException(status_code=400, detail="Invalid storage key")
    except NotFound:
        raise HTTPException(status_code=404, detail="File not found")
    except StorageIOError as e:
        logger.error(f"Error resolving {storage_key}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Download failed")

    content_type, _ = mimetypes.guess_type(stored.original_name)
    headers = {
        "content-length": str(stored.size_bytes),
        "content-disposition": f'attachment; filename="{stored.original_name}"',
    }

    return StreamingResponse(
        storage_manager.iter_bytes(storage_key),
        media_type=content_type or "application/octet-stream",
        headers=headers,
    )


if __name__ == "__main__":
    logger.info("Starting File Drop Server...")
    logger.info(f"Upload directory: {UPLOAD_DIR}")
    logger.info(f"Temporary directory: {TEMP_DIR}")
    logger.info(f"Maximum upload size: {format_bytes(config.MAX_FILE_SIZE)}")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
