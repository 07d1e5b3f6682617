"""Configuration settings for the File Drop Server."""
import os

# Network
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Upload limits
MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB
# Allowance for boundaries, part headers and plain form fields sent with the
# file. A request declaring more than MAX_FILE_SIZE plus this is refused early.
MULTIPART_OVERHEAD = 1024 * 1024
CHUNK_SIZE = 64 * 1024  # 64KB

# Storage key constraints
MAX_KEY_LENGTH = 255
MAX_NAME_LENGTH = 100
UPLOAD_FIELD = "file"

# Failure monitoring
FAILURE_THRESHOLD = 5
FAILURE_WINDOW_SECONDS = 60

# Directory paths
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
TEMP_DIR = os.getenv("TEMP_DIR", "./temp")
LOG_DIR = os.getenv("LOG_DIR", "./logs")
