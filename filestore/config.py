import os
from dotenv import load_dotenv

load_dotenv()

LOCAL_STORAGE_DIR = os.getenv(
    "LOCAL_STORAGE_DIR",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".filestore", "upload")),
)
URL_STORAGE_PATH = "/" + os.getenv("URL_STORAGE_PATH", "/upload").strip("/")
DB_URL = os.getenv("DB_URL", "sqlite:///./filestore.db")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024)))

# Remote object storage client
REMOTE_CONNECT_TIMEOUT_SECONDS = float(os.getenv("REMOTE_CONNECT_TIMEOUT_SECONDS", "10"))
REMOTE_READ_TIMEOUT_SECONDS = float(os.getenv("REMOTE_READ_TIMEOUT_SECONDS", "60"))
REMOTE_MAX_ATTEMPTS = max(1, int(os.getenv("REMOTE_MAX_ATTEMPTS", "3")))

# Upper bound of keys bound into a single IN (...) clause
DELETE_BATCH_SIZE = 500
COLLISION_SUFFIX_LENGTH = 5
DEFAULT_FILE_NAME = "unnamed"
