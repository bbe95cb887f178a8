"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("PLUGRAG_DATA_DIR", str(BASE_DIR / "data")))
OBJECT_STORE_DIR = DATA_DIR / "objects"
VECTOR_DIR = DATA_DIR / "vectors"

# Database
DB_PATH = DATA_DIR / "plugrag.sqlite"

# OpenAI-compatible API
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")  # global fallback key
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))
EMBEDDING_MAX_INPUT_TOKENS = int(os.getenv("EMBEDDING_MAX_INPUT_TOKENS", "8191"))

# USD per 1K tokens
EMBEDDING_PRICES = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.0001,
}
DEFAULT_EMBEDDING_PRICE = float(os.getenv("DEFAULT_EMBEDDING_PRICE", "0.00002"))

# Chunking (token estimates, 1 token ~ 4 chars)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "700"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "100"))
MAX_CHUNK_TOKENS = int(os.getenv("MAX_CHUNK_TOKENS", "6000"))

# Retrieval and generation
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "4"))
HISTORY_MAX_MESSAGES = int(os.getenv("HISTORY_MAX_MESSAGES", "10"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "12000"))
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.3"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "1000"))

# Job queue and workers
JOB_ATTEMPTS = int(os.getenv("JOB_ATTEMPTS", "3"))
JOB_BACKOFF_SECONDS = float(os.getenv("JOB_BACKOFF_SECONDS", "5"))
JOB_POLL_INTERVAL = float(os.getenv("JOB_POLL_INTERVAL", "1.0"))
JOB_LEASE_SECONDS = float(os.getenv("JOB_LEASE_SECONDS", "300"))
JOB_KEEP_COMPLETED_SECONDS = int(os.getenv("JOB_KEEP_COMPLETED_SECONDS", str(24 * 3600)))
JOB_KEEP_COMPLETED_COUNT = int(os.getenv("JOB_KEEP_COMPLETED_COUNT", "1000"))
JOB_KEEP_FAILED_SECONDS = int(os.getenv("JOB_KEEP_FAILED_SECONDS", str(7 * 24 * 3600)))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "5"))
WORKER_RATE_MAX = int(os.getenv("WORKER_RATE_MAX", "10"))
WORKER_RATE_PERIOD = float(os.getenv("WORKER_RATE_PERIOD", "1.0"))

# Timeouts (seconds)
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "60"))
EXTRACTION_TIMEOUT = float(os.getenv("EXTRACTION_TIMEOUT", "120"))
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "60"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60"))

# Credentials
CREDENTIAL_CACHE_TTL = float(os.getenv("CREDENTIAL_CACHE_TTL", "600"))  # 10 minutes

# Uploads
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(50 * 1024 * 1024)))
LARGE_FILE_WARNING_SIZE = 10 * 1024 * 1024
MIN_FILE_SIZE = 10

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def ensure_dirs() -> None:
    """Create the data directories if they don't exist."""
    for path in (DATA_DIR, OBJECT_STORE_DIR, VECTOR_DIR):
        path.mkdir(parents=True, exist_ok=True)
