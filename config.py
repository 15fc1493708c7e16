"""
Central configuration — reads from .env file.

Every value has a working default so the service starts with an empty .env;
only DASHSCOPE_API_KEY is needed for AI analysis to succeed.  Without it the
store, upload and export endpoints still work and /analyze reports a failure.

Components are constructed from these attributes once, in main.py.  Nothing
else reads config at call time, so tests build their own instances.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
# products file and log file live under DATA_DIR so one volume mount
# (./data:/app/data) keeps both across container restarts.
DATA_DIR: Path      = Path(os.getenv("DATA_DIR", "data"))
PRODUCTS_FILE: Path = Path(os.getenv("PRODUCTS_FILE", str(DATA_DIR / "products-concurrent.json")))

# Uploaded photos.  Served back to the browser under /uploads/.
UPLOADS_DIR: Path = Path(os.getenv("UPLOADS_DIR", "uploads"))

# Optional directory with the browser front-end (batch-system.html etc.)
STATIC_DIR: Path | None = Path(os.environ["STATIC_DIR"]) if os.getenv("STATIC_DIR") else None

MAX_UPLOAD_MB: int = int(os.getenv("MAX_UPLOAD_MB", "50"))

# ── HTTP server ───────────────────────────────────────────────────────────────
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "3443"))

# Leave both blank to serve plain HTTP (e.g. behind a TLS-terminating proxy).
SSL_CERTFILE: str | None = os.getenv("SSL_CERTFILE", "").strip() or None
SSL_KEYFILE: str | None  = os.getenv("SSL_KEYFILE", "").strip() or None

APP_VERSION: str = os.getenv("APP_VERSION", "6.1")

# ── AI analysis (Alibaba DashScope / Qwen) ────────────────────────────────────
DASHSCOPE_API_KEY: str | None = os.getenv("DASHSCOPE_API_KEY") or None
QWEN_API_URL: str = os.getenv(
    "QWEN_API_URL",
    "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation",
)

# Tried in this order; the first model that returns usable content wins.
DEFAULT_QWEN_MODELS = [
    "qwen-vl-plus",
    "qwen-vl-max",
    "qwen-vl-v1",
    "qwen-plus",
    "qwen-turbo",
    "qwen-max",
]
QWEN_MODELS: list[str] = [
    m.strip()
    for m in os.getenv("QWEN_MODELS", ",".join(DEFAULT_QWEN_MODELS)).split(",")
    if m.strip()
]

ANALYSIS_TIMEOUT_SECS: float = float(os.getenv("ANALYSIS_TIMEOUT_SECS", "30"))

# ── Concurrency / throttling ──────────────────────────────────────────────────
# How long a request waits for the products file before giving up.
LOCK_TIMEOUT_SECS: float = float(os.getenv("LOCK_TIMEOUT_SECS", "5"))

# Sliding window, per client address.
RATE_MAX_REQUESTS: int  = int(os.getenv("RATE_MAX_REQUESTS", "20"))
RATE_WINDOW_SECS: float = float(os.getenv("RATE_WINDOW_SECS", "60"))

# Enable only behind a reverse proxy that overwrites X-Real-IP with the real
# client address.
TRUST_PROXY_HEADERS: bool = os.getenv("TRUST_PROXY_HEADERS", "false").lower() in ("1", "true", "yes")
