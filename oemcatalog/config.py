"""
OEM catalog ingest – centralized configuration.
Sitemap root, store location, concurrency, politeness interval, retries, proxy.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Paths
PACKAGE_DIR = Path(__file__).resolve().parent
BASE_DIR = PACKAGE_DIR.parent
load_dotenv(BASE_DIR / ".env")
load_dotenv(PACKAGE_DIR / ".env")


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _env_list(key: str, default: str = "") -> tuple[str, ...]:
    return tuple(s.strip() for s in _env(key, default).split(",") if s.strip())


DB_PATH = Path(_env("OEMCATALOG_DB_PATH", str(BASE_DIR / "oem_catalog.db")))
SQLITE_TIMEOUT_SEC = float(_env("OEMCATALOG_SQLITE_TIMEOUT", "30"))

# Origin
BASE_URL = _env("OEMCATALOG_BASE_URL", "https://www.partzilla.com")
SITEMAP_URL = _env("OEMCATALOG_SITEMAP_URL", f"{BASE_URL}/sitemap/i/catalog/0.xml")
# Leaf URLs must contain every one of these substrings (empty = keep all)
URL_INCLUDE = _env_list("OEMCATALOG_URL_INCLUDE", "/catalog/,/snowmobile")

# Concurrency / politeness (one request start per interval across all workers)
MAX_WORKERS = int(_env("OEMCATALOG_MAX_WORKERS", "4"))
REQUEST_INTERVAL_SEC = float(_env("OEMCATALOG_REQUEST_INTERVAL", "1.0"))

# Timeouts (ms)
FETCH_TIMEOUT_MS = int(_env("OEMCATALOG_FETCH_TIMEOUT", "30000"))

# Retries
MAX_RETRIES = int(_env("OEMCATALOG_MAX_RETRIES", "3"))
RETRY_BACKOFF_MS = int(_env("OEMCATALOG_RETRY_BACKOFF_MS", "1500"))
# Treat 404 (and any other non-2xx) as retryable; off = only 403/429/5xx
RETRY_ALL_ERRORS = _env("OEMCATALOG_RETRY_404", "0").lower() in ("1", "true", "yes")
BODY_SNIPPET_CHARS = 500

USER_AGENT = _env(
    "OEMCATALOG_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
)
DEFAULT_HEADERS = {
    "user-agent": USER_AGENT,
    "accept": "application/xml,text/xml,text/html,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "pragma": "no-cache",
    "cache-control": "no-cache",
    "referer": f"{BASE_URL}/",
}

# Proxy (optional)
PROXY_SERVER = _env("OEMCATALOG_PROXY_SERVER", _env("PROXY_SERVER", ""))
PROXY_USER = _env("OEMCATALOG_PROXY_USER", _env("PROXY_USER", ""))
PROXY_PASS = _env("OEMCATALOG_PROXY_PASS", _env("PROXY_PASS", ""))


def get_proxy_settings() -> dict | None:
    """Playwright proxy settings, or None when no proxy server is configured."""
    if not PROXY_SERVER:
        return None
    server = PROXY_SERVER if "://" in PROXY_SERVER else f"http://{PROXY_SERVER}"
    settings = {"server": server}
    if PROXY_USER:
        settings["username"] = PROXY_USER
        settings["password"] = PROXY_PASS
    return settings
