import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./invoices.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
REPORTING_CURRENCY = os.getenv("REPORTING_CURRENCY", "USD")
FX_PROVIDER = os.getenv("FX_PROVIDER", "frankfurter").strip().lower()
FX_BASE_URL = os.getenv("FX_BASE_URL", "https://api.frankfurter.dev/v1")
FX_CACHE_TTL_SECONDS = _env_int("FX_CACHE_TTL_SECONDS", 60 * 60)
FX_TIMEOUT_SECONDS = _env_int("FX_TIMEOUT_SECONDS", 10)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
