import os
from dataclasses import dataclass, replace
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from polygon_proxy.core.errors import ConfigError

load_dotenv()

# ===================== exchange ==============================================
MARKET_TZ = ZoneInfo("America/New_York")

# ===================== upstream endpoints ====================================
POLYGON_WS_URL = "wss://socket.polygon.io/stocks"
RELAY_PATH = "/ws"

# ===================== limits ================================================
GAINERS_MAX_LIMIT = 200
GAINERS_DEFAULT_LIMIT = 20
REFERENCE_TTL = 24 * 3600
ENRICH_CONCURRENCY = 6


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read from the environment (and .env)"""

    polygon_api_key: str
    host: str = "0.0.0.0"
    port: int = 8080
    ws_port: int = 8081
    polygon_ws_url: str = POLYGON_WS_URL
    reconnect_delay: float = 2.0
    request_timeout: float = 12.0
    gainers_max_limit: int = GAINERS_MAX_LIMIT
    cache_capacity: int = 5000
    cache_ttl: float = 300.0
    reference_ttl: float = REFERENCE_TTL
    enrich_concurrency: int = ENRICH_CONCURRENCY
    calendar_max_back: int = 5
    metrics_port: int = 0
    log_level: str = "INFO"
    log_to_file: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("POLYGON_API_KEY")
        if not api_key:
            raise ConfigError("POLYGON_API_KEY is not set")

        return cls(
            polygon_api_key=api_key,
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            ws_port=_env_int("WS_PORT", 8081),
            polygon_ws_url=os.getenv("POLYGON_WS_URL", POLYGON_WS_URL),
            reconnect_delay=_env_float("RECONNECT_DELAY", 2.0),
            request_timeout=_env_float("REQUEST_TIMEOUT", 12.0),
            gainers_max_limit=_env_int("GAINERS_MAX_LIMIT", GAINERS_MAX_LIMIT),
            cache_capacity=_env_int("CACHE_CAPACITY", 5000),
            cache_ttl=_env_float("CACHE_TTL", 300.0),
            reference_ttl=_env_float("REFERENCE_TTL", REFERENCE_TTL),
            enrich_concurrency=_env_int("ENRICH_CONCURRENCY", ENRICH_CONCURRENCY),
            calendar_max_back=_env_int("CALENDAR_MAX_BACK", 5),
            metrics_port=_env_int("METRICS_PORT", 0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_to_file=_env_bool("LOG_TO_FILE", False),
        )

    def override(self, **changes) -> "Settings":
        """Copy with non-None overrides applied (used for CLI flags)"""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
