import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.currentsapi.services/v1"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class ReaderConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    language: str = "en"
    page_size: int = 30
    offline_page_size: int = 12

    # Request queue / retry engine
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds
    backoff_multiplier: float = 2.0
    min_request_interval: float = 0.1
    request_timeout: float = 30.0

    # Storage tier
    database_path: str = "news.db"
    database_enabled: bool = True
    search_cache_ttl_minutes: int = 30

    @classmethod
    def from_env(cls) -> "ReaderConfig":
        """
        Build the configuration from environment variables.
        Call load_dotenv() first if values live in a .env file.
        """
        config = cls(
            api_key=os.getenv("NEWS_API_KEY") or None,
            base_url=os.getenv("NEWS_API_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            language=os.getenv("NEWS_LANGUAGE", "en"),
            page_size=_env_int("NEWS_PAGE_SIZE", 30),
            offline_page_size=_env_int("OFFLINE_PAGE_SIZE", 12),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_delay=_env_float("RETRY_DELAY", 1.0),
            backoff_multiplier=_env_float("BACKOFF_MULTIPLIER", 2.0),
            min_request_interval=_env_float("MIN_REQUEST_INTERVAL", 0.1),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
            database_path=os.getenv("DATABASE_PATH", "news.db"),
            database_enabled=_env_bool("ENABLE_DATABASE", True),
            search_cache_ttl_minutes=_env_int("SEARCH_CACHE_TTL_MINUTES", 30),
        )
        if not config.api_key:
            logger.warning("No NEWS_API_KEY found. Article requests will be rejected.")
        return config
