"""
Service configuration.

Values come from environment variables (optionally loaded from a .env file).
Settings are read once at startup and passed into the components that need them.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def _clean_env(value: Optional[str]) -> str:
    """Trim whitespace and surrounding quotes from env values."""
    if value is None:
        return ''
    value = value.strip()
    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
        value = value[1:-1]
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name))
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _clean_env(os.getenv(name))
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _clean_env(os.getenv(name)).lower()
    if not raw:
        return default
    return raw in ('1', 'true', 'yes', 'on')


def parse_hosts(raw: str) -> FrozenSet[str]:
    """Split a comma-separated host list into a set of lower-cased names."""
    return frozenset(h.strip().lower() for h in raw.split(',') if h.strip())


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read-only after startup."""

    host: str = '0.0.0.0'
    port: int = 3000
    allowed_hosts: FrozenSet[str] = field(default_factory=frozenset)
    max_image_bytes: int = 10 * 1024 * 1024  # 10MB
    fetch_timeout: float = 5.0
    rate_limit_max: int = 60
    rate_limit_window: float = 60.0
    max_body_bytes: int = 1024 * 1024  # 1MB
    logo_padding: int = 20
    shadow_offset: int = 10
    trust_proxy: bool = False
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'Settings':
        """Build settings from the environment, loading .env first if present."""
        load_dotenv(env_file)
        defaults = cls()
        return cls(
            host=_clean_env(os.getenv('HOST')) or defaults.host,
            port=_env_int('PORT', defaults.port),
            allowed_hosts=parse_hosts(_clean_env(os.getenv('ALLOWED_HOSTS'))),
            max_image_bytes=_env_int('MAX_IMAGE_BYTES', defaults.max_image_bytes),
            fetch_timeout=_env_float('FETCH_TIMEOUT', defaults.fetch_timeout),
            rate_limit_max=_env_int('RATE_LIMIT_MAX', defaults.rate_limit_max),
            rate_limit_window=_env_float('RATE_LIMIT_WINDOW', defaults.rate_limit_window),
            max_body_bytes=_env_int('MAX_BODY_BYTES', defaults.max_body_bytes),
            logo_padding=_env_int('LOGO_PADDING', defaults.logo_padding),
            shadow_offset=_env_int('SHADOW_OFFSET', defaults.shadow_offset),
            trust_proxy=_env_bool('TRUST_PROXY', defaults.trust_proxy),
            log_level=(_clean_env(os.getenv('LOG_LEVEL')) or defaults.log_level).upper(),
        )


def configure_logging(level: str = 'INFO') -> None:
    """Install the root log handler used by the service."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
