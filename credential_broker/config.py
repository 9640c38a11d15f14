"""
Configuration management for the Credential Broker.
Loads from environment variables with sensible defaults.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "gpt-4o-realtime-preview-2024-12-17"
DEFAULT_VOICE = "verse"
API_KEY_ENV = "OPENAI_API_KEY"


def _load_env_files() -> None:
    """Load .env_local / .env.local without overriding the process environment."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _parse_float_env(key: str, default: float) -> float:
    value = os.environ.get(key, "").split("#")[0].strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class BrokerConfig:
    """Credential Broker configuration."""

    # Long-lived provider secret; absence is reported per request, not at startup
    api_key: Optional[str]
    provider_base_url: str = "https://api.openai.com/v1"
    default_model: str = DEFAULT_MODEL
    default_voice: str = DEFAULT_VOICE
    provider_timeout_seconds: float = 10.0

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def __repr__(self) -> str:
        return (
            f"BrokerConfig(api_key={'<set>' if self.api_key else None}, "
            f"provider_base_url={self.provider_base_url!r}, default_model={self.default_model!r})"
        )

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """Load configuration from environment variables."""
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            api_key=os.environ.get(API_KEY_ENV) or None,
            provider_base_url=os.environ.get("PROVIDER_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            default_model=os.environ.get("REALTIME_MODEL", DEFAULT_MODEL),
            default_voice=os.environ.get("DEFAULT_VOICE", DEFAULT_VOICE),
            provider_timeout_seconds=_parse_float_env("PROVIDER_TIMEOUT_SECONDS", 10.0),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(_parse_float_env("PORT", 3001)),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


def get_config() -> BrokerConfig:
    """Get or create global config instance (read once at startup)."""
    global _config
    if _config is None:
        _load_env_files()
        _config = BrokerConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[BrokerConfig] = None
