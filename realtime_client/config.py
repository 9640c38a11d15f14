"""
Realtime Client configuration.

Loads backend, provider, and media configuration from environment variables.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "gpt-4o-realtime-preview-2024-12-17"
DEFAULT_ICE_SERVER = "stun:stun.l.google.com:19302"


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "60  # comment" -> 60
    - "60" -> 60
    - None -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]

    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_list_env(key: str, default: List[str]) -> List[str]:
    value = os.environ.get(key)
    if not value:
        return list(default)
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or list(default)


@dataclass
class ClientConfig:
    """Realtime Client configuration."""

    # Credential Broker backend
    server_base_url: str = "http://localhost:3001"

    # Realtime provider
    model: str = DEFAULT_MODEL
    provider_realtime_url: str = "https://api.openai.com/v1/realtime"
    ice_servers: List[str] = field(default_factory=lambda: [DEFAULT_ICE_SERVER])

    # Media devices (ffmpeg device names / formats, e.g. "default" + "pulse")
    capture_device: str = "default"
    capture_format: Optional[str] = "pulse"
    playback_device: Optional[str] = None  # None discards remote audio
    playback_format: Optional[str] = None

    # Audio level sampling cadence (frames per second)
    level_frame_rate: int = 60

    http_timeout_seconds: int = 10

    def __post_init__(self):
        if not self.ice_servers:
            raise ValueError("at least one ICE server is required")
        if self.level_frame_rate <= 0:
            raise ValueError("level_frame_rate must be positive")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables."""
        return cls(
            server_base_url=os.environ.get("SERVER_BASE_URL", "http://localhost:3001").rstrip("/"),
            model=os.environ.get("REALTIME_MODEL", DEFAULT_MODEL),
            provider_realtime_url=os.environ.get(
                "PROVIDER_REALTIME_URL", "https://api.openai.com/v1/realtime"
            ),
            ice_servers=_parse_list_env("ICE_SERVERS", [DEFAULT_ICE_SERVER]),
            capture_device=os.environ.get("CAPTURE_DEVICE", "default"),
            capture_format=os.environ.get("CAPTURE_FORMAT", "pulse") or None,
            playback_device=os.environ.get("PLAYBACK_DEVICE") or None,
            playback_format=os.environ.get("PLAYBACK_FORMAT") or None,
            level_frame_rate=_parse_int_env("LEVEL_FRAME_RATE", default=60),
            http_timeout_seconds=_parse_int_env("HTTP_TIMEOUT_SECONDS", default=10),
        )


def get_config() -> ClientConfig:
    """Get or create global config instance (read once at startup)."""
    global _config
    if _config is None:
        root = Path(__file__).parent.parent
        for name in (".env_local", ".env.local"):
            p = root / name
            if p.exists():
                load_dotenv(p, override=False)
        _config = ClientConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[ClientConfig] = None
