"""Runtime settings read from environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path

from core.models import ConfigError

DEFAULT_DATA_DIR = Path.home() / ".playlist_transfer"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    log_level: str = "INFO"
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    workers: int = 2
    track_delay: float = 0.8
    search_delay: float = 0.25
    http_timeout: float = 15.0

    @property
    def store_file(self) -> Path:
        return self.data_dir / "store.json"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "playlist_transfer.log"

    @property
    def status_file(self) -> Path:
        return self.data_dir / "transfer_status.json"


def _number(env: dict, name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def load_settings(env: dict | None = None) -> Settings:
    """Build Settings from the environment (or the given mapping)."""
    env = dict(os.environ if env is None else env)
    data_dir = Path(env.get("DATA_DIR") or DEFAULT_DATA_DIR).expanduser()

    workers = _number(env, "TRANSFER_WORKERS", 2, int)
    if workers < 1:
        raise ConfigError("TRANSFER_WORKERS must be at least 1")

    return Settings(
        data_dir=data_dir,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        spotify_client_id=env.get("SPOTIFY_CLIENT_ID", ""),
        spotify_client_secret=env.get("SPOTIFY_CLIENT_SECRET", ""),
        google_client_id=env.get("GOOGLE_CLIENT_ID", ""),
        google_client_secret=env.get("GOOGLE_CLIENT_SECRET", ""),
        workers=workers,
        track_delay=_number(env, "TRACK_DELAY", 0.8, float),
        search_delay=_number(env, "SEARCH_DELAY", 0.25, float),
        http_timeout=_number(env, "HTTP_TIMEOUT", 15.0, float),
    )
