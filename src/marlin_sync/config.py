"""Configuration module for Marlin Sync."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from marlin_sync import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives upgrades, lives alongside the local cache
_USER_ENV = Path.home() / ".marlin" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class MarlinConfig(BaseModel):
    """Configuration for the sync engine and its collaborators."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MARLIN_BASE_DIR", "."))
    )
    # Local cache database
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("MARLIN_DATABASE_PATH", "data/db/marlin.db")
        )
    )
    # Remote repository host. The token normally comes from the identity
    # provider; the env var exists for headless use.
    github_owner: Optional[str] = Field(
        default_factory=lambda: os.getenv("MARLIN_GITHUB_OWNER") or None
    )
    github_token: Optional[str] = Field(
        default_factory=lambda: os.getenv("MARLIN_GITHUB_TOKEN") or None
    )
    github_api_url: str = Field(
        default_factory=lambda: os.getenv(
            "MARLIN_GITHUB_API_URL", "https://api.github.com"
        )
    )
    request_timeout: float = Field(
        default_factory=lambda: float(os.getenv("MARLIN_REQUEST_TIMEOUT", "30"))
    )
    # Repository layout
    repo_suffix: str = Field(
        default_factory=lambda: os.getenv("MARLIN_REPO_SUFFIX", ".marlin")
    )
    notes_folder: str = Field(
        default_factory=lambda: os.getenv("MARLIN_NOTES_FOLDER", "notes")
    )
    # Background scheduling (seconds)
    sync_interval: float = Field(
        default_factory=lambda: float(os.getenv("MARLIN_SYNC_INTERVAL", "60"))
    )
    limited_interval_factor: int = Field(
        default_factory=lambda: int(os.getenv("MARLIN_LIMITED_INTERVAL_FACTOR", "4"))
    )
    probe_interval: float = Field(
        default_factory=lambda: float(os.getenv("MARLIN_PROBE_INTERVAL", "60"))
    )
    # Remaining API calls below which the network is reported as "limited"
    rate_limit_low_water: int = Field(
        default_factory=lambda: int(os.getenv("MARLIN_RATE_LIMIT_LOW_WATER", "100"))
    )
    # Parallel note operations per pass, normal and when limited
    sync_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("MARLIN_SYNC_BATCH_SIZE", "5"))
    )
    limited_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("MARLIN_LIMITED_BATCH_SIZE", "1"))
    )
    # Transient failure retry policy
    max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("MARLIN_MAX_ATTEMPTS", "3"))
    )
    backoff_base: float = Field(
        default_factory=lambda: float(os.getenv("MARLIN_BACKOFF_BASE", "0.5"))
    )
    # Title annotation for the duplicate created on a conflict
    conflict_suffix: str = Field(
        default_factory=lambda: os.getenv(
            "MARLIN_CONFLICT_SUFFIX", "(conflicted copy)"
        )
    )
    # Seconds a trashed note stays restorable before its remote delete is pushed
    trash_grace_period: float = Field(
        default_factory=lambda: float(os.getenv("MARLIN_TRASH_GRACE_PERIOD", "0"))
    )
    # Start background sync from the CLI `watch` command
    auto_sync: bool = Field(default_factory=lambda: _env_bool("MARLIN_AUTO_SYNC", "true"))
    client_name: str = Field(default=os.getenv("MARLIN_CLIENT_NAME", "marlin-sync"))
    client_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_sync_config(self) -> "MarlinConfig":
        """Reject settings that would stall or disable the sync loop."""
        if self.sync_batch_size < 1:
            raise ValueError("sync_batch_size must be >= 1")
        if self.limited_batch_size < 1:
            raise ValueError("limited_batch_size must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.sync_interval <= 0 or self.probe_interval <= 0:
            raise ValueError("sync_interval and probe_interval must be > 0")
        if self.limited_interval_factor < 1:
            raise ValueError("limited_interval_factor must be >= 1")
        if self.backoff_base < 0 or self.trash_grace_period < 0:
            raise ValueError("backoff_base and trash_grace_period must be >= 0")

        if self.limited_batch_size > self.sync_batch_size:
            logger.warning(
                "limited_batch_size (%d) exceeds sync_batch_size (%d); "
                "limited passes will not shrink.",
                self.limited_batch_size,
                self.sync_batch_size,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = MarlinConfig()
