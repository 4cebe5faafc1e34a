"""
gridconquest Configuration

Loads process configuration from environment variables with sensible defaults.
Scoring and gameplay tunables are not read here; they arrive per invocation as
XPConfig / GameplayConfig snapshots from a ConfigProvider.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # Database Configuration (PostgresCellStore)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/gridconquest")

    # File-based store location (JsonCellStore)
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", "territory_data"))

    # Territory Configuration
    # Fallback when the gameplay config snapshot is unavailable
    TERRITORY_EXPIRATION_DAYS: float = float(os.getenv("TERRITORY_EXPIRATION_DAYS", "7"))

    # Store limits
    # Maximum ids per multi-get query
    STORE_BATCH_SIZE: int = int(os.getenv("STORE_BATCH_SIZE", "30"))
    # Cells committed per chunk; each cell costs two writes (record + history)
    COMMIT_CHUNK_SIZE: int = int(os.getenv("COMMIT_CHUNK_SIZE", "225"))
    # Optimistic retries per cell before the conflict is surfaced
    COMMIT_MAX_ATTEMPTS: int = int(os.getenv("COMMIT_MAX_ATTEMPTS", "5"))
    # Cells per stored activity territory chunk (mini-map payloads)
    ACTIVITY_TERRITORY_CHUNK_SIZE: int = int(os.getenv("ACTIVITY_TERRITORY_CHUNK_SIZE", "200"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if values are out of range."""
        positive_ints = {
            "STORE_BATCH_SIZE": cls.STORE_BATCH_SIZE,
            "COMMIT_CHUNK_SIZE": cls.COMMIT_CHUNK_SIZE,
            "COMMIT_MAX_ATTEMPTS": cls.COMMIT_MAX_ATTEMPTS,
            "ACTIVITY_TERRITORY_CHUNK_SIZE": cls.ACTIVITY_TERRITORY_CHUNK_SIZE,
        }
        for name, value in positive_ints.items():
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer (got {value})")

        if cls.TERRITORY_EXPIRATION_DAYS <= 0:
            raise ValueError(
                "TERRITORY_EXPIRATION_DAYS must be positive "
                f"(got {cls.TERRITORY_EXPIRATION_DAYS})"
            )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "gridconquest Configuration:",
            f"  Database: {cls.DATABASE_URL}",
            f"  Data Dir: {cls.DATA_DIR}",
            f"  Territory Expiration: {cls.TERRITORY_EXPIRATION_DAYS} days",
            f"  Store Batch Size: {cls.STORE_BATCH_SIZE}",
            f"  Commit Chunk Size: {cls.COMMIT_CHUNK_SIZE}",
            f"  Commit Attempts: {cls.COMMIT_MAX_ATTEMPTS}",
            f"  Log Level: {cls.LOG_LEVEL}",
        ]
        return "\n".join(lines)
