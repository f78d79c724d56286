"""Configuration settings for the Strata memory store.

This module provides Pydantic Settings for configuration management.
Store settings are loaded from environment variables with the STRATA_
prefix, topic detection settings with the STRATA_TOPIC_ prefix. Both read
an optional .env file.
"""

import hashlib
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from strata.constants import (
    DEFAULT_EWMA_ALPHA,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_SQLITE_PATH,
    DEFAULT_THRESHOLD_MAX,
    DEFAULT_THRESHOLD_MIN,
    MIN_BUSY_TIMEOUT_MS,
    SENSITIVITY_PRESETS,
    THRESHOLD_CEILING,
    THRESHOLD_FLOOR,
)

# Type alias for embedding backend selection
EmbeddingBackend = Literal["ollama", "none"]

SensitivityPreset = Literal["sensitive", "balanced", "relaxed"]


class StrataSettings(BaseSettings):
    """Configuration settings for the store and its serving loop.

    Attributes:
        sqlite_path: Path to the SQLite database file
        busy_timeout_ms: Per-connection lock wait before SQLITE_BUSY surfaces
        log_level: Logging level
        embedding_backend: Embedding backend ('ollama' or 'none')
        ollama_host: Ollama server host URL
        ollama_model: Embedding model name (must produce 384-dim vectors)
        ollama_timeout: Ollama request timeout in seconds
        worker_interval_seconds: Delay between background ticks
        worker_batch_size: Observations embedded per tick
        worker_tool_batch_size: Registry entries embedded per tick
        staleness_sweep_every: Run the registry sweep every N ticks (0 disables)
        stale_after_days: Unused tools older than this are marked stale
    """

    model_config = SettingsConfigDict(
        env_prefix="STRATA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Allow extra env vars without error
    )

    # Storage
    sqlite_path: Path = Field(
        default=DEFAULT_SQLITE_PATH, description="Path to SQLite database"
    )
    busy_timeout_ms: int = Field(
        default=MIN_BUSY_TIMEOUT_MS,
        ge=MIN_BUSY_TIMEOUT_MS,
        description="SQLite busy timeout in milliseconds",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Embedding backend
    embedding_backend: EmbeddingBackend = Field(
        default="ollama",
        description="Embedding backend to use ('ollama' or 'none' for keyword-only)",
    )
    ollama_host: str = Field(default=DEFAULT_OLLAMA_HOST, description="Ollama server host URL")
    ollama_model: str = Field(
        default=DEFAULT_OLLAMA_MODEL, description="Embedding model name for Ollama backend"
    )
    ollama_timeout: int = Field(default=30, gt=0, description="Ollama request timeout in seconds")

    # Background loop
    worker_interval_seconds: float = Field(default=5.0, gt=0)
    worker_batch_size: int = Field(default=10, gt=0)
    worker_tool_batch_size: int = Field(default=5, ge=0)
    staleness_sweep_every: int = Field(default=60, ge=0)
    stale_after_days: int = Field(default=30, gt=0)

    def get_sqlite_path(self) -> Path:
        """Get the SQLite path, expanding user home."""
        return self.sqlite_path.expanduser().resolve()


class TopicDetectionSettings(BaseSettings):
    """Sensitivity dial for topic shift detection.

    Invalid values never raise: each falls back to its default the same way
    a hand-edited config file would be tolerated.

    Attributes:
        enabled: Master toggle; disabled detection never reports a shift
        sensitivity_preset: Named preset mapped to a multiplier
        sensitivity_multiplier: Explicit multiplier, overrides the preset
        manual_threshold: Fixed threshold that bypasses the adaptive one
        ewma_alpha: EWMA decay factor, 0 < alpha <= 1
        threshold_min: Lower clamp for the adaptive threshold
        threshold_max: Upper clamp for the adaptive threshold
    """

    model_config = SettingsConfigDict(
        env_prefix="STRATA_TOPIC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = True
    sensitivity_preset: SensitivityPreset = "balanced"
    sensitivity_multiplier: Optional[float] = None
    manual_threshold: Optional[float] = None
    ewma_alpha: float = DEFAULT_EWMA_ALPHA
    threshold_min: float = DEFAULT_THRESHOLD_MIN
    threshold_max: float = DEFAULT_THRESHOLD_MAX

    @field_validator("sensitivity_preset", mode="before")
    @classmethod
    def validate_preset(cls, v: object) -> object:
        """Unknown preset names fall back to 'balanced'."""
        if v not in SENSITIVITY_PRESETS:
            return "balanced"
        return v

    @field_validator("sensitivity_multiplier")
    @classmethod
    def validate_multiplier(cls, v: Optional[float]) -> Optional[float]:
        """Non-positive multipliers are ignored in favour of the preset."""
        if v is not None and v <= 0:
            return None
        return v

    @field_validator("ewma_alpha")
    @classmethod
    def validate_alpha(cls, v: float) -> float:
        """Alpha outside (0, 1] falls back to the default."""
        if not 0 < v <= 1:
            return DEFAULT_EWMA_ALPHA
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "TopicDetectionSettings":
        """Clamp bounds to [0.05, 0.95] and reset them when inverted."""
        lo = max(self.threshold_min, THRESHOLD_FLOOR)
        hi = min(self.threshold_max, THRESHOLD_CEILING)
        if lo >= hi:
            lo, hi = DEFAULT_THRESHOLD_MIN, DEFAULT_THRESHOLD_MAX
        # object.__setattr__ avoids re-running validation on assignment
        object.__setattr__(self, "threshold_min", lo)
        object.__setattr__(self, "threshold_max", hi)
        return self

    @property
    def multiplier(self) -> float:
        """Effective multiplier: explicit value, else the preset's."""
        if self.sensitivity_multiplier is not None:
            return self.sensitivity_multiplier
        return SENSITIVITY_PRESETS[self.sensitivity_preset]

    @property
    def bounds(self) -> tuple[float, float]:
        return (self.threshold_min, self.threshold_max)


def get_project_hash(project_dir: Path | str) -> str:
    """Derive the partition key for a project directory.

    Args:
        project_dir: Project root. Resolved before hashing so relative paths
            and symlinks map to the same partition.

    Returns:
        First 16 hex characters of the SHA-256 of the resolved path.
    """
    resolved = str(Path(project_dir).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]
