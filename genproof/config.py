"""
Configuration management for the GenProof pipeline.
"""

from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_READ_GATEWAYS = [
    "https://gateway.pinata.cloud/ipfs",
    "https://ipfs.infura.io:5001/ipfs",
    "https://ipfs.io/ipfs",
]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="GENPROOF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    environment: str = Field(default="development")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # Key/value backend (jobs, result cache, queue)
    kv_url: str = Field(
        default="redis://localhost:6379/0", description="redis:// or memory://"
    )
    kv_timeout: float = Field(default=5.0)

    # Transactional store
    database_url: str = Field(default="sqlite:///./genproof.db")
    store_timeout: float = Field(default=10.0)

    # Retention
    job_ttl_seconds: int = Field(default=3600)
    result_ttl_seconds: int = Field(default=3600)
    artifact_retention_hours: int = Field(default=24)

    # Worker pool
    worker_concurrency: int = Field(default=3, ge=1)
    worker_poll_interval: float = Field(default=1.0)
    progress_interval: float = Field(default=0.5)
    shutdown_timeout: float = Field(default=30.0)
    stats_interval: float = Field(default=30.0)
    persist_attempts: int = Field(default=3, ge=1)
    persist_backoff_seconds: float = Field(default=0.5)
    input_timeout: float = Field(default=15.0)

    # Prover
    prover_backend: str = Field(default="mock", description="mock or http")
    prover_url: Optional[str] = Field(default=None)
    prover_timeout: float = Field(default=60.0)
    trait_durations: Dict[str, float] = Field(
        default_factory=lambda: {"BRCA1": 10.0, "BRCA2": 10.0, "CYP2D6": 15.0}
    )
    default_trait_duration: float = Field(default=20.0)

    # Pinning
    pin_write_url: str = Field(default="https://api.pinata.cloud")
    pin_api_key: Optional[str] = Field(default=None)
    pin_api_secret: Optional[str] = Field(default=None)
    pin_read_gateways: List[str] = Field(
        default_factory=lambda: list(DEFAULT_READ_GATEWAYS)
    )
    pin_attempts: int = Field(default=3, ge=1)
    pin_backoff_seconds: float = Field(default=1.0)
    pin_write_timeout: float = Field(default=30.0)
    pin_read_timeout: float = Field(default=15.0)
    pin_local_capacity: int = Field(
        default=1024, ge=1, description="Payloads kept in the local ephemeral store"
    )

    # Reconciler
    reconciler_name: str = Field(default="default")
    reconciler_shards: int = Field(default=4, ge=1)
    reconciler_redeliveries: int = Field(default=5, ge=1)
    reconciler_backoff_seconds: float = Field(default=0.5)

    def expected_duration(self, trait_type: str) -> float:
        """Expected prover duration for a trait type, in seconds."""
        return self.trait_durations.get(trait_type, self.default_trait_duration)


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, applying explicit overrides."""
    return Settings(**overrides)
