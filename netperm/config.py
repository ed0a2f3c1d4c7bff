"""Configuration settings using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, overridable through NETPERM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NETPERM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Defaults used when the CLI/API caller leaves them out
    default_target: str = "8.8.8.8"
    default_port: int = Field(default=80, ge=1, le=65535)
    default_protocol: Literal["tcp", "udp"] = "tcp"

    # Every external query is bounded
    command_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Seconds before an external command (ip, rfkill, nft, ...) is abandoned",
    )
    connect_timeout: float = Field(default=2.0, gt=0, description="TCP connect / UDP reply wait")
    icmp_timeout: float = Field(default=2.0, gt=0, description="Wait for ICMP echo replies")
    icmp_count: int = Field(default=1, ge=1, le=10, description="Echo requests per address")
    arp_timeout: float = Field(default=1.0, gt=0, description="Wait for an ARP who-has reply")

    # Application
    log_level: str = "WARNING"
    out_dir: str = "reports"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
