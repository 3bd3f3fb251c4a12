"""
Configuration module for the Runtime Config Controller.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "runtime_config_controller"
    user: str = "controller"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "runtime_config_controller"),
            user=os.getenv("DB_USER", "controller"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ControllerConfig:
    """Work queue, retry and resync configuration."""

    workers: int = 5
    max_retries: int = 15

    # Per-key exponential backoff: base * 2^failures, capped
    backoff_base_delay: float = 0.005  # seconds
    backoff_max_delay: float = 1000.0  # seconds

    # Overall queue token bucket
    queue_qps: float = 10.0
    queue_burst: int = 100

    # Delay before a key that exhausted max_retries is tried again
    requeue_cooldown: float = 60.0

    # Optimistic-concurrency retry for artifact and finalizer writes
    conflict_retry_steps: int = 5
    conflict_retry_delay: float = 0.1
    conflict_retry_jitter: float = 1.0

    resync_interval: int = 600  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            workers=int(os.getenv("WORKERS", "5")),
            max_retries=int(os.getenv("MAX_RETRIES", "15")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.005")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            queue_qps=float(os.getenv("QUEUE_QPS", "10")),
            queue_burst=int(os.getenv("QUEUE_BURST", "100")),
            requeue_cooldown=float(os.getenv("REQUEUE_COOLDOWN", "60")),
            conflict_retry_steps=int(os.getenv("CONFLICT_RETRY_STEPS", "5")),
            conflict_retry_delay=float(os.getenv("CONFLICT_RETRY_DELAY", "0.1")),
            conflict_retry_jitter=float(os.getenv("CONFLICT_RETRY_JITTER", "1.0")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
        )


@dataclass
class RenderConfig:
    """Baseline rendering configuration."""

    templates_dir: str = "/etc/runtime-config-controller/templates"
    controller_version: str = "0.1.0"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            templates_dir=os.getenv(
                "TEMPLATES_DIR", "/etc/runtime-config-controller/templates"
            ),
            controller_version=os.getenv("CONTROLLER_VERSION", "0.1.0"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    render: RenderConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            render=RenderConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            render=RenderConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
