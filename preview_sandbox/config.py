"""
Configuration module for loading and validating sandbox engine settings.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_int(name: str, default: int, problems: list) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        problems.append(f"{name} must be an integer (got {raw!r})")
        return default


def _env_float(name: str, default: float, problems: list) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        problems.append(f"{name} must be a number (got {raw!r})")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Sandbox engine configuration loaded from environment variables."""

    def __init__(self, env_file: Optional[Path] = None):
        # Load .env file from project root
        env_path = env_file or Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        problems: list = []

        # Host / ports
        self.host = os.getenv("SANDBOX_HOST", "localhost")
        self.port_start = _env_int("SANDBOX_PORT_START", 5000, problems)
        self.port_end = _env_int("SANDBOX_PORT_END", 5050, problems)

        # Working directories and lifetime
        self.work_root = Path(os.getenv("SANDBOX_WORK_ROOT", "sandboxes")).resolve()
        self.keep_workdir = _env_bool("SANDBOX_KEEP_WORKDIR", False)
        self.ttl_minutes = _env_int("SANDBOX_TTL_MINUTES", 60, problems)
        self.retention_minutes = _env_int("SANDBOX_RETENTION_MINUTES", 60, problems)

        # Timeouts (seconds)
        self.build_timeout = _env_int("SANDBOX_BUILD_TIMEOUT", 900, problems)
        self.ready_timeout = _env_float("SANDBOX_READY_TIMEOUT", 120.0, problems)
        self.stop_timeout = _env_int("SANDBOX_STOP_TIMEOUT", 5, problems)

        # Readiness probe
        self.probe_interval = _env_float("SANDBOX_PROBE_INTERVAL", 2.0, problems)
        self.restart_threshold = _env_int("SANDBOX_RESTART_THRESHOLD", 5, problems)
        self.http_attempts = _env_int("SANDBOX_HTTP_ATTEMPTS", 3, problems)
        self.http_timeout = _env_float("SANDBOX_HTTP_TIMEOUT", 5.0, problems)
        self.http_pause = _env_float("SANDBOX_HTTP_PAUSE", 3.0, problems)

        # Container resource ceilings
        self.memory_limit = os.getenv("SANDBOX_MEMORY_LIMIT", "1g")
        self.cpu_limit = _env_float("SANDBOX_CPU_LIMIT", 1.0, problems)
        self.restart_policy = os.getenv("SANDBOX_RESTART_POLICY", "on-failure")
        self.max_restarts = _env_int("SANDBOX_MAX_RESTARTS", 10, problems)

        # Concurrency
        self.max_workers = _env_int("SANDBOX_MAX_WORKERS", 4, problems)

        self.log_level = os.getenv("SANDBOX_LOG_LEVEL", "INFO").upper()

        # Validate settings
        self._validate(problems)

    def _validate(self, problems: list):
        """Validate that all settings are usable together."""
        if not 1 <= self.port_start < self.port_end <= 65536:
            problems.append(
                f"SANDBOX_PORT_START/SANDBOX_PORT_END must form a range inside 1-65535 "
                f"(got {self.port_start}-{self.port_end})"
            )
        for name, value in (
            ("SANDBOX_TTL_MINUTES", self.ttl_minutes),
            ("SANDBOX_BUILD_TIMEOUT", self.build_timeout),
            ("SANDBOX_READY_TIMEOUT", self.ready_timeout),
            ("SANDBOX_PROBE_INTERVAL", self.probe_interval),
            ("SANDBOX_HTTP_ATTEMPTS", self.http_attempts),
            ("SANDBOX_HTTP_TIMEOUT", self.http_timeout),
            ("SANDBOX_MAX_WORKERS", self.max_workers),
            ("SANDBOX_CPU_LIMIT", self.cpu_limit),
        ):
            if value <= 0:
                problems.append(f"{name} must be positive (got {value})")
        if self.restart_threshold < 0:
            problems.append("SANDBOX_RESTART_THRESHOLD must not be negative")
        if self.retention_minutes < 0:
            problems.append("SANDBOX_RETENTION_MINUTES must not be negative")
        if self.restart_policy not in ("no", "on-failure", "unless-stopped", "always"):
            problems.append(
                f"SANDBOX_RESTART_POLICY must be one of no, on-failure, unless-stopped, always "
                f"(got {self.restart_policy!r})"
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            problems.append(f"SANDBOX_LOG_LEVEL is not a logging level (got {self.log_level!r})")

        if problems:
            raise ConfigError(
                "Invalid sandbox configuration:\n  - " + "\n  - ".join(problems)
            )


def configure_logging(level: Optional[str] = None) -> None:
    """Send engine logs to stderr with timestamps."""
    logging.basicConfig(
        level=level or get_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
