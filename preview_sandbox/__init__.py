"""
Preview sandbox engine: serve generated web projects as live, browsable previews.
"""

from preview_sandbox.config import Config, ConfigError, configure_logging, get_config
from preview_sandbox.schemas import FileRecord, Framework, SandboxRequest
from preview_sandbox.sandbox import (
    SandboxManager,
    SandboxSession,
    SandboxStatus,
    ContentSanitizer,
    sanitize_file,
    FileMaterializer,
    PortAllocator,
    DockerRuntime,
    ReadinessProbe,
    SandboxError,
    ContentValidationFailure,
    MaterializationError,
    PortExhaustionError,
    BuildFailure,
    RuntimeCrash,
    RestartLoopDetected,
    HealthCheckTimeout,
    ProbeCancelled,
    SessionNotFound,
    InvalidSessionState,
)

__version__ = "0.1.0"

__all__ = [
    "Config",
    "ConfigError",
    "configure_logging",
    "get_config",
    "FileRecord",
    "Framework",
    "SandboxRequest",
    "SandboxManager",
    "SandboxSession",
    "SandboxStatus",
    "ContentSanitizer",
    "sanitize_file",
    "FileMaterializer",
    "PortAllocator",
    "DockerRuntime",
    "ReadinessProbe",
    "SandboxError",
    "ContentValidationFailure",
    "MaterializationError",
    "PortExhaustionError",
    "BuildFailure",
    "RuntimeCrash",
    "RestartLoopDetected",
    "HealthCheckTimeout",
    "ProbeCancelled",
    "SessionNotFound",
    "InvalidSessionState",
]
