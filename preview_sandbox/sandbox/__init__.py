"""
Sandbox module for serving generated projects as live previews in Docker containers.

Components:
- sanitizer: Validate and repair generated files before they are written
- materializer: Write files plus framework scaffold into a working directory
- ports: Lease host ports to sessions
- runtime: Build images and run dev-server containers
- probe: Decide when a dev server is actually ready
- registry: Track sessions and their lifecycle
- manager: Create, observe and tear down sandboxes
"""

from preview_sandbox.sandbox.errors import (
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
from preview_sandbox.sandbox.sanitizer import ContentSanitizer, sanitize_file, sanitize_files
from preview_sandbox.sandbox.materializer import FileMaterializer
from preview_sandbox.sandbox.ports import PortAllocator, is_port_free
from preview_sandbox.sandbox.runtime import ContainerRuntime, ContainerState, DockerRuntime
from preview_sandbox.sandbox.probe import ReadinessProbe, ProbeResult, READY_MARKERS
from preview_sandbox.sandbox.registry import SandboxSession, SandboxStatus, SessionRegistry
from preview_sandbox.sandbox.manager import SandboxManager

__all__ = [
    # Manager
    "SandboxManager",
    # Registry
    "SandboxSession",
    "SandboxStatus",
    "SessionRegistry",
    # Components
    "ContentSanitizer",
    "sanitize_file",
    "sanitize_files",
    "FileMaterializer",
    "PortAllocator",
    "is_port_free",
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "ReadinessProbe",
    "ProbeResult",
    "READY_MARKERS",
    # Errors
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
