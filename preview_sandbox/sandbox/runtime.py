"""
Container Runtime - Build images and run dev-server containers.

`ContainerRuntime` is the interface the manager and probe depend on;
`DockerRuntime` implements it with the Docker SDK. Tests substitute a fake.
"""

import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Set

import docker  # type: ignore[import-not-found]
from docker.errors import APIError, BuildError, DockerException, NotFound  # type: ignore[import-not-found]

from preview_sandbox.config import Config, get_config
from preview_sandbox.schemas import Framework
from preview_sandbox.sandbox.errors import BuildFailure, RuntimeCrash
from preview_sandbox.sandbox.templates import INTERNAL_PORT, container_environment
from preview_sandbox.utils import decode_output, tail_text

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Label put on every image and container this engine creates
MANAGED_LABEL = "preview-sandbox.managed"
SESSION_LABEL = "preview-sandbox.session"
PROJECT_LABEL = "preview-sandbox.project"
FRAMEWORK_LABEL = "preview-sandbox.framework"

# Container states that will never become ready
TERMINAL_STATES = ("exited", "dead", "missing")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ContainerState:
    """Snapshot of a container's runtime state."""
    state: str  # created, running, restarting, paused, exited, dead, missing
    exit_code: Optional[int] = None
    restart_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# =============================================================================
# INTERFACE
# =============================================================================

class ContainerRuntime(Protocol):
    def ping(self) -> bool:
        ...

    def build(self, work_dir: Path, framework: Framework, tag: str, labels: Optional[Dict[str, str]] = None) -> str:
        ...

    def run(
        self,
        image_ref: str,
        port: int,
        name: str,
        framework: Framework = Framework.NEXTJS,
        labels: Optional[Dict[str, str]] = None,
    ) -> str:
        ...

    def inspect(self, container_ref: str) -> ContainerState:
        ...

    def logs(self, container_ref: str, tail: int = 100) -> str:
        ...

    def stop(self, container_ref: str) -> None:
        ...

    def remove(self, container_ref: str) -> None:
        ...

    def remove_image(self, image_ref: str) -> None:
        ...

    def remove_stale(self, name: str) -> None:
        ...

    def managed_ports(self) -> Set[int]:
        ...

    def remove_orphans(self, keep: Iterable[str] = ()) -> List[str]:
        ...


# =============================================================================
# DOCKER IMPLEMENTATION
# =============================================================================

def _build_log_text(chunks) -> str:
    """Flatten the JSON chunks streamed by an image build."""
    lines = []
    for chunk in chunks or []:
        if not isinstance(chunk, dict):
            continue
        text = chunk.get("stream") or chunk.get("error") or ""
        if text:
            lines.append(text.rstrip("\n"))
    return "\n".join(lines)


class DockerRuntime:
    """ContainerRuntime backed by the local Docker daemon."""

    def __init__(self, config: Optional[Config] = None, client=None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self):
        """Docker client, created from the environment on first use."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def ping(self) -> bool:
        """Check that the Docker daemon answers."""
        try:
            return bool(self.client.ping())
        except (DockerException, OSError) as e:
            logger.warning("Docker daemon is not reachable: %s", e)
            return False

    # -------------------------------------------------------------------------
    # Build / run
    # -------------------------------------------------------------------------

    def build(self, work_dir: Path, framework: Framework, tag: str, labels: Optional[Dict[str, str]] = None) -> str:
        """
        Build the project image (dependency install happens in the build).

        Returns:
            The image tag, used as the image reference

        Raises:
            BuildFailure: If the build fails or the daemon errors
        """
        image_labels = {MANAGED_LABEL: "true", FRAMEWORK_LABEL: framework.value}
        image_labels.update(labels or {})

        logger.info("Building image %s from %s", tag, work_dir)
        try:
            self.client.images.build(
                path=str(work_dir),
                tag=tag,
                rm=True,
                forcerm=True,
                labels=image_labels,
                timeout=self.config.build_timeout,
            )
        except BuildError as e:
            logs = tail_text(_build_log_text(e.build_log))
            raise BuildFailure(f"Image build failed: {e.msg}", logs=logs) from e
        except (DockerException, OSError) as e:
            raise BuildFailure(f"Image build failed: {str(e)[:200]}") from e

        return tag

    def run(
        self,
        image_ref: str,
        port: int,
        name: str,
        framework: Framework = Framework.NEXTJS,
        labels: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Start a detached container publishing the dev server on `port`.

        Raises:
            RuntimeCrash: If the daemon refuses to start the container
        """
        container_labels = {MANAGED_LABEL: "true", FRAMEWORK_LABEL: framework.value}
        container_labels.update(labels or {})

        kwargs = dict(
            image=image_ref,
            name=name,
            detach=True,
            ports={f"{INTERNAL_PORT}/tcp": port},
            mem_limit=self.config.memory_limit,
            cpu_period=100000,
            cpu_quota=int(100000 * self.config.cpu_limit),
            environment=container_environment(framework),
            labels=container_labels,
        )
        policy = self.config.restart_policy
        if policy != "no":
            restart_policy = {"Name": policy}
            if policy == "on-failure":
                restart_policy["MaximumRetryCount"] = self.config.max_restarts
            kwargs["restart_policy"] = restart_policy

        try:
            container = self.client.containers.run(**kwargs)
        except APIError as e:
            error_msg = str(e)
            if "port is already allocated" in error_msg.lower():
                raise RuntimeCrash(f"Port {port} is already in use") from e
            raise RuntimeCrash(f"Docker API error: {error_msg[:200]}") from e
        except (DockerException, OSError) as e:
            raise RuntimeCrash(f"Failed to start container: {str(e)[:200]}") from e

        logger.info("Started container %s on port %d", name, port)
        return container.id

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def inspect(self, container_ref: str) -> ContainerState:
        """Current state of a container ("missing" if it no longer exists)."""
        try:
            container = self.client.containers.get(container_ref)
            container.reload()
        except NotFound:
            return ContainerState(state="missing")
        except (DockerException, OSError) as e:
            raise RuntimeCrash(f"Could not inspect container: {str(e)[:200]}") from e

        attrs = container.attrs or {}
        state = attrs.get("State") or {}
        return ContainerState(
            state=state.get("Status") or container.status,
            exit_code=state.get("ExitCode"),
            restart_count=int(attrs.get("RestartCount") or 0),
            error=state.get("Error") or None,
        )

    def logs(self, container_ref: str, tail: int = 100) -> str:
        """Last `tail` lines of combined stdout/stderr ("" if the container is gone)."""
        try:
            container = self.client.containers.get(container_ref)
            return decode_output(container.logs(tail=tail))
        except NotFound:
            return ""
        except (DockerException, OSError) as e:
            logger.warning("Could not read logs for %s: %s", container_ref, e)
            return ""

    def managed_ports(self) -> Set[int]:
        """Host ports published by running managed containers."""
        ports: Set[int] = set()
        containers = self.client.containers.list(filters={"label": f"{MANAGED_LABEL}=true"})
        for container in containers:
            published = ((container.attrs or {}).get("NetworkSettings") or {}).get("Ports") or {}
            for bindings in published.values():
                for binding in bindings or []:
                    host_port = binding.get("HostPort")
                    if host_port and str(host_port).isdigit():
                        ports.add(int(host_port))
        return ports

    # -------------------------------------------------------------------------
    # Teardown (idempotent)
    # -------------------------------------------------------------------------

    def stop(self, container_ref: str) -> None:
        try:
            container = self.client.containers.get(container_ref)
            container.stop(timeout=self.config.stop_timeout)
        except NotFound:
            pass
        except APIError as e:
            logger.warning("Could not stop container %s: %s", container_ref, e)

    def remove(self, container_ref: str) -> None:
        try:
            container = self.client.containers.get(container_ref)
            container.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            logger.warning("Could not remove container %s: %s", container_ref, e)

    def remove_image(self, image_ref: str) -> None:
        try:
            self.client.images.remove(image=image_ref, force=True)
        except NotFound:
            pass
        except APIError as e:
            logger.warning("Could not remove image %s: %s", image_ref, e)

    def remove_stale(self, name: str) -> None:
        """Remove any existing container with the same name."""
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        logger.info("Removing stale container %s", name)
        try:
            existing.stop(timeout=2)
            existing.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            logger.warning("Could not remove stale container %s: %s", name, e)

    def remove_orphans(self, keep: Iterable[str] = ()) -> List[str]:
        """
        Remove managed containers (any state) not listed in `keep`.

        Args:
            keep: Container ids or names to leave alone

        Returns:
            Names of the containers removed
        """
        keep = set(keep)
        removed = []
        containers = self.client.containers.list(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )
        for container in containers:
            if container.id in keep or container.name in keep:
                continue
            try:
                container.remove(force=True)
                removed.append(container.name)
            except NotFound:
                pass
            except APIError as e:
                logger.warning("Could not remove orphaned container %s: %s", container.name, e)
        if removed:
            logger.info("Removed %d orphaned sandbox containers", len(removed))
        return removed
