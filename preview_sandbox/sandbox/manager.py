"""
Sandbox Manager - Create, observe and tear down preview sandboxes.

Flow for a new session:
    sanitize -> materialize -> acquire port -> build -> run -> probe -> RUNNING | ERROR

Provisioning runs on a thread pool; callers either wait for the outcome or
poll `status`. Every resource a session holds (port, container, image,
working directory) is released by `stop`, `cleanup` or the TTL reaper.
"""

import logging
import re
import shutil
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

from preview_sandbox.config import Config, get_config
from preview_sandbox.schemas import Framework, SandboxRequest
from preview_sandbox.sandbox.errors import (
    InvalidSessionState,
    ProbeCancelled,
    SandboxError,
    SessionNotFound,
)
from preview_sandbox.sandbox.materializer import FileMaterializer
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.probe import ReadinessProbe
from preview_sandbox.sandbox.registry import (
    SandboxSession,
    SandboxStatus,
    SessionRegistry,
    new_session,
)
from preview_sandbox.sandbox.runtime import (
    ContainerRuntime,
    DockerRuntime,
    PROJECT_LABEL,
    SESSION_LABEL,
)
from preview_sandbox.sandbox.sanitizer import ContentSanitizer
from preview_sandbox.utils import safe_name, tail_text

logger = logging.getLogger(__name__)


def make_session_id(project_ref: str) -> str:
    """Unique, Docker-safe id (also used as container name and image repository)."""
    fragment = re.sub(r"[^a-z0-9]+", "-", safe_name(project_ref, max_length=24)).strip("-")
    return f"sandbox-{fragment or 'project'}-{uuid.uuid4().hex[:12]}"


class SandboxManager:
    """
    Owns the session registry, the port allocator and the provisioning pool.

    Construct once per process; collaborators can be injected for tests.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        runtime: Optional[ContainerRuntime] = None,
        allocator: Optional[PortAllocator] = None,
        probe: Optional[ReadinessProbe] = None,
        sanitizer: Optional[ContentSanitizer] = None,
        materializer: Optional[FileMaterializer] = None,
    ):
        self.config = config or get_config()
        self.runtime = runtime or DockerRuntime(self.config)
        self.registry = SessionRegistry()
        self.allocator = allocator or PortAllocator(
            self.config.port_start, self.config.port_end, host=self.config.host
        )
        self.allocator.set_in_use_source(self._ports_in_use)
        self.probe = probe or ReadinessProbe(self.runtime, self.config)
        self.sanitizer = sanitizer or ContentSanitizer()
        self.materializer = materializer or FileMaterializer()

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="sandbox"
        )
        self._lock = threading.Lock()
        self._futures: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._reaper: Optional[threading.Thread] = None
        self._reaper_stop = threading.Event()

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(
        self,
        project_ref: str,
        framework=Framework.NEXTJS,
        files: Optional[Dict[str, str]] = None,
        wait: bool = True,
    ) -> SandboxSession:
        """
        Create a sandbox for a project, or return the project's active one.

        Args:
            project_ref: Owning logical project
            framework: Framework tag (aliases accepted)
            files: Mapping of relative path to generated content
            wait: Block until the session is RUNNING or ERROR

        Returns:
            Snapshot of the session

        Raises:
            pydantic.ValidationError: If the request is invalid
        """
        request = SandboxRequest(project_ref=project_ref, framework=framework, files=files or {})

        with self._lock:
            session, created = self.registry.claim(request, self._new_session)
            if created:
                self._cancel_events[session.id] = threading.Event()
                self._futures[session.id] = self._executor.submit(self._provision, session.id)
            future = self._futures.get(session.id)

        if created:
            logger.info(
                "Creating sandbox %s for project %s (%s, %d files)",
                session.id, request.project_ref, request.framework.value, len(request.files),
            )
        else:
            logger.info("Project %s already has sandbox %s (%s)", request.project_ref, session.id, session.status.value)

        if not wait:
            return session
        if future is not None:
            future.result()
        return self.registry.get(session.id)

    def _new_session(self, request: SandboxRequest) -> SandboxSession:
        session_id = make_session_id(request.project_ref)
        work_dir = str(Path(self.config.work_root) / session_id)
        return new_session(session_id, request, self.config.ttl_minutes, work_dir)

    def _provision(self, session_id: str) -> None:
        """Run one provisioning job. Never raises; the outcome lands in the registry."""
        port: Optional[int] = None
        container_ref: Optional[str] = None
        image_ref: Optional[str] = None

        try:
            request = self.registry.request_for(session_id)
            session = self.registry.get(session_id)
            cancel = self._cancel_events.get(session_id) or threading.Event()
            labels = {SESSION_LABEL: session_id, PROJECT_LABEL: request.project_ref}

            files = self.sanitizer.sanitize_files(request.files, request.framework)
            self._check_cancelled(cancel)

            self.materializer.materialize(session.work_dir, files, request.framework)
            self._check_cancelled(cancel)

            port = self.allocator.acquire(owner=session_id)
            if self.registry.transition(session_id, [SandboxStatus.CREATING], port=port) is None:
                raise ProbeCancelled("Session stopped before a port was assigned")
            url = f"http://{self.config.host}:{port}"

            self.runtime.remove_stale(session_id)
            image_ref = self.runtime.build(
                Path(session.work_dir), request.framework, f"{session_id}:latest", labels
            )
            if self.registry.transition(session_id, [SandboxStatus.CREATING], image_ref=image_ref) is None:
                raise ProbeCancelled("Session stopped during the image build")

            container_ref = self.runtime.run(image_ref, port, session_id, request.framework, labels)
            if self.registry.transition(session_id, [SandboxStatus.CREATING], container_ref=container_ref) is None:
                raise ProbeCancelled("Session stopped while the container was starting")

            result = self.probe.await_ready(container_ref, url, request.framework, cancel=cancel)

            updated = self.registry.transition(
                session_id,
                [SandboxStatus.CREATING],
                status=SandboxStatus.RUNNING,
                url=url,
                restart_count=result.restart_count,
                logs=result.logs,
                error=None,
            )
            if updated is None:
                raise ProbeCancelled("Session stopped just as it became ready")
            logger.info("Sandbox %s running at %s", session_id, url)

        except ProbeCancelled as e:
            logger.info("Provisioning of %s cancelled: %s", session_id, e.message)
            self._discard_partial(session_id, port, container_ref, image_ref)
        except SessionNotFound:
            logger.info("Sandbox %s was dropped while provisioning", session_id)
            self._discard_partial(session_id, port, container_ref, image_ref)
        except SandboxError as e:
            logger.error("Sandbox %s failed: %s", session_id, e.message)
            self._fail(session_id, port, container_ref, image_ref, e.message, e.logs)
        except Exception as e:
            logger.exception("Unexpected error while provisioning %s", session_id)
            self._fail(session_id, port, container_ref, image_ref, f"Unexpected error: {e}", None)
        finally:
            with self._lock:
                self._futures.pop(session_id, None)
                self._cancel_events.pop(session_id, None)

    @staticmethod
    def _check_cancelled(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise ProbeCancelled("Provisioning was cancelled")

    def _fail(
        self,
        session_id: str,
        port: Optional[int],
        container_ref: Optional[str],
        image_ref: Optional[str],
        message: str,
        logs: Optional[str],
    ) -> None:
        """Mark a session ERROR, keeping its container for inspection."""
        if logs is None and container_ref:
            logs = tail_text(self.runtime.logs(container_ref))
        self.allocator.release(port, owner=session_id)
        try:
            failed = self.registry.transition(
                session_id,
                [SandboxStatus.CREATING],
                status=SandboxStatus.ERROR,
                error=message,
                logs=logs,
                url=None,
            )
        except SessionNotFound:
            failed = None
        if failed is None:
            # Stopped or dropped while failing; nothing is left to inspect
            self._discard_partial(session_id, port, container_ref, image_ref)

    def _discard_partial(
        self,
        session_id: str,
        port: Optional[int],
        container_ref: Optional[str],
        image_ref: Optional[str],
    ) -> None:
        """Undo what a cancelled provisioning job created after stop() ran."""
        if container_ref:
            self._quietly(self.runtime.stop, container_ref)
            self._quietly(self.runtime.remove, container_ref)
        if image_ref:
            self._quietly(self.runtime.remove_image, image_ref)
        self.allocator.release(port, owner=session_id)

        try:
            session = self.registry.get(session_id)
        except SessionNotFound:
            return
        if session.status == SandboxStatus.STOPPED:
            self._remove_workdir(session)

    # =========================================================================
    # STOP / RESTART
    # =========================================================================

    def stop(self, session_id: str) -> SandboxSession:
        """
        Stop a session and release everything it holds.

        Stopping a STOPPED session is a no-op.

        Raises:
            SessionNotFound: If the id is unknown
        """
        session = self.registry.get(session_id)
        if session.status == SandboxStatus.STOPPED:
            return session

        cancel = self._cancel_events.get(session_id)
        if cancel is not None:
            cancel.set()

        stopped = self.registry.transition(
            session_id,
            [SandboxStatus.CREATING, SandboxStatus.RUNNING, SandboxStatus.ERROR],
            status=SandboxStatus.STOPPED,
            url=None,
        )
        if stopped is None:
            # Another caller stopped it first
            return self.registry.get(session_id)

        self._teardown(stopped)
        logger.info("Stopped sandbox %s (was %s)", session_id, session.status.value)
        return stopped

    def _teardown(self, session: SandboxSession) -> None:
        if session.container_ref:
            self._quietly(self.runtime.stop, session.container_ref)
            self._quietly(self.runtime.remove, session.container_ref)
        if session.image_ref:
            self._quietly(self.runtime.remove_image, session.image_ref)
        self.allocator.release(session.port, owner=session.id)
        self._remove_workdir(session)

    def _remove_workdir(self, session: SandboxSession) -> None:
        if self.config.keep_workdir or not session.work_dir:
            return
        shutil.rmtree(session.work_dir, ignore_errors=True)

    @staticmethod
    def _quietly(step, ref: str) -> None:
        """Run a teardown step, logging instead of propagating failures."""
        try:
            step(ref)
        except Exception:
            logger.warning("Teardown step %s failed for %s", step.__name__, ref, exc_info=True)

    def restart(self, session_id: str, wait: bool = True) -> SandboxSession:
        """
        Stop a session (if needed) and create a new one from the same request.

        Raises:
            InvalidSessionState: If the session is still CREATING
        """
        session = self.registry.get(session_id)
        if session.status == SandboxStatus.CREATING:
            raise InvalidSessionState(
                f"Sandbox {session_id} is still being created; use force_restart instead"
            )
        request = self.registry.request_for(session_id)
        self.stop(session_id)
        logger.info("Restarting sandbox %s", session_id)
        return self.create(request.project_ref, request.framework, request.files, wait=wait)

    def force_restart(self, session_id: str, wait: bool = True) -> SandboxSession:
        """Tear down a session in any state and create a new one from the same request."""
        request = self.registry.request_for(session_id)
        self.stop(session_id)
        logger.info("Force-restarting sandbox %s", session_id)
        return self.create(request.project_ref, request.framework, request.files, wait=wait)

    # =========================================================================
    # OBSERVATION
    # =========================================================================

    def status(self, session_id: str) -> SandboxSession:
        """
        Snapshot of a session.

        A RUNNING session whose container has exited or vanished is demoted
        to ERROR here, and its port is released.
        """
        session = self.registry.get(session_id)
        if session.status != SandboxStatus.RUNNING or not session.container_ref:
            return session

        try:
            state = self.runtime.inspect(session.container_ref)
        except SandboxError as e:
            logger.warning("Could not inspect %s: %s", session_id, e.message)
            return session
        if not state.is_terminal:
            return session

        if state.state == "missing":
            message = "Container no longer exists"
            logs = session.logs
        else:
            message = f"Container exited with code {state.exit_code}"
            logs = tail_text(self.runtime.logs(session.container_ref)) or session.logs

        demoted = self.registry.transition(
            session_id,
            [SandboxStatus.RUNNING],
            status=SandboxStatus.ERROR,
            error=message,
            logs=logs,
            url=None,
        )
        if demoted is None:
            return self.registry.get(session_id)
        self.allocator.release(session.port, owner=session_id)
        logger.warning("Sandbox %s went down: %s", session_id, message)
        return demoted

    def list(self) -> List[SandboxSession]:
        """Snapshots of every tracked session."""
        return self.registry.list()

    def logs(self, session_id: str, tail: int = 100) -> str:
        """Live container logs, or the captured tail once the container is gone."""
        session = self.registry.get(session_id)
        live = ""
        if session.container_ref and session.status != SandboxStatus.STOPPED:
            live = self.runtime.logs(session.container_ref, tail=tail)
        return live or session.logs or ""

    def diagnose(self, session_id: str) -> Dict:
        """
        Health report for a session with suggested next steps.

        Returns:
            Dict with the session, container state, HTTP check and recommendations
        """
        session = self.status(session_id)
        report: Dict = {
            "session": session.to_dict(),
            "container": None,
            "http": None,
            "recommendations": [],
        }
        recommendations: List[str] = report["recommendations"]

        if session.container_ref and session.status != SandboxStatus.STOPPED:
            try:
                report["container"] = self.runtime.inspect(session.container_ref).to_dict()
            except SandboxError as e:
                report["container"] = {"state": "unknown", "error": e.message}

        url = session.url or (
            f"http://{self.config.host}:{session.port}"
            if session.port and session.status == SandboxStatus.CREATING else None
        )
        if url:
            report["http"] = self.probe.check_url(url)
        accessible = bool(report["http"] and report["http"]["accessible"])

        if session.status == SandboxStatus.ERROR:
            recommendations.append("Sandbox is in ERROR state - check the logs and try force restarting it")
            if session.error and "restarted" in session.error:
                recommendations.append("The app crashes on startup - check the entry files for errors")
        if session.status == SandboxStatus.CREATING:
            if accessible:
                recommendations.append("App already answers but the sandbox is still CREATING - readiness check is pending")
            else:
                recommendations.append("Sandbox is still starting - dependencies may be installing")
        if session.status == SandboxStatus.RUNNING and not accessible:
            recommendations.append("Sandbox is marked RUNNING but not accessible - check if the app crashed")
        if report["container"] and report["container"].get("state") == "missing":
            recommendations.append("Container no longer exists - force restart the sandbox")
        if session.status == SandboxStatus.STOPPED:
            recommendations.append("Sandbox is stopped - restart it to preview again")
        if not recommendations:
            recommendations.append("Sandbox looks healthy")

        return report

    # =========================================================================
    # CLEANUP
    # =========================================================================

    def cleanup_expired(self) -> List[str]:
        """
        Stop every session past its TTL and forget STOPPED sessions older than
        the retention period.

        Returns:
            Ids of the sessions stopped by this pass
        """
        expired = [
            s.id for s in self.registry.list()
            if s.status != SandboxStatus.STOPPED and s.is_expired()
        ]
        for session_id in expired:
            logger.info("Sandbox %s expired", session_id)
            self.stop(session_id)

        evicted = self.registry.evict_stopped(self.config.retention_minutes * 60)
        if evicted:
            logger.info("Evicted %d stopped sandboxes from the registry", len(evicted))
        return expired

    def start_reaper(self, interval: float = 60.0) -> None:
        """Start a background thread that stops expired sessions."""
        if self._reaper is not None and self._reaper.is_alive():
            return
        self._reaper_stop.clear()

        def reap_loop():
            while not self._reaper_stop.wait(interval):
                try:
                    self.cleanup_expired()
                except Exception:
                    logger.exception("Sandbox reaper pass failed")

        self._reaper = threading.Thread(target=reap_loop, name="sandbox-reaper", daemon=True)
        self._reaper.start()

    def stop_reaper(self) -> None:
        self._reaper_stop.set()
        if self._reaper is not None:
            self._reaper.join(timeout=5)
            self._reaper = None

    def cleanup(self) -> int:
        """
        Stop every session, remove orphaned managed containers, clear the registry.

        Returns:
            Number of sessions stopped plus orphaned containers removed
        """
        stopped = 0
        for session in self.registry.list():
            if session.status != SandboxStatus.STOPPED:
                self.stop(session.id)
                stopped += 1

        orphans: List[str] = []
        try:
            orphans = self.runtime.remove_orphans(keep=())
        except Exception:
            logger.warning("Could not remove orphaned sandbox containers", exc_info=True)

        self.registry.clear()
        with self._lock:
            self._cancel_events.clear()
            self._futures.clear()
        logger.info("Cleanup stopped %d sandboxes and removed %d orphans", stopped, len(orphans))
        return stopped + len(orphans)

    def shutdown(self) -> None:
        """Clean up everything and stop the provisioning pool."""
        self.stop_reaper()
        self.cleanup()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "SandboxManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _ports_in_use(self) -> List[int]:
        """
        Ports backed by live workloads, used by port reconciliation.

        A CREATING session owns its lease before the port is recorded on the
        session, so leases are matched by owner as well.
        """
        provisioning = set(self.registry.provisioning_ids())
        leased = [port for port, owner in self.allocator.leases().items() if owner in provisioning]
        return list(self.runtime.managed_ports()) + self.registry.provisioning_ports() + leased

    def wait(self, session_id: str, timeout: Optional[float] = None) -> SandboxSession:
        """Block until a session's provisioning job has finished."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.registry.get(session_id)
