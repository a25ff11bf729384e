"""
Readiness Probe - Decide when a sandbox's dev server is actually serving.

A container being "running" is not enough: dependencies may still be
compiling, the server may be crash-looping under the restart policy, or it
may have exited with an error. The probe watches container state, waits for
the framework's ready marker in the logs and then confirms over HTTP.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from preview_sandbox.config import Config, get_config
from preview_sandbox.schemas import Framework, normalize_framework
from preview_sandbox.sandbox.errors import (
    HealthCheckTimeout,
    ProbeCancelled,
    RestartLoopDetected,
    RuntimeCrash,
)
from preview_sandbox.sandbox.runtime import ContainerRuntime
from preview_sandbox.utils import tail_text

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Log lines printed by each dev server once it accepts requests (case-insensitive)
READY_MARKERS = {
    Framework.NEXTJS: ("Ready in", "started server on"),
    Framework.REACT: ("ready in", "Local:"),
    Framework.VUE: ("ready in", "Local:"),
    Framework.VANILLA: ("ready in", "Local:"),
}

# Log lines scanned for the marker on each poll
MARKER_LOG_TAIL = 200


def _event_wait(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


@dataclass
class ProbeResult:
    """Outcome of a successful readiness check."""
    logs: str
    restart_count: int
    elapsed: float


def marker_seen(logs: str, framework) -> bool:
    """Check whether the framework's ready marker appears in the logs."""
    if not logs:
        return False
    haystack = logs.lower()
    markers = READY_MARKERS.get(normalize_framework(framework), READY_MARKERS[Framework.VANILLA])
    return any(marker.lower() in haystack for marker in markers)


class ReadinessProbe:
    """
    Polls a container until its dev server answers, fails, or times out.

    `clock` and `wait` are injectable so tests can run on a fake clock;
    `wait(event, seconds)` must return True when the event was set.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[threading.Event, float], bool] = _event_wait,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        config = config or get_config()
        self.runtime = runtime
        self.timeout = config.ready_timeout
        self.interval = config.probe_interval
        self.restart_threshold = config.restart_threshold
        self.http_attempts = config.http_attempts
        self.http_timeout = config.http_timeout
        self.http_pause = config.http_pause
        self.clock = clock
        self.wait = wait
        self.transport = transport

    def await_ready(
        self,
        container_ref: str,
        url: str,
        framework,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ProbeResult:
        """
        Block until the dev server behind `url` is ready.

        Args:
            container_ref: Container to watch
            url: Host URL the dev server is published on
            framework: Framework whose ready marker to look for
            timeout: Overall budget in seconds (defaults to the configured one)
            cancel: Event that aborts the wait when set

        Returns:
            ProbeResult with the log tail and restarts seen while waiting

        Raises:
            RuntimeCrash: The container exited, died or vanished
            RestartLoopDetected: Restarts during the probe exceeded the threshold
            HealthCheckTimeout: Not ready within the timeout
            ProbeCancelled: `cancel` was set
        """
        cancel = cancel or threading.Event()
        timeout = self.timeout if timeout is None else timeout
        started = self.clock()
        deadline = started + timeout
        baseline: Optional[int] = None
        logs = ""

        while True:
            if cancel.is_set():
                raise ProbeCancelled("Provisioning was cancelled")

            state = self.runtime.inspect(container_ref)
            if baseline is None:
                baseline = state.restart_count
            restarts = max(0, state.restart_count - baseline)

            if state.is_terminal:
                logs = self._logs(container_ref)
                if state.state == "missing":
                    message = "Container disappeared before the app became ready"
                else:
                    message = f"Container exited with code {state.exit_code} before the app became ready"
                    if state.error:
                        message += f": {state.error}"
                raise RuntimeCrash(message, exit_code=state.exit_code, logs=tail_text(logs))

            if state.state in ("running", "restarting") and restarts > self.restart_threshold:
                logs = self._logs(container_ref)
                raise RestartLoopDetected(restarts, logs=tail_text(logs))

            if state.is_running:
                logs = self._logs(container_ref)
                if marker_seen(logs, framework):
                    logger.debug("Ready marker seen for %s, checking %s", container_ref, url)
                    if self._http_ready(url, cancel, deadline):
                        elapsed = self.clock() - started
                        logger.info("App at %s ready after %.1fs", url, elapsed)
                        return ProbeResult(logs=tail_text(logs), restart_count=restarts, elapsed=elapsed)

            remaining = deadline - self.clock()
            if remaining <= 0:
                if not logs:
                    logs = self._logs(container_ref)
                raise HealthCheckTimeout(timeout, logs=tail_text(logs))

            if self.wait(cancel, min(self.interval, remaining)):
                raise ProbeCancelled("Provisioning was cancelled")

    def _logs(self, container_ref: str) -> str:
        return self.runtime.logs(container_ref, tail=MARKER_LOG_TAIL)

    def _http_ready(self, url: str, cancel: threading.Event, deadline: float) -> bool:
        """
        Up to `http_attempts` GETs; any non-error response counts as ready.

        Request timeouts and pauses are cut to what is left before `deadline`.
        """
        with httpx.Client(timeout=self.http_timeout, transport=self.transport) as client:
            for attempt in range(1, self.http_attempts + 1):
                remaining = deadline - self.clock()
                if remaining <= 0:
                    break
                try:
                    response = client.get(url, timeout=min(self.http_timeout, remaining))
                    if not response.is_error:
                        return True
                    logger.debug("HTTP check %d on %s returned %d", attempt, url, response.status_code)
                except httpx.HTTPError as e:
                    logger.debug("HTTP check %d on %s failed: %s", attempt, url, e)

                if attempt == self.http_attempts:
                    break
                pause = min(self.http_pause, deadline - self.clock())
                if pause <= 0:
                    break
                if self.wait(cancel, pause):
                    raise ProbeCancelled("Provisioning was cancelled")
        return False

    def check_url(self, url: str) -> Dict:
        """Single HTTP check for diagnostics."""
        try:
            with httpx.Client(timeout=self.http_timeout, transport=self.transport) as client:
                response = client.get(url)
            return {
                "accessible": not response.is_error,
                "status_code": response.status_code,
                "error": None,
            }
        except httpx.HTTPError as e:
            return {"accessible": False, "status_code": None, "error": str(e) or type(e).__name__}
