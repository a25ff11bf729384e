"""
Session Registry - Track sandbox sessions and their lifecycle.

Responsibilities:
- Store session records and the request each one was created from
- Enforce one active (CREATING/RUNNING) session per project
- Hand out copies so callers never mutate registry state
- Apply status transitions atomically
"""

import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from preview_sandbox.schemas import Framework, SandboxRequest
from preview_sandbox.sandbox.errors import SessionNotFound


# =============================================================================
# DATA CLASSES
# =============================================================================

class SandboxStatus(str, Enum):
    """Lifecycle states of a sandbox session."""
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


ACTIVE_STATUSES = (SandboxStatus.CREATING, SandboxStatus.RUNNING)


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class SandboxSession:
    """One live or historical sandbox."""
    id: str
    project_ref: str
    framework: Framework
    status: SandboxStatus = SandboxStatus.CREATING
    port: Optional[int] = None
    container_ref: Optional[str] = None
    image_ref: Optional[str] = None
    url: Optional[str] = None  # Set only while RUNNING
    restart_count: int = 0
    created_at: str = ""  # ISO format
    updated_at: str = ""
    expires_at: Optional[str] = None
    error: Optional[str] = None
    logs: Optional[str] = None
    work_dir: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["framework"] = self.framework.value
        return data

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_expired(self) -> bool:
        """Check if the session has outlived its TTL."""
        if not self.expires_at:
            return False
        return datetime.now() > datetime.fromisoformat(self.expires_at)

    def time_remaining(self) -> int:
        """Get remaining time in seconds."""
        if not self.expires_at:
            return 0
        remaining = (datetime.fromisoformat(self.expires_at) - datetime.now()).total_seconds()
        return max(0, int(remaining))

    def time_remaining_formatted(self) -> str:
        """Get remaining time as formatted string."""
        seconds = self.time_remaining()
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}m {secs}s"


def new_session(session_id: str, request: SandboxRequest, ttl_minutes: int, work_dir: Optional[str] = None) -> SandboxSession:
    """Build a CREATING session for a validated request."""
    now = datetime.now()
    return SandboxSession(
        id=session_id,
        project_ref=request.project_ref,
        framework=request.framework,
        status=SandboxStatus.CREATING,
        created_at=now.isoformat(),
        updated_at=now.isoformat(),
        expires_at=(now + timedelta(minutes=ttl_minutes)).isoformat(),
        work_dir=work_dir,
    )


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class SessionRegistry:
    """
    In-memory session store.

    Every mutation holds one re-entrant lock, which makes check-then-insert
    for a project and conditional status transitions atomic.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, SandboxSession] = {}
        self._requests: Dict[str, SandboxRequest] = {}
        self._active_by_project: Dict[str, str] = {}

    def claim(
        self,
        request: SandboxRequest,
        factory: Callable[[SandboxRequest], SandboxSession],
    ) -> Tuple[SandboxSession, bool]:
        """
        Return the project's active session, or insert a new one.

        Returns:
            (session copy, True if a new session was created)
        """
        with self._lock:
            existing_id = self._active_by_project.get(request.project_ref)
            if existing_id is not None:
                existing = self._sessions.get(existing_id)
                if existing is not None and existing.is_active():
                    return replace(existing), False

            session = factory(request)
            self._sessions[session.id] = session
            self._requests[session.id] = request
            self._active_by_project[request.project_ref] = session.id
            return replace(session), True

    def get(self, session_id: str) -> SandboxSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            return replace(session)

    def request_for(self, session_id: str) -> SandboxRequest:
        """The request a session was created from."""
        with self._lock:
            if session_id not in self._requests:
                raise SessionNotFound(session_id)
            return self._requests[session_id]

    def transition(
        self,
        session_id: str,
        expected: Optional[Iterable[SandboxStatus]] = None,
        **changes,
    ) -> Optional[SandboxSession]:
        """
        Apply `changes` if the session's status is one of `expected`.

        Returns:
            Updated copy, or None if the status did not match
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if expected is not None and session.status not in tuple(expected):
                return None
            for key, value in changes.items():
                if not hasattr(session, key):
                    raise AttributeError(f"SandboxSession has no field {key!r}")
                setattr(session, key, value)
            session.updated_at = _now()
            if session.status not in ACTIVE_STATUSES:
                self._release_project(session)
            return replace(session)

    def _release_project(self, session: SandboxSession) -> None:
        if self._active_by_project.get(session.project_ref) == session.id:
            del self._active_by_project[session.project_ref]

    def active_for(self, project_ref: str) -> Optional[SandboxSession]:
        with self._lock:
            session_id = self._active_by_project.get(project_ref)
            session = self._sessions.get(session_id) if session_id else None
            return replace(session) if session and session.is_active() else None

    def list(self) -> List[SandboxSession]:
        with self._lock:
            return [replace(session) for session in self._sessions.values()]

    def provisioning_ports(self) -> List[int]:
        """Ports held by sessions that are still being provisioned."""
        with self._lock:
            return [
                s.port for s in self._sessions.values()
                if s.status == SandboxStatus.CREATING and s.port is not None
            ]

    def provisioning_ids(self) -> List[str]:
        """Ids of sessions that are still being provisioned."""
        with self._lock:
            return [s.id for s in self._sessions.values() if s.status == SandboxStatus.CREATING]

    def evict_stopped(self, older_than: float) -> List[str]:
        """
        Forget STOPPED sessions, and their requests, last updated at least
        `older_than` seconds ago.

        Returns:
            Evicted session ids
        """
        cutoff = datetime.now() - timedelta(seconds=older_than)
        with self._lock:
            evicted = [
                s.id for s in self._sessions.values()
                if s.status == SandboxStatus.STOPPED
                and datetime.fromisoformat(s.updated_at) <= cutoff
            ]
            for session_id in evicted:
                del self._sessions[session_id]
                self._requests.pop(session_id, None)
            return evicted

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._requests.clear()
            self._active_by_project.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
