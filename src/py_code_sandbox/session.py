"""Session bookkeeping.

A Session records which strategy it runs with, the container currently
bound to it (if any) and every container that served it before. It owns a
FIFO lock that serializes executions of PER_SESSION sessions and the set of
execution tasks that cancel_execution() can reach.

SessionManager only keeps the books. Creating and destroying containers is
the engine's job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from py_code_sandbox.config import SessionConfig
from py_code_sandbox.containers.handle import ContainerHandle, ContainerMeta
from py_code_sandbox.errors import SessionClosedError, SessionNotFoundError
from py_code_sandbox.types import ContainerStrategy

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Live state of one session."""

    session_id: str
    config: SessionConfig
    workspace_dir: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_executed_at: datetime | None = None
    is_active: bool = True
    current_container: ContainerHandle | None = None
    container_history: list[ContainerMeta] = field(default_factory=list)
    generated_files: set[str] = field(default_factory=set)
    # asyncio.Lock wakes waiters in arrival order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)

    @property
    def strategy(self) -> ContainerStrategy:
        return self.config.strategy

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionClosedError(self.session_id)


@dataclass(frozen=True)
class SessionInfo:
    """Point-in-time snapshot of a session, safe to hand to callers."""

    session_id: str
    strategy: ContainerStrategy
    is_active: bool
    created_at: datetime
    last_executed_at: datetime | None
    workspace_dir: str
    current_container: dict[str, Any] | None
    container_history: list[dict[str, Any]]
    generated_files: list[str]
    pending_executions: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "strategy": self.strategy.value,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_executed_at": (
                self.last_executed_at.isoformat() if self.last_executed_at else None
            ),
            "workspace_dir": self.workspace_dir,
            "current_container": self.current_container,
            "container_history": list(self.container_history),
            "generated_files": list(self.generated_files),
            "pending_executions": self.pending_executions,
        }


class SessionManager:
    """In-memory registry of sessions, keyed by session id."""

    def __init__(self, workspace_root: Path, default_strategy: ContainerStrategy) -> None:
        self._workspace_root = Path(workspace_root)
        self._default_strategy = default_strategy
        self._sessions: dict[str, Session] = {}

    def workspace_for(self, session_id: str) -> Path:
        return self._workspace_root / "sessions" / session_id

    def executions_dir_for(self, session_id: str) -> Path:
        """Parent of the session's PER_EXECUTION workspaces, removed on cleanup."""
        return self._workspace_root / "executions" / session_id

    def create(self, config: SessionConfig) -> Session:
        """Register a session for config.

        Returns the existing session when config names an active one; an
        inactive (cleaned up) session of that id is replaced. Replacing an
        active session on enforce_new_session is the caller's job, since the
        old one has containers to tear down first.
        """
        session_id = config.session_id or uuid.uuid4().hex
        existing = self._sessions.get(session_id)
        if existing is not None and existing.is_active:
            return existing

        workspace = self.workspace_for(session_id)
        workspace.mkdir(parents=True, exist_ok=True)
        session = Session(session_id=session_id, config=config, workspace_dir=workspace)
        self._sessions[session_id] = session
        logger.info(f"Created session {session_id} ({session.strategy.value})")
        return session

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    def get_or_create(self, session_id: str) -> Session:
        """Return the session, creating one with the default strategy if unknown."""
        if session_id in self._sessions:
            return self._sessions[session_id]
        return self.create(SessionConfig(strategy=self._default_strategy, session_id=session_id))

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def bind(self, session: Session, handle: ContainerHandle) -> None:
        """Make handle the session's current container."""
        session.current_container = handle

    def retire_container(self, session: Session, handle: ContainerHandle) -> None:
        """Move handle into the session's history. History is append-only."""
        if session.current_container is handle:
            session.current_container = None
        session.container_history.append(handle.meta)

    def unbind(self, session: Session, handle: ContainerHandle) -> None:
        """Drop a borrowed container without retiring it."""
        if session.current_container is handle:
            session.current_container = None

    def borrowed_meta(self, session: Session, handle: ContainerHandle) -> ContainerMeta:
        """The session's own record of a pooled container.

        A pooled container outlives the borrow and serves other sessions, so
        history gets a copy holding only this session's files, added the
        first time the session borrows that container.
        """
        for meta in session.container_history:
            if meta.container_id == handle.id:
                return meta
        meta = replace(handle.meta, session_generated_files=set())
        session.container_history.append(meta)
        return meta

    def info(self, session_id: str) -> SessionInfo:
        session = self.get(session_id)
        current = session.current_container
        return SessionInfo(
            session_id=session.session_id,
            strategy=session.strategy,
            is_active=session.is_active,
            created_at=session.created_at,
            last_executed_at=session.last_executed_at,
            workspace_dir=str(session.workspace_dir),
            current_container=current.meta.to_dict() if current is not None else None,
            container_history=[meta.to_dict() for meta in session.container_history],
            generated_files=sorted(session.generated_files),
            pending_executions=sum(1 for t in session.tasks if not t.done()),
        )

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

    def active_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if s.is_active]
