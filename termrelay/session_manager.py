from __future__ import annotations

import asyncio
import logging
import random
import string
from typing import Hashable

from termrelay.config import AppConfig
from termrelay.models import EventKind, SessionEvent, SessionInfo, SessionStatus
from termrelay.output_engine import OutputEngine
from termrelay.parsing.strategies import build_strategies
from termrelay.process_session import EventCallback, ProcessSession, SpawnFactory
from termrelay.shell_process import spawn_shell

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_lowercase + string.digits
ID_LENGTH = 3


class SessionError(Exception):
    """Raised when a session operation fails."""

    pass


class SessionManager:
    """Own every running session, keyed by session id.

    Callers only ever hold session ids. Subscriptions and each user's
    active-session pointer are stored as ids and resolved through the
    session map, so a removed session simply stops resolving.
    """

    def __init__(
        self,
        config: AppConfig,
        engine: OutputEngine | None = None,
        spawn: SpawnFactory = spawn_shell,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Application configuration.
            engine: Output engine shared by all sessions. Built from
                ``config.strategies`` when omitted.
            spawn: Factory that creates and starts a shell process.
        """
        self._config = config
        self._engine = engine or OutputEngine(build_strategies(config.strategies))
        self._spawn = spawn
        self._sessions: dict[str, ProcessSession] = {}
        # Ids being spawned, counted against the limit
        self._reserved: set[str] = set()
        # {session_id or None (global): [callback]}
        self._subscribers: dict[str | None, list[EventCallback]] = {}
        # {user_id: session_id}
        self._active: dict[Hashable, str] = {}

    @property
    def engine(self) -> OutputEngine:
        return self._engine

    def _generate_id(self) -> str:
        while True:
            candidate = "".join(random.choices(ID_ALPHABET, k=ID_LENGTH))
            if candidate not in self._sessions and candidate not in self._reserved:
                return candidate

    def _require(self, session_id: str) -> ProcessSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(f"Session {session_id} not found")
        return session

    async def create_session(
        self, session_id: str | None = None, user_id: Hashable | None = None
    ) -> SessionInfo:
        """Spawn a new shell and register the session.

        Args:
            session_id: Custom id; a random 3-character id when omitted.
            user_id: When given, the new session becomes this user's
                active session.

        Returns:
            The read model of the new session.

        Raises:
            SessionError: If the session limit is reached or the id is taken.
            SpawnError: If the shell could not be started. Nothing is
                registered in that case.
        """
        limit = self._config.sessions.max_sessions
        # Check limit before spawning to avoid orphaned processes on rejection
        if len(self._sessions) + len(self._reserved) >= limit:
            raise SessionError(f"Session limit reached ({limit}). Kill a session first.")
        if session_id is not None:
            session_id = session_id.strip()
            if not session_id:
                raise SessionError("Session id must not be empty")
            if session_id in self._sessions or session_id in self._reserved:
                raise SessionError(f"Session {session_id} already exists")
        else:
            session_id = self._generate_id()

        logger.debug("create_session id=%s user_id=%s", session_id, user_id)
        session = ProcessSession(
            session_id, self._config, self._engine, self._dispatch, spawn=self._spawn
        )
        self._reserved.add(session_id)
        try:
            await session.start()
        finally:
            self._reserved.discard(session_id)

        if session.status is SessionStatus.TERMINATED:
            raise SessionError(f"Session {session_id} exited during startup")
        self._sessions[session_id] = session
        if user_id is not None:
            self._active[user_id] = session_id
        return session.info()

    async def execute(self, session_id: str, command: str) -> bool:
        """Send a command to a session. See :meth:`ProcessSession.execute`.

        Raises:
            SessionError: If the session does not exist.
        """
        return await self._require(session_id).execute(command)

    async def send_choice(self, session_id: str, number: int) -> bool:
        return await self._require(session_id).send_choice(number)

    async def kill_session(self, session_id: str) -> bool:
        """Stop a session and forget it.

        Raises:
            SessionError: If the session does not exist.
        """
        logger.debug("kill_session id=%s", session_id)
        session = self._require(session_id)
        killed = await session.kill()
        self._remove(session.session_id)
        return killed

    def rename_session(self, session_id: str, new_id: str) -> None:
        """Give a session a new id, carrying subscriptions and active pointers.

        Raises:
            SessionError: If the session does not exist or ``new_id`` is
                empty or taken.
        """
        new_id = new_id.strip()
        session = self._require(session_id)
        if not new_id:
            raise SessionError("Session id must not be empty")
        if new_id in self._sessions or new_id in self._reserved:
            raise SessionError(f"Session {new_id} already exists")
        del self._sessions[session_id]
        session.session_id = new_id
        self._sessions[new_id] = session
        if session_id in self._subscribers:
            self._subscribers[new_id] = self._subscribers.pop(session_id)
        for user_id, active_id in self._active.items():
            if active_id == session_id:
                self._active[user_id] = new_id
        logger.info("Session %s renamed to %s", session_id, new_id)

    def get_session(self, session_id: str) -> SessionInfo | None:
        session = self._sessions.get(session_id)
        return session.info() if session is not None else None

    def get_screen(self, session_id: str) -> str:
        """Return the rendered terminal screen of a session.

        Raises:
            SessionError: If the session does not exist.
        """
        return self._require(session_id).screen()

    def list_sessions(self) -> list[SessionInfo]:
        return [session.info() for session in self._sessions.values()]

    def subscribe(self, callback: EventCallback, session_id: str | None = None) -> None:
        """Register ``callback`` for one session's events, or all when None."""
        self._subscribers.setdefault(session_id, []).append(callback)

    def unsubscribe(self, callback: EventCallback, session_id: str | None = None) -> bool:
        callbacks = self._subscribers.get(session_id, [])
        if callback not in callbacks:
            return False
        callbacks.remove(callback)
        if not callbacks:
            self._subscribers.pop(session_id, None)
        return True

    def set_active(self, user_id: Hashable, session_id: str) -> None:
        """Make ``session_id`` the session a user's plain input goes to.

        Raises:
            SessionError: If the session does not exist.
        """
        self._require(session_id)
        self._active[user_id] = session_id

    def get_active_session(self, user_id: Hashable) -> SessionInfo | None:
        active_id = self._active.get(user_id)
        if active_id is None:
            return None
        return self.get_session(active_id)

    def _dispatch(self, event: SessionEvent) -> None:
        callbacks = [
            *self._subscribers.get(event.session_id, ()),
            *self._subscribers.get(None, ()),
        ]
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s event of session %s",
                    callback, event.kind.value, event.session_id,
                )
        if event.kind is EventKind.TERMINATED:
            self._remove(event.session_id)

    def _remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._subscribers.pop(session_id, None)
        for user_id in [u for u, s in self._active.items() if s == session_id]:
            del self._active[user_id]

    async def shutdown(self) -> None:
        """Kill every session. Used on application shutdown."""
        sessions = list(self._sessions.values())
        logger.info("Shutting down %d session(s)", len(sessions))
        await asyncio.gather(*(session.kill() for session in sessions))
        self._sessions.clear()
        self._subscribers.clear()
        self._active.clear()

    def has_active_sessions(self) -> bool:
        return bool(self._sessions)

    def active_session_count(self) -> int:
        """Return the number of live sessions."""
        return len(self._sessions)
