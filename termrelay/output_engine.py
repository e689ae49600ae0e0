from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

from termrelay.log_setup import TRACE
from termrelay.models import EmittedRecord
from termrelay.parsing.sanitizer import sanitize, strip_control_sequences
from termrelay.parsing.strategies import (
    OutputStrategy,
    build_strategies,
    collapse_blank_lines,
)

logger = logging.getLogger(__name__)


class SessionBuffer:
    """Pending output of one session between two flushes.

    Every attribute is guarded by ``lock``; the stream reader and the idle
    poller of the owning session both go through :class:`OutputEngine`,
    which takes the lock for the whole read-decide-flush sequence.
    """

    def __init__(self, now: float) -> None:
        self.lock = threading.Lock()
        self.text: str = ""
        self.command: str | None = None
        self.in_flight: bool = False
        self.strategy: OutputStrategy | None = None
        self.history: list[str] = []
        self.last_update: float = now

    def append(self, text: str, now: float) -> None:
        """Add a cleaned chunk on its own line and reset the idle timer."""
        self.text = f"{self.text}\n{text}" if self.text else text
        self.last_update = now
        logger.log(TRACE, "SessionBuffer append len=%d total=%d", len(text), len(self.text))

    def take(self, upto: int | None = None) -> str:
        """Remove and return the first ``upto`` characters, all when None."""
        if upto is None:
            upto = len(self.text)
        result, self.text = self.text[:upto], self.text[upto:]
        return result


class OutputEngine:
    """Turn raw per-session output into discrete, cleaned records.

    Each chunk is sanitized, appended to the session's buffer and shown to
    the session's :class:`OutputStrategy`, which decides whether the buffer
    now holds a complete message. :meth:`check_idle` flushes buffers that
    went quiet without the strategy ever saying so.

    A flush reads and clears the buffer under the session lock, so two
    racing flush attempts never emit the same content twice. Sessions do
    not share locks.
    """

    def __init__(
        self,
        strategies: Sequence[OutputStrategy] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine.

        Args:
            strategies: Strategies in precedence order, catch-all last.
                Defaults to :func:`build_strategies`.
            clock: Monotonic time source in seconds.
        """
        self._strategies = tuple(strategies) if strategies is not None else build_strategies()
        if not self._strategies:
            raise ValueError("OutputEngine needs at least one strategy")
        self._clock = clock
        self._buffers: dict[str, SessionBuffer] = {}
        self._registry_lock = threading.Lock()

    @property
    def strategies(self) -> tuple[OutputStrategy, ...]:
        return self._strategies

    def _get_buffer(self, session_id: str, create: bool = True) -> SessionBuffer | None:
        with self._registry_lock:
            buffer = self._buffers.get(session_id)
            if buffer is None and create:
                buffer = SessionBuffer(self._clock())
                self._buffers[session_id] = buffer
            return buffer

    def _select(self, session_id: str, buffer: SessionBuffer, output: str) -> OutputStrategy:
        for strategy in self._strategies:
            if strategy.can_handle(session_id, buffer.command or "", output, buffer.history):
                return strategy
        return self._strategies[-1]

    def _resolve_strategy(
        self, session_id: str, buffer: SessionBuffer, output: str
    ) -> OutputStrategy:
        current = buffer.strategy
        if current is not None:
            rival = any(
                s is not current and s.has_strong_signature(output)
                for s in self._strategies
            )
            if not rival:
                return current
            logger.debug("Session %s: strong signature seen, re-selecting strategy", session_id)
        chosen = self._select(session_id, buffer, output)
        if chosen is not current:
            logger.info("Session %s: using %s output strategy", session_id, chosen.name)
        buffer.strategy = chosen
        return chosen

    def start_command(self, session_id: str, command: str) -> None:
        """Reset the session's buffer for a newly submitted command.

        Args:
            session_id: Session the command is written to.
            command: The command text as typed by the user.
        """
        buffer = self._get_buffer(session_id)
        with buffer.lock:
            buffer.text = ""
            buffer.command = command
            buffer.in_flight = True
            buffer.history.append(command)
            buffer.last_update = self._clock()
        logger.debug("Session %s: started command %r", session_id, command)

    def feed(self, session_id: str, raw: str | bytes) -> EmittedRecord | None:
        """Process one raw chunk of output.

        Args:
            session_id: Session the chunk was read from.
            raw: Raw output, bytes are decoded as UTF-8 with replacement.

        Returns:
            An EmittedRecord when the chunk completed a message, else None.
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if not raw:
            return None
        buffer = self._get_buffer(session_id)
        with buffer.lock:
            strategy = self._resolve_strategy(session_id, buffer, raw)
            plain = strip_control_sequences(raw)
            cleaned = sanitize(
                raw,
                last_command=buffer.command,
                ignore_line=strategy.should_ignore_line,
            )
            if not cleaned:
                # A chunk with nothing to show can still close a pending response
                if buffer.text and strategy.should_flush("", buffer.text, raw_chunk=plain):
                    return self._flush(session_id, buffer, strategy)
                return None
            buffer.append(cleaned, self._clock())
            buffer.in_flight = True
            should_flush = strategy.should_flush(cleaned, buffer.text, raw_chunk=plain)
            logger.debug(
                "Session %s: strategy=%s flush=%s buffer_len=%d",
                session_id, strategy.name, should_flush, len(buffer.text),
            )
            if should_flush:
                upto = strategy.flush_boundary(buffer.text, raw_chunk=plain)
                return self._flush(session_id, buffer, strategy, upto)
            return None

    def check_idle(self, session_id: str, poll_interval: float = 0.0) -> EmittedRecord | None:
        """Force a flush when the session's buffer has gone quiet.

        The buffer is flushed when output is in flight, the buffer is not
        empty, and nothing arrived for longer than the active strategy's
        idle timeout (or ``poll_interval``, whichever is longer).

        Args:
            session_id: Session to check.
            poll_interval: Seconds between two calls from the scheduler.

        Returns:
            The forced EmittedRecord, or None when nothing was due.
        """
        buffer = self._get_buffer(session_id, create=False)
        if buffer is None:
            return None
        with buffer.lock:
            if not buffer.in_flight or not buffer.text:
                return None
            strategy = buffer.strategy or self._resolve_strategy(session_id, buffer, buffer.text)
            threshold = max(strategy.idle_timeout, poll_interval)
            idle_for = self._clock() - buffer.last_update
            if idle_for <= threshold:
                return None
            logger.debug(
                "Session %s: idle for %.2fs (> %.2fs), forcing flush",
                session_id, idle_for, threshold,
            )
            return self._flush(session_id, buffer, strategy)

    def _flush(
        self,
        session_id: str,
        buffer: SessionBuffer,
        strategy: OutputStrategy,
        upto: int | None = None,
    ) -> EmittedRecord | None:
        content = buffer.take(upto)
        # A held-back remainder is still waiting for its own flush
        buffer.in_flight = bool(buffer.text)
        if buffer.text:
            logger.debug("Session %s: kept %d chars for the next flush", session_id, len(buffer.text))
        content = collapse_blank_lines(content.strip())
        if not content:
            return None
        text = strategy.post_process(content)
        if not text.strip():
            logger.debug("Session %s: flush produced no text after post-processing", session_id)
            return None
        logger.info("Session %s: flushed %d chars", session_id, len(text))
        return EmittedRecord(session_id=session_id, text=text, command=buffer.command)

    def cleanup(self, session_id: str) -> None:
        """Release all state held for a session. Safe to call repeatedly."""
        with self._registry_lock:
            buffer = self._buffers.pop(session_id, None)
        if buffer is not None:
            with buffer.lock:
                buffer.take()
                buffer.strategy = None
        for strategy in self._strategies:
            strategy.forget(session_id)
        logger.debug("Session %s: output state cleaned up", session_id)

    def pending(self, session_id: str) -> str:
        """Return the not-yet-flushed text of a session without clearing it."""
        buffer = self._get_buffer(session_id, create=False)
        if buffer is None:
            return ""
        with buffer.lock:
            return buffer.text

    def strategy_for(self, session_id: str) -> OutputStrategy | None:
        """Return the sticky strategy of a session, if one was chosen."""
        buffer = self._get_buffer(session_id, create=False)
        return buffer.strategy if buffer is not None else None
