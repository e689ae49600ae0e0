from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from termrelay.config import AppConfig, InteractiveAppConfig, PaginationConfig, ShellConfig
from termrelay.log_setup import SessionLogAdapter
from termrelay.models import (
    EmittedRecord,
    EventKind,
    SessionEvent,
    SessionInfo,
    SessionStatus,
)
from termrelay.output_engine import OutputEngine
from termrelay.parsing.sanitizer import strip_control_sequences
from termrelay.parsing.screen_emulator import ScreenEmulator
from termrelay.shell_process import ShellProcess, StreamError, spawn_shell

logger = logging.getLogger(__name__)

# None stands for the process's own line terminator
CONTROL_COMMANDS: dict[str, str | None] = {
    "!enter": None,
    "!ctrlc": "\x03",
    "!ctrld": "\x04",
    "!tab": "\t",
    "!esc": "\x1b",
}

CHARACTER_SETTLE = 0.05
MIN_CHARACTER_DELAY = 0.02
AUTO_SELECT_DELAY = 0.5

_ENGINE_KEYS = itertools.count(1)

_CHOICE_MARKERS = ("Choose an option:", "Select from:")
_ERROR_KEYWORDS = (
    "error",
    "failed",
    "exception",
    "not found",
    "permission denied",
    "no such file",
    "command not found",
    "syntax error",
    "fatal:",
    "panic:",
    "traceback",
)
_NON_ERROR_PREFIXES = ("info", "debug")

EventCallback = Callable[[SessionEvent], None]
SpawnFactory = Callable[[ShellConfig], Awaitable[ShellProcess]]


def is_actual_error(text: str, last_command: str | None = None) -> bool:
    """Decide whether a stderr chunk is worth reporting as an error.

    Shells in interactive mode write prompts, echoes and job notices to
    stderr. Only text carrying a known failure keyword is an error; echoes of
    the last command, warnings, informational or debug lines and very short
    strings are not. Anything undecided counts as noise.

    Args:
        text: Stderr text with control sequences already removed.
        last_command: The command most recently written to the session.

    Returns:
        True only for text that clearly reports a failure.
    """
    clean = text.strip()
    if len(clean) < 3:
        return False
    if last_command and clean == last_command.strip():
        return False
    lowered = clean.lower()
    if "warning" in lowered or lowered.startswith(_NON_ERROR_PREFIXES):
        return False
    return any(keyword in lowered for keyword in _ERROR_KEYWORDS) or lowered.startswith("usage:")


def parse_choice_prompt(output: str) -> list[str]:
    """Return the options of a numbered choice prompt, or an empty list.

    A prompt is recognised by "Choose an option:", "Select from:" or by both
    ``[1]`` and ``[2]`` appearing; its options are the lines that start with
    a bracketed label.
    """
    if not (
        any(marker in output for marker in _CHOICE_MARKERS)
        or ("[1]" in output and "[2]" in output)
    ):
        return []
    return [
        line.strip()
        for line in output.split("\n")
        if line.strip().startswith("[") and "]" in line
    ]


class ProcessSession:
    """One interactive shell and the tasks that watch it.

    Three tasks run per session: a stdout reader, a stderr reader (only when
    the process has a separate stderr stream) and an idle poller. Readers
    push chunks through the shared :class:`OutputEngine`; everything worth
    reporting reaches ``on_event`` as a :class:`SessionEvent`. A stream that
    fails or closes is treated as process death and produces exactly one
    TERMINATED event.
    """

    def __init__(
        self,
        session_id: str,
        config: AppConfig,
        engine: OutputEngine,
        on_event: EventCallback,
        spawn: SpawnFactory = spawn_shell,
    ) -> None:
        """Initialize the session without starting a process.

        Args:
            session_id: Public identifier, changes when the manager renames the session.
            config: Application configuration.
            engine: Output engine shared by all sessions.
            on_event: Called synchronously with every event of this session.
            spawn: Factory that creates and starts the shell process.
        """
        self.session_id = session_id
        # Never a public id, so renames and id reuse cannot share engine state
        self._engine_key = f"{session_id}#{next(_ENGINE_KEYS)}"
        self._log = SessionLogAdapter(logger, lambda: self.session_id)
        self._config = config
        self._engine = engine
        self._on_event = on_event
        self._spawn = spawn
        self.process: ShellProcess | None = None
        self.status = SessionStatus.IDLE
        now = datetime.now(timezone.utc)
        self.started_at = now
        self.last_activity = now
        self.current_task: str | None = None
        self.command_history: list[str] = []
        self._emulator = ScreenEmulator()
        self._write_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._terminated = False
        self._killing = False

    async def start(self) -> None:
        """Spawn the shell and start the reader and idle tasks.

        Raises:
            SpawnError: If the shell could not be started.
        """
        self.process = await self._spawn(self._config.shell)
        self.started_at = datetime.now(timezone.utc)
        self.last_activity = self.started_at
        self._log.info("started pid=%s", self.process.pid)
        self._tasks.append(asyncio.create_task(
            self._read_loop("stdout", self.process.read_stdout, self._handle_stdout)
        ))
        if self.process.has_stderr:
            self._tasks.append(asyncio.create_task(
                self._read_loop("stderr", self.process.read_stderr, self._handle_stderr)
            ))
        self._tasks.append(asyncio.create_task(self._idle_loop()))
        self._emit(SessionEvent(EventKind.STARTED, self.session_id, text=self.process.command_line))

    @property
    def engine_key(self) -> str:
        """Key of this session's state in the output engine."""
        return self._engine_key

    def is_alive(self) -> bool:
        return self.process is not None and not self._terminated and self.process.is_alive()

    def _touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)

    def _emit(self, event: SessionEvent) -> None:
        self._on_event(event)

    def _emit_record(self, record: EmittedRecord) -> None:
        if record.session_id != self.session_id:
            record = dataclasses.replace(record, session_id=self.session_id)
        if self.status is SessionStatus.RUNNING:
            self.status = SessionStatus.IDLE
        self._emit(SessionEvent(EventKind.OUTPUT, self.session_id, text=record.text, record=record))

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def find_interactive_app(self) -> InteractiveAppConfig | None:
        """Return the configured interactive app this session is running, if any.

        Keywords are matched against the command history and the current task.
        """
        text = " ".join(self.command_history)
        if self.current_task:
            text = f"{text} {self.current_task}"
        for app in self._config.interactive_apps:
            if app.matches(text):
                return app
        return None

    async def execute(self, command: str) -> bool:
        """Write a command or a control keystroke to the shell.

        Args:
            command: Command text, or one of the ``!enter``, ``!ctrlc``,
                ``!ctrld``, ``!tab``, ``!esc`` control commands.

        Returns:
            True if the input was written, False if the session is not
            running or the write failed.
        """
        if not self.is_alive():
            self._log.warning("execute on a session that is not running")
            return False

        control = command.strip().lower()
        if control in CONTROL_COMMANDS:
            key = CONTROL_COMMANDS[control]
            data = self.process.newline if key is None else key
            self._log.debug("control %s", control)
            try:
                async with self._write_lock:
                    await self.process.write(data)
            except StreamError as exc:
                self._log.error("control write failed: %s", exc)
                return False
            self._touch()
            return True

        # Detection looks at earlier commands only
        app = self.find_interactive_app()
        self._engine.start_command(self._engine_key, command)
        try:
            await self._deliver(command, app)
        except StreamError as exc:
            self._log.error("write failed: %s", exc)
            return False

        self._touch()
        self.status = SessionStatus.RUNNING
        self.command_history.append(command)
        self.current_task = command
        return True

    async def _deliver(self, command: str, app: InteractiveAppConfig | None) -> None:
        method = app.input_method if app is not None else "direct"
        newline = self.process.newline
        async with self._write_lock:
            if method == "character":
                delay = max(app.character_delay_ms / 1000.0, MIN_CHARACTER_DELAY)
                self._log.debug(
                    "typing %d chars for %s, delay=%.3fs", len(command), app.name, delay,
                )
                await asyncio.sleep(CHARACTER_SETTLE)
                for char in command:
                    await self.process.write(char)
                    await asyncio.sleep(delay)
                await asyncio.sleep(CHARACTER_SETTLE)
                await self.process.write(newline)
            elif method == "with_delay":
                await self.process.write(command)
                await asyncio.sleep(app.character_delay_ms / 1000.0)
                await self.process.write(newline)
            else:
                await self.process.write(command + newline)
        if method == "character" and app.pagination.enabled:
            self._spawn_background(self._paginate(app.pagination))

    async def _paginate(self, pagination: PaginationConfig) -> None:
        for attempt in range(pagination.max_attempts):
            await asyncio.sleep(pagination.delay_ms / 1000.0)
            try:
                async with self._write_lock:
                    await self.process.write(self.process.newline)
            except StreamError as exc:
                self._log.debug("pagination stopped: %s", exc)
                return
            self._log.debug("pagination keystroke %d", attempt + 1)

    async def send_choice(self, number: int) -> bool:
        """Answer a pending choice prompt with option ``number``."""
        if self.status is not SessionStatus.WAITING_FOR_INPUT:
            self._log.debug("no choice pending")
            return False
        return await self.execute(str(number))

    async def _auto_select(self) -> None:
        await asyncio.sleep(AUTO_SELECT_DELAY)
        self._log.info("auto-selecting option 1")
        await self.send_choice(1)

    def _handle_stdout(self, chunk: str) -> None:
        self._touch()
        self._emulator.feed(chunk)
        options = parse_choice_prompt(strip_control_sequences(chunk))
        if options:
            self.status = SessionStatus.WAITING_FOR_INPUT
            self._log.info("choice prompt with %d options", len(options))
            self._emit(SessionEvent(
                EventKind.QUESTION, self.session_id, text=chunk, options=tuple(options),
            ))
            if self._config.sessions.auto_select_first_option:
                self._spawn_background(self._auto_select())
            return
        record = self._engine.feed(self._engine_key, chunk)
        if record is not None:
            self._emit_record(record)

    def _handle_stderr(self, chunk: str) -> None:
        self._touch()
        text = strip_control_sequences(chunk).strip()
        last_command = self.command_history[-1] if self.command_history else None
        if is_actual_error(text, last_command):
            self._log.debug("stderr error: %s", text[:200])
            self._emit(SessionEvent(EventKind.ERROR, self.session_id, text=text))
        else:
            self._log.debug("ignoring stderr: %s", text[:200])

    async def _read_loop(
        self,
        name: str,
        read: Callable[[], Awaitable[str]],
        handle: Callable[[str], None],
    ) -> None:
        try:
            while True:
                chunk = await read()
                if not chunk:
                    self._log.info("%s closed", name)
                    break
                self._log.trace("%s chunk len=%d", name, len(chunk))
                handle(chunk)
        except StreamError as exc:
            self._log.warning("%s read failed: %s", name, exc)
        except Exception:
            self._log.exception("error handling %s", name)
        await self._finish(f"{name} closed")

    async def _idle_loop(self) -> None:
        interval = self._config.sessions.idle_poll_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                record = self._engine.check_idle(self._engine_key, interval)
                if record is not None:
                    self._emit_record(record)
            except Exception:
                self._log.exception("idle check failed")

    async def _finish(self, reason: str) -> None:
        if self._terminated:
            return
        self._terminated = True
        self.status = SessionStatus.TERMINATED
        current = asyncio.current_task()
        pending = [t for t in (*self._tasks, *self._background) if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self.process is not None and self.process.is_alive():
            try:
                await self.process.terminate()
            except (StreamError, OSError) as exc:
                self._log.warning("could not stop process: %s", exc)
        self._engine.cleanup(self._engine_key)
        exit_code = self.process.exit_code() if self.process is not None else None
        self._log.info("terminated (%s) exit_code=%s", reason, exit_code)
        self._emit(SessionEvent(EventKind.TERMINATED, self.session_id, text=reason))

    async def kill(self) -> bool:
        """Stop the shell: interrupt, wait for the grace period, then force.

        Returns:
            True if this call stopped the session, False if it was already
            terminated or being killed.
        """
        if self._terminated or self._killing:
            return False
        self._killing = True
        self._log.info("killing")
        if self.process is not None:
            try:
                await self.process.interrupt()
            except (StreamError, OSError) as exc:
                self._log.debug("interrupt failed: %s", exc)
            await asyncio.sleep(self._config.sessions.kill_grace_ms / 1000.0)
            if self.process.is_alive():
                try:
                    await self.process.terminate()
                except (StreamError, OSError) as exc:
                    self._log.warning("forced shutdown failed: %s", exc)
        await self._finish("killed")
        return True

    def screen(self) -> str:
        """Return the current rendering of the session's terminal screen."""
        return self._emulator.render()

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            pid=self.process.pid if self.process is not None else None,
            status=self.status,
            started_at=self.started_at,
            last_activity=self.last_activity,
            current_task=self.current_task,
            command_history=tuple(self.command_history),
        )
