from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import signal
import sys
from pathlib import Path

import pexpect

from termrelay.config import ShellConfig
from termrelay.log_setup import TRACE

logger = logging.getLogger(__name__)

READ_SIZE = 4096
PTY_DIMENSIONS = (100, 200)


class SpawnError(Exception):
    """Raised when the shell process could not be created."""

    pass


class StreamError(Exception):
    """Raised when reading from or writing to a live process fails."""

    pass


def build_env(extra: dict[str, str]) -> dict[str, str]:
    """Merge extra env vars into a copy of the current environment.

    Expands ~ to the user home directory in values.
    """
    merged = os.environ.copy()
    for key, value in extra.items():
        merged[key] = str(Path(value).expanduser()) if "~" in value else value
    return merged


def default_shell_command() -> list[str]:
    """Return the interactive shell command line for the host platform."""
    if sys.platform == "win32":
        return ["wsl.exe", "bash"]
    return [os.environ.get("SHELL") or "/bin/bash", "-i"]


class ShellProcess:
    """A spawned interactive process as seen by a session.

    ``read_stdout`` and ``read_stderr`` return the next decoded chunk and an
    empty string once the stream is closed. Implementations raise
    :class:`StreamError` for I/O failures on a live process.
    """

    has_stderr: bool = True
    newline: str = "\n"

    def __init__(self, argv: list[str], cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        """Initialize without spawning.

        Args:
            argv: Program and arguments.
            cwd: Working directory, defaults to the user's home directory.
            env: Extra environment variables merged on top of the current
                environment.
        """
        if not argv:
            raise SpawnError("Empty shell command")
        self._argv = list(argv)
        self._cwd = str(Path(cwd).expanduser()) if cwd else str(Path.home())
        self._env = build_env(env or {})

    @property
    def command_line(self) -> str:
        return shlex.join(self._argv)

    @property
    def pid(self) -> int | None:
        raise NotImplementedError

    async def spawn(self) -> None:
        raise NotImplementedError

    async def read_stdout(self) -> str:
        raise NotImplementedError

    async def read_stderr(self) -> str:
        return ""

    async def write(self, text: str) -> None:
        raise NotImplementedError

    def is_alive(self) -> bool:
        raise NotImplementedError

    async def interrupt(self) -> None:
        raise NotImplementedError

    async def terminate(self) -> None:
        raise NotImplementedError

    def exit_code(self) -> int | None:
        raise NotImplementedError


class PipeShellProcess(ShellProcess):
    """Shell attached through three pipes, stdout and stderr kept apart.

    The child runs in its own process group so an interrupt reaches the
    foreground command as well as the shell.
    """

    def __init__(self, argv: list[str], cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        super().__init__(argv, cwd, env)
        self._process: asyncio.subprocess.Process | None = None
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def spawn(self) -> None:
        logger.debug("Spawning pipe shell: cmd=%s cwd=%s", self.command_line, self._cwd)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
                start_new_session=os.name == "posix",
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"Could not start {self.command_line}: {exc}") from exc
        logger.debug("Process spawned pid=%d", self._process.pid)

    async def _read(self, name: str) -> str:
        if self._process is None:
            return ""
        stream = getattr(self._process, name)
        decoder = self._decoders[name]
        while True:
            try:
                data = await stream.read(READ_SIZE)
            except (OSError, ValueError) as exc:
                raise StreamError(f"{name} read failed: {exc}") from exc
            if not data:
                return decoder.decode(b"", final=True)
            logger.log(TRACE, "%s read chunk len=%d", name, len(data))
            text = decoder.decode(data)
            # A chunk may end inside a multi-byte character
            if text:
                return text

    async def read_stdout(self) -> str:
        return await self._read("stdout")

    async def read_stderr(self) -> str:
        return await self._read("stderr")

    async def write(self, text: str) -> None:
        if not self.is_alive():
            raise StreamError("Process is not running")
        logger.debug("stdin write: %r", text[:200])
        try:
            self._process.stdin.write(text.encode("utf-8"))
            await self._process.stdin.drain()
        except (OSError, RuntimeError) as exc:
            raise StreamError(f"stdin write failed: {exc}") from exc

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _signal(self, sig: int) -> None:
        if os.name == "posix":
            os.killpg(self._process.pid, sig)
        else:
            self._process.send_signal(sig)

    async def interrupt(self) -> None:
        if not self.is_alive():
            return
        try:
            self._signal(signal.SIGINT)
        except ProcessLookupError:
            pass

    async def terminate(self) -> None:
        if self._process is None:
            return
        logger.debug("Terminating process pid=%s", self._process.pid)
        if self.is_alive():
            try:
                self._signal(signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(self._process.wait(), timeout=5)
        except asyncio.TimeoutError as exc:
            raise StreamError(f"Process {self._process.pid} did not exit") from exc

    def exit_code(self) -> int | None:
        if self._process is None:
            return None
        return self._process.returncode


class PtyShellProcess(ShellProcess):
    """Shell attached to a pseudo-terminal managed by pexpect.

    Full-screen assistant CLIs only behave interactively on a TTY. A PTY
    carries stdout and stderr on the same channel, so this process has no
    separate stderr stream. Blocking pexpect calls run on executor threads.
    """

    has_stderr = False
    newline = "\r"

    def __init__(self, argv: list[str], cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        super().__init__(argv, cwd, env)
        self._process: pexpect.spawn | None = None
        self._closing = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def spawn(self) -> None:
        logger.debug("Spawning pty shell: cmd=%s cwd=%s", self.command_line, self._cwd)
        loop = asyncio.get_running_loop()
        try:
            self._process = await loop.run_in_executor(
                None,
                lambda: pexpect.spawn(
                    self._argv[0],
                    self._argv[1:],
                    cwd=self._cwd,
                    env=self._env,
                    encoding="utf-8",
                    codec_errors="replace",
                    timeout=5,
                    maxread=READ_SIZE,
                    dimensions=PTY_DIMENSIONS,
                ),
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise SpawnError(f"Could not start {self.command_line}: {exc}") from exc
        logger.debug("Process spawned pid=%d", self._process.pid)

    def _blocking_read(self) -> str:
        while True:
            try:
                chunk = self._process.read_nonblocking(size=READ_SIZE, timeout=0.2)
            except pexpect.TIMEOUT:
                if self._closing:
                    return ""
                continue
            except pexpect.EOF:
                return ""
            logger.log(TRACE, "PTY read chunk len=%d", len(chunk))
            return chunk

    async def read_stdout(self) -> str:
        if self._process is None:
            return ""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._blocking_read)
        except (OSError, ValueError) as exc:
            raise StreamError(f"PTY read failed: {exc}") from exc

    async def write(self, text: str) -> None:
        if not self.is_alive():
            raise StreamError("Process is not running")
        logger.debug("PTY write: %r", text[:200])
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._process.send, text)
        except OSError as exc:
            raise StreamError(f"PTY write failed: {exc}") from exc

    def is_alive(self) -> bool:
        if self._process is None:
            return False
        return self._process.isalive()

    async def interrupt(self) -> None:
        if not self.is_alive():
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._process.sendintr)

    async def terminate(self) -> None:
        if self._process is None:
            return
        logger.debug("Terminating process pid=%s", self._process.pid)
        self._closing = True
        loop = asyncio.get_running_loop()
        if self._process.isalive():
            try:
                await loop.run_in_executor(None, self._process.close, True)
            except pexpect.ExceptionPexpect as exc:
                raise StreamError(f"Could not close process {self._process.pid}: {exc}") from exc

    def exit_code(self) -> int | None:
        if self._process is None:
            return None
        # pexpect sets signalstatus (not exitstatus) when process is killed by signal
        if self._process.exitstatus is not None:
            return self._process.exitstatus
        return self._process.signalstatus


def create_shell(config: ShellConfig) -> ShellProcess:
    """Build, without starting, the shell process described by ``config``.

    PTY mode is only available on POSIX hosts; elsewhere the pipe variant
    is used.
    """
    if config.command:
        argv = [config.command, *config.args]
    else:
        argv = default_shell_command() + list(config.args)
    if config.mode == "pty" and os.name == "posix":
        return PtyShellProcess(argv, cwd=config.cwd, env=config.env)
    return PipeShellProcess(argv, cwd=config.cwd, env=config.env)


async def spawn_shell(config: ShellConfig) -> ShellProcess:
    """Create and start an interactive shell.

    Raises:
        SpawnError: If the process could not be started.
    """
    process = create_shell(config)
    await process.spawn()
    return process
