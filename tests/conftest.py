import asyncio

import pytest

from termrelay.config import AppConfig, SessionsConfig
from termrelay.shell_process import ShellProcess, StreamError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess(ShellProcess):
    """In-memory shell: tests push output into the queues and inspect writes.

    Putting an exception into a queue makes the next read raise it.
    """

    pid = 4242

    def __init__(self, has_stderr: bool = True, newline: str = "\n") -> None:
        super().__init__(["fake-shell", "-i"], cwd="/tmp")
        self.has_stderr = has_stderr
        self.newline = newline
        self.stdout: asyncio.Queue = asyncio.Queue()
        self.stderr: asyncio.Queue = asyncio.Queue()
        self.writes: list[str] = []
        self.alive = True
        self.fail_writes = False
        self.exit_on_interrupt = False
        self.terminate_error: Exception | None = None
        self.interrupt_calls = 0
        self.terminate_calls = 0

    async def spawn(self) -> None:
        pass

    async def _next(self, queue: asyncio.Queue) -> str:
        item = await queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def read_stdout(self) -> str:
        return await self._next(self.stdout)

    async def read_stderr(self) -> str:
        return await self._next(self.stderr)

    async def write(self, text: str) -> None:
        if self.fail_writes or not self.alive:
            raise StreamError("broken pipe")
        self.writes.append(text)

    def is_alive(self) -> bool:
        return self.alive

    async def interrupt(self) -> None:
        self.interrupt_calls += 1
        if self.exit_on_interrupt:
            self.exit()

    async def terminate(self) -> None:
        self.terminate_calls += 1
        if self.terminate_error is not None:
            raise self.terminate_error
        self.exit()

    def exit(self) -> None:
        """Simulate the process exiting: both streams reach EOF."""
        if not self.alive:
            return
        self.alive = False
        self.stdout.put_nowait("")
        self.stderr.put_nowait("")

    def exit_code(self) -> int | None:
        return None if self.alive else -9


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_process_cls():
    return FakeProcess


@pytest.fixture
def fast_config():
    """Config with short poll and kill-grace intervals for session tests."""
    return AppConfig(sessions=SessionsConfig(idle_poll_interval_ms=10, kill_grace_ms=10))
