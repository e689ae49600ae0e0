from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading

from termrelay.config import AppConfig, load_config
from termrelay.log_setup import setup_logging
from termrelay.models import EventKind, SessionEvent
from termrelay.session_manager import SessionError, SessionManager
from termrelay.shell_process import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "config.yaml"
CONSOLE_USER = "console"

HELP_TEXT = """\
:new [id]          start a session and switch to it
:list              list sessions
:switch <id>       send plain input to another session
:rename <old> <new>
:kill [id]         stop a session (default: active)
:choose <n>        answer a choice prompt
:screen            show the active session's screen
:help              this text
!enter !ctrlc !ctrld !tab !esc are sent as keystrokes.
Anything else is run in the active session."""


def build_config(
    config_path: str, debug: bool = False, trace: bool = False, verbose: bool = False
) -> AppConfig:
    """Load configuration; command-line flags switch debug settings on."""
    if config_path == DEFAULT_CONFIG and not os.path.exists(config_path):
        config = AppConfig()
    else:
        config = load_config(config_path)

    config.debug.enabled = config.debug.enabled or debug
    config.debug.trace = config.debug.trace or trace
    config.debug.verbose = config.debug.verbose or verbose
    return config


def print_event(event: SessionEvent) -> None:
    """Console subscriber: one block per event, prefixed by the session id."""
    if event.kind is EventKind.OUTPUT:
        print(f"[{event.session_id}]\n{event.text}")
    elif event.kind is EventKind.ERROR:
        print(f"[{event.session_id}] error: {event.text}")
    elif event.kind is EventKind.QUESTION:
        print(f"[{event.session_id}] choose one (:choose <n>):")
        for option in event.options:
            print(f"  {option}")
    elif event.kind is EventKind.STARTED:
        print(f"[{event.session_id}] started: {event.text}")
    elif event.kind is EventKind.TERMINATED:
        print(f"[{event.session_id}] terminated ({event.text})")
    sys.stdout.flush()


async def handle_line(manager: SessionManager, line: str) -> None:
    """Route one line of console input to the manager."""
    line = line.rstrip("\n")
    if not line.strip():
        return
    if not line.startswith(":"):
        active = manager.get_active_session(CONSOLE_USER)
        if active is None:
            print("No active session. Use :new to start one.")
            return
        if not await manager.execute(active.session_id, line):
            print(f"[{active.session_id}] not running")
        return

    parts = line[1:].split()
    if not parts:
        return
    verb, args = parts[0].lower(), parts[1:]
    if verb == "new":
        info = await manager.create_session(args[0] if args else None, user_id=CONSOLE_USER)
        print(f"Session {info.session_id} is now active (pid {info.pid})")
    elif verb == "list":
        active = manager.get_active_session(CONSOLE_USER)
        for info in manager.list_sessions():
            marker = "*" if active is not None and info.session_id == active.session_id else " "
            print(f"{marker} {info.session_id} {info.status.value} {info.current_task or ''}")
    elif verb == "switch" and args:
        manager.set_active(CONSOLE_USER, args[0])
    elif verb == "rename" and len(args) == 2:
        manager.rename_session(args[0], args[1])
    elif verb == "kill":
        target = args[0] if args else _active_id(manager)
        await manager.kill_session(target)
    elif verb == "choose" and args:
        if not await manager.send_choice(_active_id(manager), int(args[0])):
            print("No choice is pending")
    elif verb == "screen":
        print(manager.get_screen(_active_id(manager)))
    else:
        print(HELP_TEXT)


def _active_id(manager: SessionManager) -> str:
    active = manager.get_active_session(CONSOLE_USER)
    if active is None:
        raise SessionError("No active session")
    return active.session_id


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    # Daemon thread so a pending readline never blocks shutdown
    def _read() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=_read, name="stdin-reader", daemon=True).start()


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Interactive shell session relay")
    parser.add_argument("config", nargs="?", default=DEFAULT_CONFIG,
                        help=f"Path to YAML config file (default: {DEFAULT_CONFIG})")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug mode (verbose logging)")
    parser.add_argument("--trace", action="store_true",
                        help="Enable trace mode (writes a trace file under debug.trace_dir)")
    parser.add_argument("--verbose", action="store_true",
                        help="With --trace, also send trace output to terminal")
    return parser.parse_args()


async def _console(manager: SessionManager, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        line = await queue.get()
        if line is None:
            stop_event.set()
            return
        try:
            await handle_line(manager, line)
        except (SessionError, SpawnError, ValueError) as exc:
            print(f"error: {exc}")


async def main() -> None:
    """Entry point for the termrelay console."""
    args = _parse_args()
    config = build_config(args.config, debug=args.debug, trace=args.trace, verbose=args.verbose)
    setup_logging(config.debug)
    if config.debug.enabled:
        logger.debug("Debug logging enabled")

    manager = SessionManager(config)
    manager.subscribe(print_event)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await manager.create_session(user_id=CONSOLE_USER)

    queue: asyncio.Queue = asyncio.Queue()
    _start_stdin_reader(loop, queue)
    console = asyncio.create_task(_console(manager, queue, stop_event))

    logger.info("termrelay is running. Type :help for commands, Ctrl+C to stop.")
    await stop_event.wait()

    # Second Ctrl+C during shutdown → force exit immediately
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)

    logger.info("Shutting down...")
    console.cancel()
    await asyncio.gather(console, return_exceptions=True)
    await manager.shutdown()
    logger.info("Bye.")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
