"""Stateless cleaning of raw shell output into candidate message lines."""

from __future__ import annotations

import re
from typing import Callable

from termrelay.parsing.screen_emulator import collapse_redraws

# Cursor forward: ESC[NC, assistant CLIs put ESC[1C between words
_CURSOR_FORWARD_RE = re.compile(r"\x1b\[(\d*)C")
# OSC sequences: ESC ] ... BEL (or ST), e.g. window title updates
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
# CSI sequences: ESC [ params intermediates final-byte
_CSI_RE = re.compile(r"\x1b\[[^@-~]*[@-~]")
# Mode toggles that lost their ESC somewhere upstream: [?2004h, [?25l ...
_MODE_TOGGLE_RE = re.compile(r"\x1b?\[\?[0-9]+[hl]")
# Colour resets that lost their ESC
_BARE_SGR_RE = re.compile(r"\[(?:0|1|3[2-6])m")
_BOX_DRAWING_RE = re.compile(r"[\u2500-\u257f]")
_ARTIFACTS = ("▌", "\x07", "\x1b")

PROMPT_MAX_LENGTH = 100


def strip_control_sequences(text: str) -> str:
    """Remove escape sequences and known formatting artifacts.

    Cursor-forward sequences are turned into the equivalent number of
    spaces so words separated that way stay separated. Carriage returns,
    backspaces and line feeds are kept for the line stage.

    Args:
        text: Raw terminal output.

    Returns:
        Text with no ESC or BEL characters left in it.
    """
    text = _CURSOR_FORWARD_RE.sub(lambda m: " " * int(m.group(1) or 1), text)
    text = _OSC_RE.sub("", text)
    text = _MODE_TOGGLE_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _BARE_SGR_RE.sub("", text)
    for artifact in _ARTIFACTS:
        text = text.replace(artifact, "")
    return text


def strip_box_drawing(line: str) -> str:
    """Remove every box-drawing glyph (U+2500 to U+257F) from a line."""
    return _BOX_DRAWING_RE.sub("", line)


def is_prompt_line(line: str) -> bool:
    """Check whether a line is just a shell prompt such as ``user@host:~$``."""
    stripped = line.strip()
    return stripped.endswith(("$", "#")) and len(line) < PROMPT_MAX_LENGTH


def is_echo(line: str, command: str | None) -> bool:
    """Check whether a line is the shell echoing back the submitted command."""
    if not command or not command.strip():
        return False
    return line.strip() == command.strip()


def _strip_non_redraw_sequences(text: str) -> str:
    # Erase-in-line and cursor moves stay for collapse_redraws to interpret
    text = _CURSOR_FORWARD_RE.sub(lambda m: " " * int(m.group(1) or 1), text)
    text = _OSC_RE.sub("", text)
    return _MODE_TOGGLE_RE.sub("", text)


def _split_lines(text: str) -> list[str]:
    lines = []
    for line in text.split("\n"):
        line = line.rstrip("\r ")
        if "\r" in line or "\b" in line:
            line = collapse_redraws(line)
        lines.append(strip_control_sequences(line).rstrip("\r "))
    return lines


def sanitize(
    raw: str,
    *,
    last_command: str | None = None,
    ignore_line: Callable[[str], bool] | None = None,
) -> str:
    """Turn a raw output chunk into the lines worth showing to a user.

    Escape sequences are stripped, in-line redraws are collapsed, and lines
    that are empty, bare prompts, echoes of ``last_command`` or rejected by
    ``ignore_line`` are dropped. Surviving lines lose any box-drawing glyphs
    and surrounding whitespace.

    Args:
        raw: Raw chunk read from the process.
        last_command: The command most recently submitted to this session.
        ignore_line: Predicate from the active output strategy.

    Returns:
        The cleaned lines joined with newlines, or an empty string when
        nothing is worth buffering.
    """
    if not raw:
        return ""
    text = _strip_non_redraw_sequences(raw)
    cleaned: list[str] = []
    for line in _split_lines(text):
        if not line:
            continue
        if is_prompt_line(line) or is_echo(line, last_command):
            continue
        if ignore_line is not None and ignore_line(line):
            continue
        line = strip_box_drawing(line).strip()
        if line:
            cleaned.append(line)
    return "\n".join(cleaned)

