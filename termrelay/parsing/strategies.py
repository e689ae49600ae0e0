"""Per-application policies deciding when buffered output is a complete message.

The set of strategies is closed: :func:`build_strategies` returns them in
precedence order with :class:`DefaultStrategy` last as the catch-all. The
output engine picks one per session through :meth:`OutputStrategy.can_handle`
and keeps it until a different strategy's strong signature shows up.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Sequence

from termrelay.config import StrategiesConfig
from termrelay.parsing.sanitizer import is_prompt_line, strip_box_drawing

logger = logging.getLogger(__name__)

_BLANK_RUN_RE = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")


def collapse_blank_lines(text: str) -> str:
    """Reduce every run of two or more blank lines to a single blank line."""
    return _BLANK_RUN_RE.sub("\n\n", text)


class OutputStrategy:
    """Base policy; subclasses override the parts that differ."""

    name: str = "base"

    def __init__(self, idle_timeout: float) -> None:
        """Initialize the strategy.

        Args:
            idle_timeout: Seconds an unflushed, non-empty buffer may sit
                idle before the engine forces a flush.
        """
        self.idle_timeout = idle_timeout

    def can_handle(
        self, session_id: str, command: str, output: str, history: Sequence[str] = ()
    ) -> bool:
        raise NotImplementedError

    def has_strong_signature(self, output: str) -> bool:
        """Whether ``output`` unmistakably belongs to this strategy's application."""
        return False

    def should_flush(self, chunk: str, buffer: str, *, raw_chunk: str = "") -> bool:
        raise NotImplementedError

    def flush_boundary(self, buffer: str, *, raw_chunk: str = "") -> int:
        """Length of the buffer prefix a flush emits; the rest stays buffered."""
        return len(buffer)

    def post_process(self, text: str) -> str:
        return text.strip()

    def should_ignore_line(self, line: str) -> bool:
        """Drop lines that are nothing but box borders or an empty box column."""
        return not strip_box_drawing(line).strip()

    def forget(self, session_id: str) -> None:
        """Release any state kept for ``session_id``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(idle_timeout={self.idle_timeout})"


class DefaultStrategy(OutputStrategy):
    """Fallback for plain commands whose output arrives in one burst."""

    name = "default"

    def __init__(self, idle_timeout: float = 0.75) -> None:
        super().__init__(idle_timeout)

    def can_handle(
        self, session_id: str, command: str, output: str, history: Sequence[str] = ()
    ) -> bool:
        return True

    def should_flush(self, chunk: str, buffer: str, *, raw_chunk: str = "") -> bool:
        return bool(chunk.strip())

    def post_process(self, text: str) -> str:
        lines = [
            line.rstrip("\r ")
            for line in text.split("\n")
            if line.strip() and not is_prompt_line(line)
        ]
        return "\n".join(lines).strip()


# Assistant CLI screen vocabulary
RESPONSE_MARKERS = ("●", "⏺")
_BANNER_RE = re.compile(r"Welcome to Claude Code")
_MODEL_BANNER_RE = re.compile(r"Claude (?:Opus|Sonnet|Haiku)")
_HINT_RE = re.compile(r"/help for help|\? for shortcuts|esc to interrupt")
_PROMPT_BOX_TOP_RE = re.compile(r"╭─+╮")
_PROMPT_BOX_INPUT_RE = re.compile(r"│\s*>")
_CLOSING_BORDER_RE = re.compile(r"╰─+╯")
# Typed input inside or outside the prompt box: "> say hello"
_INPUT_ECHO_RE = re.compile(r"^>(?:\s.*)?$")
# "✻ Cogitating… (3s · ↑ 1.2k tokens · esc to interrupt)", "Working..."
_PROGRESS_RE = re.compile(r"^[✶✳✻✽✢·*]?\s*[^\s●⏺].*?(?:…|\.\.\.)\s*(?:\(.*\))?$")
_NOISE_LINE_RE = re.compile(r"\? for shortcuts|esc to interrupt")
# Animated status drawn above the prompt box while the model works
_SPINNER_RE = re.compile(r"^(?:[✶✳✻✽✢·*]\s*\S.*|.*\(.*esc to interrupt.*\))$")
# Login and API key prompts carry no response marker
_AUTH_PROMPT_RE = re.compile(
    r"Invalid API key|Please run /login|Choose login method|Login method|Web Login"
    r"|Copy and paste|successfully authenticated|console\.anthropic\.com|https://"
)


def _count_markers(text: str) -> int:
    return sum(text.count(marker) for marker in RESPONSE_MARKERS)


def _last_marker_index(text: str) -> int:
    return max(text.rfind(marker) for marker in RESPONSE_MARKERS)


def _first_marker_index(text: str) -> int:
    found = [i for i in (text.find(m) for m in RESPONSE_MARKERS) if i >= 0]
    return min(found) if found else -1


class AssistantCliStrategy(OutputStrategy):
    """Policy for a boxed-prompt AI assistant CLI (Claude Code and look-alikes).

    The assistant redraws its input box on every keystroke and shows an
    animated "thinking" line while it works, so nothing is emitted until a
    response marker has been seen and the response is closed, either by the
    input box being drawn again below it or by the next response marker.
    Long pauses while the model thinks are tolerated by a long idle timeout.
    """

    name = "assistant_cli"

    def __init__(
        self,
        idle_timeout: float = 15.0,
        detection_keywords: Sequence[str] = ("claude", "anthropic"),
    ) -> None:
        super().__init__(idle_timeout)
        self.detection_keywords = tuple(k.lower() for k in detection_keywords)
        self._sessions: set[str] = set()
        self._lock = threading.Lock()

    def _looks_like_assistant(self, output: str) -> bool:
        return bool(
            _BANNER_RE.search(output)
            or _MODEL_BANNER_RE.search(output)
            or _HINT_RE.search(output)
            or (_PROMPT_BOX_TOP_RE.search(output) and _PROMPT_BOX_INPUT_RE.search(output))
            or _count_markers(output)
        )

    def _mentions_keyword(self, text: str) -> bool:
        lowered = text.lower()
        return any(keyword in lowered for keyword in self.detection_keywords)

    def can_handle(
        self, session_id: str, command: str, output: str, history: Sequence[str] = ()
    ) -> bool:
        with self._lock:
            # Once a session is recognised it stays recognised
            if session_id in self._sessions:
                return True
            if (
                self._looks_like_assistant(output)
                or self._mentions_keyword(command or "")
                or self._mentions_keyword(" ".join(history))
            ):
                self._sessions.add(session_id)
                logger.debug("Session %s recognised as assistant CLI", session_id)
                return True
            return False

    def has_strong_signature(self, output: str) -> bool:
        return bool(_BANNER_RE.search(output) or _count_markers(output))

    def should_ignore_line(self, line: str) -> bool:
        text = strip_box_drawing(line).strip()
        if not text:
            return True
        if _INPUT_ECHO_RE.match(text):
            return True
        return bool(_NOISE_LINE_RE.search(text)) and _first_marker_index(text) < 0

    @staticmethod
    def is_progress_line(line: str) -> bool:
        """Whether a line is a "working…" indicator rather than content."""
        return bool(_PROGRESS_RE.match(line.strip()))

    @staticmethod
    def is_input_echo(line: str) -> bool:
        """Whether a line is the input box echoing what the user is typing."""
        return bool(_INPUT_ECHO_RE.match(strip_box_drawing(line).strip()))

    @staticmethod
    def is_spinner_line(line: str) -> bool:
        """Whether a line is the animated status shown while the model works."""
        return bool(_SPINNER_RE.match(line.strip()))

    @staticmethod
    def _closes_response(raw_chunk: str) -> bool:
        # The prompt box redrawn below the latest response closes it
        last_marker = _last_marker_index(raw_chunk)
        tail = raw_chunk[last_marker:] if last_marker >= 0 else raw_chunk
        return bool(_CLOSING_BORDER_RE.search(tail))

    def _holds_flush(self, chunk: str, closed: bool) -> bool:
        lines = [line for line in chunk.split("\n") if line.strip()]
        if not lines or not all(
            self.is_progress_line(line) or self.is_input_echo(line) for line in lines
        ):
            return False
        if not closed:
            return True
        # The box stays drawn under a spinner or typed input; plain
        # text ending in an ellipsis is content and the border closes it
        return any(self.is_spinner_line(line) or self.is_input_echo(line) for line in lines)

    def should_flush(self, chunk: str, buffer: str, *, raw_chunk: str = "") -> bool:
        markers = _count_markers(buffer)
        if not markers:
            return bool(_AUTH_PROMPT_RE.search(buffer))
        closed = self._closes_response(raw_chunk)
        if self._holds_flush(chunk, closed):
            return False
        return markers >= 2 or closed

    def flush_boundary(self, buffer: str, *, raw_chunk: str = "") -> int:
        """Stop before the block opened by the latest marker unless it is closed."""
        if _count_markers(buffer) < 2 or self._closes_response(raw_chunk):
            return len(buffer)
        boundary = buffer.rfind("\n", 0, _last_marker_index(buffer)) + 1
        return boundary or len(buffer)

    def post_process(self, text: str) -> str:
        start = _first_marker_index(text)
        if start >= 0:
            text = text[start + 1:]
        lines = []
        for line in text.split("\n"):
            stripped = line.strip()
            if stripped.startswith(RESPONSE_MARKERS):
                stripped = stripped[1:].strip()
            lines.append(stripped)
        return collapse_blank_lines("\n".join(lines)).strip()

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._sessions.discard(session_id)


def build_strategies(config: StrategiesConfig | None = None) -> tuple[OutputStrategy, ...]:
    """Return the strategies in precedence order, catch-all last.

    Args:
        config: Timeouts and keywords; library defaults when None.
    """
    config = config or StrategiesConfig()
    return (
        AssistantCliStrategy(
            idle_timeout=config.assistant_cli.idle_timeout_ms / 1000.0,
            detection_keywords=config.assistant_cli.detection_keywords,
        ),
        DefaultStrategy(idle_timeout=config.default.idle_timeout_ms / 1000.0),
    )
