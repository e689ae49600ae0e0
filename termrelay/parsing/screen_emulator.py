from __future__ import annotations

import pyte
from wcwidth import wcwidth

MAX_ROWS = 100
MAX_COLUMNS = 200


class _ClampedScreen(pyte.Screen):
    """pyte screen that never scrolls and homes the cursor on a full erase.

    Line feeds on the last row leave the cursor where it is instead of
    scrolling the grid up, so the bounded grid keeps its top rows.
    """

    def index(self) -> None:
        if self.cursor.y < self.lines - 1:
            self.cursor_down()

    def erase_in_display(self, how: int = 0, *args, **kwargs) -> None:
        super().erase_in_display(how, *args, **kwargs)
        if how == 2:
            self.cursor_position()


class ScreenEmulator:
    """Bounded VT100-style grid that reduces a raw stream to what a user sees.

    Progress spinners, redrawn status lines and erase sequences all collapse
    into the final visual state. Colours and attributes are ignored, there is
    no scrollback and no alternate screen: the goal is readable text, not a
    faithful terminal.

    Line feeds follow Unix semantics and do not reset the column; the
    child process is expected to send ``\\r\\n`` when it wants a new line
    starting at column 0.
    """

    def __init__(self, rows: int = MAX_ROWS, columns: int = MAX_COLUMNS) -> None:
        """Create an empty grid.

        Args:
            rows: Number of rows in the grid. Defaults to 100.
            columns: Number of columns in the grid. Defaults to 200.
        """
        self.rows = rows
        self.columns = columns
        self.screen = _ClampedScreen(columns, rows)
        self.stream = pyte.Stream(self.screen)

    def feed(self, data: bytes | str) -> None:
        """Interpret a chunk of terminal output and update the grid.

        Args:
            data: Raw bytes or a string. Bytes are decoded as UTF-8 with
                replacement characters for invalid sequences.
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self.stream.feed(data)

    @property
    def cursor(self) -> tuple[int, int]:
        """Current 0-based ``(row, column)`` of the cursor."""
        return self.screen.cursor.y, self.screen.cursor.x

    def _render_row(self, y: int) -> str:
        row = self.screen.buffer[y]
        cells = []
        x = 0
        while x < self.columns:
            data = row[x].data
            if not data:
                # Stub left behind when a narrow char overwrote a wide one
                cells.append(" ")
                x += 1
                continue
            cells.append(data)
            x += 2 if wcwidth(data[0]) == 2 else 1
        return "".join(cells)

    def lines(self) -> list[str]:
        """Return grid rows right-stripped, up to the last row with content."""
        lines = [self._render_row(y).rstrip() for y in range(self.rows)]
        while lines and not lines[-1].strip():
            lines.pop()
        return lines

    def render(self) -> str:
        """Return the visual content of the grid as a single string."""
        return "\n".join(self.lines())

    def reset(self) -> None:
        """Clear the grid and move the cursor back to the origin."""
        self.screen.reset()


def collapse_redraws(line: str) -> str:
    """Resolve carriage-return and backspace redraws within a single line.

    ``"10%\\r20%\\r30%"`` becomes ``"30%"`` and ``"abc\\rXY"`` becomes
    ``"XYc"``. Lines without redraw characters are returned unchanged.
    """
    if "\r" not in line and "\b" not in line:
        return line
    # Wide characters take two cells; a narrower row would wrap onto itself
    columns = sum(max(wcwidth(char), 1) for char in line)
    emulator = ScreenEmulator(rows=1, columns=max(columns, 1))
    emulator.feed(line)
    return emulator.render()
