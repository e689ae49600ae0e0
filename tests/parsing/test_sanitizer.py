import re

import pytest

from termrelay.parsing.sanitizer import (
    is_echo,
    is_prompt_line,
    sanitize,
    strip_box_drawing,
    strip_control_sequences,
)

BOX_GLYPH_RE = re.compile(r"[─-╿]")

# Chunks as they come out of real shells and the assistant CLI
SAMPLE_CHUNKS = [
    "\x1b[?2004huser@host:~$ ls\r\n\x1b[?2004l\r",
    "\x1b[0m\x1b[01;34mdocs\x1b[0m  \x1b[01;32mrun.sh\x1b[0m\r\n",
    "\x1b]0;user@host: ~\x07user@host:~$ ",
    "╭──────────────────────────╮\r\n│ ✻ Welcome to Claude Code! │\r\n╰──────────────────────────╯",
    "\x1b[2K\x1b[1A\x1b[2K\x1b[G⏺\x1b[1CHello!\x1b[1CHow\x1b[1Ccan\x1b[1CI\x1b[1Chelp?",
    "\x1b[38;5;174m✻\x1b[39m Cogitating… (3s · esc to interrupt)",
    "10%\r20%\r\x1b[K30%\r\n",
    "[?25l[0mplain text[?25h",
    "┌─┬─┐\r\n│a│b│\r\n└─┴─┘",
]


class TestStripControlSequences:
    def test_colors_removed(self):
        assert strip_control_sequences("\x1b[31mred\x1b[0m") == "red"

    def test_cursor_forward_becomes_spaces(self):
        assert strip_control_sequences("a\x1b[1Cb") == "a b"
        assert strip_control_sequences("a\x1b[3Cb") == "a   b"
        assert strip_control_sequences("a\x1b[Cb") == "a b"

    def test_osc_title_removed(self):
        assert strip_control_sequences("\x1b]0;my title\x07text") == "text"

    def test_mode_toggles_without_escape_removed(self):
        assert strip_control_sequences("[?2004hls[?2004l") == "ls"

    def test_bare_color_reset_removed(self):
        assert strip_control_sequences("[0mdone[32m") == "done"

    def test_artifacts_removed(self):
        assert strip_control_sequences("▌ready\x07") == "ready"

    def test_line_structure_kept(self):
        assert strip_control_sequences("a\r\nb\rc") == "a\r\nb\rc"


class TestLinePredicates:
    @pytest.mark.parametrize("line", ["user@host:~$", "user@host:~$ ", "root@box:/# ", "$"])
    def test_prompt_lines(self, line):
        assert is_prompt_line(line)

    def test_long_line_ending_in_dollar_is_not_prompt(self):
        assert not is_prompt_line("price " * 20 + "$")

    def test_regular_line_is_not_prompt(self):
        assert not is_prompt_line("total 42")

    def test_echo(self):
        assert is_echo("  ls -la ", "ls -la")
        assert not is_echo("ls", "ls -la")
        assert not is_echo("", None)
        assert not is_echo("", "   ")

    def test_strip_box_drawing(self):
        assert strip_box_drawing("│ hello │") == " hello "
        assert strip_box_drawing("╭───╮") == ""


class TestSanitize:
    @pytest.mark.parametrize("chunk", SAMPLE_CHUNKS)
    def test_no_escape_or_box_glyph_survives(self, chunk):
        result = sanitize(chunk, last_command="ls")
        assert "\x1b" not in result
        assert not BOX_GLYPH_RE.search(result)

    def test_empty(self):
        assert sanitize("") == ""

    def test_prompt_dropped(self):
        assert sanitize("user@host:~$ ") == ""

    def test_echo_dropped(self):
        assert sanitize("ls -la\r\nfile.txt\r\n", last_command="ls -la") == "file.txt"

    def test_crlf_lines(self):
        assert sanitize("a\r\nb\r\n") == "a\nb"

    def test_blank_lines_dropped(self):
        assert sanitize("a\n\n   \nb") == "a\nb"

    def test_redraws_collapsed(self):
        assert sanitize("10%\r20%\r30%") == "30%"

    def test_erase_line_redraw(self):
        assert sanitize("abc\r\x1b[2Kxyz") == "xyz"

    def test_box_glyphs_stripped(self):
        assert sanitize("│ hello │") == "hello"

    def test_box_only_lines_dropped(self):
        assert sanitize("┌──┐\n│hi│\n└──┘") == "hi"

    def test_ignore_line_predicate(self):
        assert sanitize("keep\ndrop", ignore_line=lambda line: line == "drop") == "keep"

    def test_cursor_forward_words(self):
        assert sanitize("Hello\x1b[1Cworld") == "Hello world"

    def test_ls_listing(self):
        result = sanitize(SAMPLE_CHUNKS[1])
        assert result == "docs  run.sh"

    def test_wide_character_redraw(self):
        assert sanitize("日本語のテキストです\rXX") == "XX本語のテキストです"
