from termrelay.parsing.screen_emulator import (
    MAX_COLUMNS,
    MAX_ROWS,
    ScreenEmulator,
    collapse_redraws,
)


class TestScreenEmulator:
    def test_basic_text(self):
        emu = ScreenEmulator(rows=5, columns=40)
        emu.feed("Hello world")
        assert emu.render() == "Hello world"

    def test_default_size_is_bounded(self):
        emu = ScreenEmulator()
        assert (emu.rows, emu.columns) == (MAX_ROWS, MAX_COLUMNS) == (100, 200)

    def test_carriage_return_overwrites_from_column_zero(self):
        emu = ScreenEmulator()
        emu.feed("abc\rXY")
        assert emu.render() == "XYc"

    def test_erase_line_then_write(self):
        emu = ScreenEmulator()
        emu.feed("line1\r\n\x1b[2Kline2")
        assert emu.render() == "line1\nline2"

    def test_bare_line_feed_keeps_column(self):
        emu = ScreenEmulator()
        emu.feed("line1\n\x1b[2Kline2")
        lines = emu.lines()
        assert lines[0] == "line1"
        assert lines[1].strip() == "line2"
        assert lines[1] == "     line2"

    def test_cursor_position_is_one_based(self):
        emu = ScreenEmulator(rows=5, columns=10)
        emu.feed("\x1b[2;3HZ")
        assert emu.lines()[1] == "  Z"
        assert emu.cursor == (1, 3)

    def test_colors_stripped(self):
        emu = ScreenEmulator(rows=5, columns=40)
        emu.feed("\x1b[31mred text\x1b[0m")
        assert emu.render() == "red text"

    def test_erase_display_homes_cursor(self):
        emu = ScreenEmulator(rows=5, columns=40)
        emu.feed("old text\r\nmore\x1b[2Jnew")
        assert emu.render() == "new"
        assert emu.cursor == (0, 3)

    def test_erase_to_end_of_line(self):
        emu = ScreenEmulator(rows=5, columns=40)
        emu.feed("Loading...\r\x1b[KDone")
        assert emu.render() == "Done"

    def test_no_scroll_past_last_row(self):
        emu = ScreenEmulator(rows=3, columns=20)
        emu.feed("row0\r\nrow1\r\nrow2\r\nrow3")
        assert emu.lines() == ["row0", "row1", "row3"]

    def test_many_lines_stay_within_grid(self):
        emu = ScreenEmulator()
        emu.feed("\r\n".join(f"row{i}" for i in range(150)))
        lines = emu.lines()
        assert len(lines) == MAX_ROWS
        assert lines[0] == "row0"
        assert lines[-1] == "row149"

    def test_long_line_wraps_at_column_limit(self):
        emu = ScreenEmulator()
        emu.feed("x" * 250)
        lines = emu.lines()
        assert len(lines[0]) == MAX_COLUMNS
        assert lines[1] == "x" * 50

    def test_bytes_decoded_with_replacement(self):
        emu = ScreenEmulator(rows=2, columns=20)
        emu.feed(b"ok\xff caf\xc3\xa9")
        assert emu.render() == "ok� café"

    def test_trailing_blank_rows_dropped(self):
        emu = ScreenEmulator(rows=10, columns=20)
        emu.feed("only\r\n\r\n\r\n")
        assert emu.lines() == ["only"]

    def test_reset(self):
        emu = ScreenEmulator(rows=5, columns=20)
        emu.feed("something")
        emu.reset()
        assert emu.render() == ""
        assert emu.cursor == (0, 0)


class TestCollapseRedraws:
    def test_progress_counter(self):
        assert collapse_redraws("10%\r20%\r30%") == "30%"

    def test_partial_overwrite(self):
        assert collapse_redraws("abc\rXY") == "XYc"

    def test_backspace(self):
        assert collapse_redraws("abd\bc") == "abc"

    def test_plain_line_unchanged(self):
        line = "  indented \x1b[1mtext"
        assert collapse_redraws(line) is line

    def test_erase_after_carriage_return(self):
        assert collapse_redraws("Working\r\x1b[2KDone") == "Done"

    def test_wide_characters_do_not_wrap(self):
        assert collapse_redraws("日本語のテキストです\rXX") == "XX本語のテキストです"

    def test_wide_characters_fully_redrawn(self):
        assert collapse_redraws("50% 読み込み中\r100% 完了    ") == "100% 完了"


class TestWideCharacters:
    def test_wide_characters_rendered_once(self):
        emu = ScreenEmulator()
        emu.feed("日本語\r\n")
        assert emu.render() == "日本語"

    def test_overwritten_wide_character_leaves_blank_cell(self):
        emu = ScreenEmulator()
        emu.feed("日本\rX")
        assert emu.render() == "X 本"
