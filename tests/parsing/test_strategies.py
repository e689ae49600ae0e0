import pytest

from termrelay.config import StrategiesConfig, StrategyConfig
from termrelay.parsing.strategies import (
    AssistantCliStrategy,
    DefaultStrategy,
    build_strategies,
    collapse_blank_lines,
)

BANNER = "✻ Welcome to Claude Code!\n/help for help, /status for your current setup"
PROMPT_BOX = "╭──────────────╮\n│ >            │\n╰──────────────╯"


class TestCollapseBlankLines:
    def test_runs_reduced_to_one_blank_line(self):
        assert collapse_blank_lines("a\n\n\n\nb") == "a\n\nb"

    def test_whitespace_only_lines_count_as_blank(self):
        assert collapse_blank_lines("a\n  \n\t\n\nb") == "a\n\nb"

    def test_single_blank_line_kept(self):
        assert collapse_blank_lines("a\n\nb") == "a\n\nb"


class TestDefaultStrategy:
    def test_handles_everything(self):
        assert DefaultStrategy().can_handle("s1", "", "")

    def test_flushes_on_first_non_whitespace_chunk(self):
        strategy = DefaultStrategy()
        assert strategy.should_flush("x", "x")
        assert not strategy.should_flush("  \n", "")

    def test_post_process_drops_prompts_and_blank_lines(self):
        text = "out\nuser@host:~$\n\n  \nmore  "
        assert DefaultStrategy().post_process(text) == "out\nmore"

    def test_box_only_lines_ignored(self):
        strategy = DefaultStrategy()
        assert strategy.should_ignore_line("───────")
        assert not strategy.should_ignore_line("│ text │")

    def test_default_idle_timeout(self):
        assert DefaultStrategy().idle_timeout == 0.75


class TestAssistantCliDetection:
    def test_banner(self):
        assert AssistantCliStrategy().can_handle("s1", "", BANNER)

    def test_model_banner(self):
        assert AssistantCliStrategy().can_handle("s1", "", "Claude Sonnet 4 · API Usage Billing")

    def test_response_marker(self):
        assert AssistantCliStrategy().can_handle("s1", "", "● Sure.")

    def test_prompt_box(self):
        assert AssistantCliStrategy().can_handle("s1", "", PROMPT_BOX)

    def test_keyword_in_command(self):
        assert AssistantCliStrategy().can_handle("s1", "claude --resume", "")

    def test_keyword_in_history(self):
        assert AssistantCliStrategy().can_handle("s1", "hi", "", history=["cd proj", "claude"])

    def test_plain_shell_output_rejected(self):
        assert not AssistantCliStrategy().can_handle("s1", "ls", "file.txt\n")

    def test_custom_keywords(self):
        strategy = AssistantCliStrategy(detection_keywords=["aider"])
        assert strategy.can_handle("s1", "aider --model x", "")
        assert not strategy.can_handle("s2", "claude", "")

    def test_recognition_is_sticky_until_forget(self):
        strategy = AssistantCliStrategy()
        assert strategy.can_handle("s1", "claude", "")
        assert strategy.can_handle("s1", "ls", "file.txt")
        assert not strategy.can_handle("s2", "ls", "file.txt")
        strategy.forget("s1")
        assert not strategy.can_handle("s1", "ls", "file.txt")

    def test_forget_unknown_session(self):
        AssistantCliStrategy().forget("nope")

    def test_strong_signature(self):
        strategy = AssistantCliStrategy()
        assert strategy.has_strong_signature("⏺ Done")
        assert strategy.has_strong_signature(BANNER)
        assert not strategy.has_strong_signature("claude: command not found")
        assert not DefaultStrategy().has_strong_signature("anything")


class TestAssistantCliFlush:
    def test_banner_alone_does_not_flush(self):
        assert not AssistantCliStrategy().should_flush(BANNER, BANNER, raw_chunk=BANNER + PROMPT_BOX)

    @pytest.mark.parametrize("echo", ["> s", "> sa", "> say hello world"])
    def test_echoed_prefixes_do_not_flush(self, echo):
        assert not AssistantCliStrategy().should_flush(echo, echo, raw_chunk=f"│ {echo} │")

    def test_progress_line_does_not_flush(self):
        line = "✻ Cogitating… (3s · esc to interrupt)"
        assert not AssistantCliStrategy().should_flush(line, line, raw_chunk=line)

    def test_progress_after_marker_does_not_flush(self):
        line = "✳ Thinking…"
        buffer = f"⏺ Partial\n{line}"
        assert not AssistantCliStrategy().should_flush(line, buffer, raw_chunk=f"{line}\n╰───╯")

    def test_closing_border_after_response_flushes(self):
        raw = "⏺ Hello! How can I help?\n\n" + PROMPT_BOX
        assert AssistantCliStrategy().should_flush(
            "⏺ Hello! How can I help?", "⏺ Hello! How can I help?", raw_chunk=raw
        )

    def test_border_before_marker_does_not_flush(self):
        raw = PROMPT_BOX + "\n⏺ Starting"
        assert not AssistantCliStrategy().should_flush("⏺ Starting", "⏺ Starting", raw_chunk=raw)

    def test_second_marker_flushes(self):
        buffer = "● First answer\n● Second"
        assert AssistantCliStrategy().should_flush("● Second", buffer, raw_chunk="● Second")

    def test_no_marker_never_flushes(self):
        assert not AssistantCliStrategy().should_flush("text", "text", raw_chunk=PROMPT_BOX)

    def test_ellipsis_content_closed_by_border_flushes(self):
        chunk = "Then we wait for the build..."
        buffer = f"● Here is the plan\n{chunk}"
        raw = f"{chunk}\n{PROMPT_BOX}"
        assert AssistantCliStrategy().should_flush(chunk, buffer, raw_chunk=raw)

    def test_spinner_with_esc_hint_holds_flush(self):
        line = "Reading files… (12s · esc to interrupt)"
        buffer = f"● Partial\n{line}"
        assert not AssistantCliStrategy().should_flush(line, buffer, raw_chunk=f"{line}\n{PROMPT_BOX}")

    @pytest.mark.parametrize("prompt", [
        "Invalid API key · Please run /login",
        "Choose login method:",
        "Browser didn't open? Use the url below to sign in:\nhttps://console.anthropic.com/oauth/authorize?code=abc",
        "Login successful. You are successfully authenticated.",
    ])
    def test_login_prompts_flush_without_marker(self, prompt):
        assert AssistantCliStrategy().should_flush(prompt, prompt, raw_chunk=prompt)


class TestAssistantCliFlushBoundary:
    def test_single_block_flushes_whole_buffer(self):
        buffer = "● Only answer"
        assert AssistantCliStrategy().flush_boundary(buffer, raw_chunk=buffer) == len(buffer)

    def test_second_open_block_is_kept(self):
        buffer = "● First answer\n● Second answer begins"
        boundary = AssistantCliStrategy().flush_boundary(buffer, raw_chunk="● Second answer begins")
        assert buffer[:boundary] == "● First answer\n"
        assert buffer[boundary:] == "● Second answer begins"

    def test_indented_marker_line_kept_whole(self):
        buffer = "⏺ First\n  ⏺ Second"
        boundary = AssistantCliStrategy().flush_boundary(buffer, raw_chunk="  ⏺ Second")
        assert buffer[boundary:] == "  ⏺ Second"

    def test_closed_second_block_flushes_everything(self):
        buffer = "● First\n● Second"
        raw = "● Second\n" + PROMPT_BOX
        assert AssistantCliStrategy().flush_boundary(buffer, raw_chunk=raw) == len(buffer)

    def test_default_strategy_flushes_everything(self):
        assert DefaultStrategy().flush_boundary("a\nb") == 3


class TestAssistantCliLines:
    def test_input_echo_ignored(self):
        strategy = AssistantCliStrategy()
        assert strategy.should_ignore_line("│ > say hello │")
        assert strategy.should_ignore_line(">")

    def test_shortcut_hint_ignored(self):
        assert AssistantCliStrategy().should_ignore_line("? for shortcuts")

    def test_response_line_kept(self):
        assert not AssistantCliStrategy().should_ignore_line("⏺ Answer (esc to interrupt)")

    def test_progress_detection(self):
        assert AssistantCliStrategy.is_progress_line("✻ Pondering… (5s)")
        assert AssistantCliStrategy.is_progress_line("Working...")
        assert not AssistantCliStrategy.is_progress_line("⏺ Loading…")
        assert not AssistantCliStrategy.is_progress_line("plain answer")

    def test_post_process_keeps_text_after_first_marker(self):
        text = "Welcome banner\n⏺ Line one\n\n\n\nLine two\n"
        assert AssistantCliStrategy().post_process(text) == "Line one\n\nLine two"

    def test_post_process_strips_later_markers(self):
        text = "● First\n● Second"
        assert AssistantCliStrategy().post_process(text) == "First\nSecond"

    def test_post_process_without_marker(self):
        assert AssistantCliStrategy().post_process("  Processing\n…  ") == "Processing\n…"


class TestBuildStrategies:
    def test_order_and_defaults(self):
        assistant, default = build_strategies()
        assert isinstance(assistant, AssistantCliStrategy)
        assert isinstance(default, DefaultStrategy)
        assert assistant.idle_timeout == 15.0
        assert default.idle_timeout == 0.75
        assert assistant.detection_keywords == ("claude", "anthropic")

    def test_config_values_in_milliseconds(self):
        config = StrategiesConfig(
            default=StrategyConfig(idle_timeout_ms=500),
            assistant_cli=StrategyConfig(idle_timeout_ms=30000, detection_keywords=["Aider"]),
        )
        assistant, default = build_strategies(config)
        assert assistant.idle_timeout == 30.0
        assert default.idle_timeout == 0.5
        assert assistant.detection_keywords == ("aider",)
