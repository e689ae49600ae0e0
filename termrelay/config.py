from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

SHELL_MODES = ("pipe", "pty")
INPUT_METHODS = ("direct", "with_delay", "character")


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass
class ShellConfig:
    """How the interactive shell of every session is spawned.

    ``command`` of None selects the platform default shell.
    """

    mode: str = "pipe"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionsConfig:
    """Session limits and monitoring cadence."""

    max_sessions: int = 10
    idle_poll_interval_ms: int = 250
    kill_grace_ms: int = 500
    auto_select_first_option: bool = False


@dataclass
class StrategyConfig:
    """Tunables for one output strategy."""

    idle_timeout_ms: int
    detection_keywords: list[str] = field(default_factory=list)


@dataclass
class StrategiesConfig:
    default: StrategyConfig = field(
        default_factory=lambda: StrategyConfig(idle_timeout_ms=750)
    )
    assistant_cli: StrategyConfig = field(
        default_factory=lambda: StrategyConfig(
            idle_timeout_ms=15000, detection_keywords=["claude", "anthropic"],
        )
    )


@dataclass
class PaginationConfig:
    """Automatic "continue" keystrokes sent after paced input."""

    enabled: bool = False
    max_attempts: int = 3
    delay_ms: int = 1000


@dataclass
class InteractiveAppConfig:
    """An interactive program recognised by keywords in the command history."""

    name: str
    detection_keywords: list[str]
    input_method: str = "direct"
    character_delay_ms: int = 0
    pagination: PaginationConfig = field(default_factory=PaginationConfig)

    def matches(self, text: str) -> bool:
        """Check whether any detection keyword occurs in ``text`` (case-insensitive)."""
        lowered = text.lower()
        return any(keyword.lower() in lowered for keyword in self.detection_keywords)


@dataclass
class DebugConfig:
    """Logging switches; command-line flags can only turn them on."""

    enabled: bool = False
    trace: bool = False
    verbose: bool = False
    trace_dir: str = "debug"


@dataclass
class AppConfig:
    """Top-level application configuration aggregating all subsections."""

    shell: ShellConfig = field(default_factory=ShellConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    strategies: StrategiesConfig = field(default_factory=StrategiesConfig)
    interactive_apps: list[InteractiveAppConfig] = field(default_factory=list)
    debug: DebugConfig = field(default_factory=DebugConfig)


def _positive(value, name: str) -> int:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return value


def _load_strategy(raw: dict, name: str, default: StrategyConfig) -> StrategyConfig:
    return StrategyConfig(
        idle_timeout_ms=_positive(
            raw.get("idle_timeout_ms", default.idle_timeout_ms),
            f"strategies.{name}.idle_timeout_ms",
        ),
        detection_keywords=list(
            raw.get("detection_keywords", default.detection_keywords) or []
        ),
    )


def _load_debug(raw: dict) -> DebugConfig:
    trace_dir = raw.get("trace_dir", "debug")
    if not isinstance(trace_dir, str) or not trace_dir.strip():
        raise ConfigError(f"debug.trace_dir must be a non-empty path, got {trace_dir!r}")
    return DebugConfig(
        enabled=bool(raw.get("enabled", False)),
        trace=bool(raw.get("trace", False)),
        verbose=bool(raw.get("verbose", False)),
        trace_dir=trace_dir,
    )


def _load_app(raw: dict, index: int) -> InteractiveAppConfig:
    name = raw.get("name") or f"app{index}"
    keywords = raw.get("detection_keywords") or []
    if not keywords:
        raise ConfigError(f"interactive_apps[{name}].detection_keywords must not be empty")
    method = raw.get("input_method", "direct")
    if method not in INPUT_METHODS:
        raise ConfigError(
            f"interactive_apps[{name}].input_method must be one of "
            f"{', '.join(INPUT_METHODS)}, got {method!r}"
        )
    delay = raw.get("character_delay_ms", 0)
    if not isinstance(delay, int) or delay < 0:
        raise ConfigError(f"interactive_apps[{name}].character_delay_ms must be >= 0")
    pagination_raw = raw.get("pagination", {}) or {}
    pagination = PaginationConfig(
        enabled=bool(pagination_raw.get("enabled", False)),
        max_attempts=int(pagination_raw.get("max_attempts", 3)),
        delay_ms=_positive(
            pagination_raw.get("delay_ms", 1000),
            f"interactive_apps[{name}].pagination.delay_ms",
        ),
    )
    return InteractiveAppConfig(
        name=name,
        detection_keywords=list(keywords),
        input_method=method,
        character_delay_ms=delay,
        pagination=pagination,
    )


def parse_config(raw: dict | None) -> AppConfig:
    """Build a validated AppConfig from an already-parsed mapping.

    Args:
        raw: Mapping as produced by ``yaml.safe_load``. None is treated as
            an empty document.

    Returns:
        A fully populated AppConfig with defaults applied.

    Raises:
        ConfigError: If a value is out of range or of an unknown kind.
    """
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    # `or {}` fallback handles YAML null values for optional sections
    shell_raw = raw.get("shell", {}) or {}
    sessions_raw = raw.get("sessions", {}) or {}
    strategies_raw = raw.get("strategies", {}) or {}
    apps_raw = raw.get("interactive_apps", []) or []

    mode = shell_raw.get("mode", "pipe")
    if mode not in SHELL_MODES:
        raise ConfigError(f"shell.mode must be one of {', '.join(SHELL_MODES)}, got {mode!r}")

    max_sessions = sessions_raw.get("max_sessions", 10)
    if not isinstance(max_sessions, int) or max_sessions < 1:
        raise ConfigError("sessions.max_sessions must be at least 1")

    kill_grace_ms = sessions_raw.get("kill_grace_ms", 500)
    if not isinstance(kill_grace_ms, int) or kill_grace_ms < 0:
        raise ConfigError("sessions.kill_grace_ms must be >= 0")

    defaults = StrategiesConfig()
    config = AppConfig(
        shell=ShellConfig(
            mode=mode,
            command=shell_raw.get("command"),
            args=list(shell_raw.get("args", []) or []),
            cwd=shell_raw.get("cwd"),
            env=dict(shell_raw.get("env", {}) or {}),
        ),
        sessions=SessionsConfig(
            max_sessions=max_sessions,
            idle_poll_interval_ms=_positive(
                sessions_raw.get("idle_poll_interval_ms", 250),
                "sessions.idle_poll_interval_ms",
            ),
            kill_grace_ms=kill_grace_ms,
            auto_select_first_option=bool(
                sessions_raw.get("auto_select_first_option", False)
            ),
        ),
        strategies=StrategiesConfig(
            default=_load_strategy(
                strategies_raw.get("default", {}) or {}, "default", defaults.default
            ),
            assistant_cli=_load_strategy(
                strategies_raw.get("assistant_cli", {}) or {},
                "assistant_cli",
                defaults.assistant_cli,
            ),
        ),
        interactive_apps=[_load_app(app or {}, i) for i, app in enumerate(apps_raw)],
        debug=_load_debug(raw.get("debug", {}) or {}),
    )
    logger.debug(
        "Config: shell mode=%s max_sessions=%d apps=%s",
        config.shell.mode,
        config.sessions.max_sessions,
        [app.name for app in config.interactive_apps],
    )
    return config


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Args:
        path: Filesystem path to the YAML configuration file.

    Returns:
        A fully populated AppConfig instance.

    Raises:
        ConfigError: If the file does not exist, is not valid YAML, or
            holds invalid values.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    logger.debug("Loaded config from %s", path)
    return parse_config(raw)
