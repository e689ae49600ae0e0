"""Terminal output cleaning: emulator → sanitizer → strategies."""

from termrelay.parsing.screen_emulator import ScreenEmulator  # noqa: F401
from termrelay.parsing.strategies import (  # noqa: F401
    AssistantCliStrategy,
    DefaultStrategy,
    OutputStrategy,
    build_strategies,
)

__all__ = [
    "AssistantCliStrategy",
    "DefaultStrategy",
    "OutputStrategy",
    "ScreenEmulator",
    "build_strategies",
]
