from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable

from termrelay.config import DebugConfig

TRACE = 5
ROOT_LOGGER = "termrelay"

logging.addLevelName(TRACE, "TRACE")


def _trace(self, message, *args, **kwargs):
    if self.isEnabledFor(TRACE):
        self._log(TRACE, message, args, **kwargs)


logging.Logger.trace = _trace

_CONSOLE_FMT = "%(levelname)s %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s:%(funcName)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefix every message with a session's id, read when the record is made.

    Sessions can be renamed while running; reading the id lazily keeps
    their log lines under the name the user currently sees.
    """

    def __init__(self, logger: logging.Logger, session_id: Callable[[], str]) -> None:
        super().__init__(logger, {})
        self._session_id = session_id

    def process(self, msg, kwargs):
        return f"Session {self._session_id()}: {msg}", kwargs

    def trace(self, msg, *args, **kwargs):
        self.log(TRACE, msg, *args, **kwargs)


def setup_logging(config: DebugConfig) -> logging.Logger:
    """Configure the ``termrelay`` logger from the debug settings.

    The console shows INFO, DEBUG when debugging or tracing, and TRACE
    when tracing verbosely. Tracing also writes every record, raw chunk
    sizes from the stream readers included, to a timestamped file under
    ``config.trace_dir``. Calling it again replaces the previous handlers.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(TRACE)

    console = logging.StreamHandler()
    if config.trace and config.verbose:
        console.setLevel(TRACE)
    elif config.enabled or config.trace:
        console.setLevel(logging.DEBUG)
    else:
        console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(_CONSOLE_FMT))
    root.addHandler(console)

    if config.trace:
        os.makedirs(config.trace_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        filepath = os.path.join(config.trace_dir, f"trace-{timestamp}.log")
        fh = logging.FileHandler(filepath)
        fh.setLevel(TRACE)
        fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_FILE_DATEFMT))
        root.addHandler(fh)
        root.debug("Tracing to %s", filepath)

    return root
