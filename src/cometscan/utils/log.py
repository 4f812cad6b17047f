"""
Console logging for the CLI.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the entry point.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> logging.Logger:
    """
    Install a single RichHandler on the root logger.

    :param level: Level name, e.g. ``"DEBUG"``.
    :param console: Console to render to; stderr if omitted.
    :return: The root logger.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    # Calling twice must not duplicate output.
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root
