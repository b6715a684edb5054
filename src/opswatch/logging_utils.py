"""
Logging setup for opswatch.

Usage:
    from opswatch.logging_utils import configure_logging

    configure_logging("DEBUG")

Modules use ``logging.getLogger(__name__)``.
"""

import logging
import sys

DEFAULT_FORMAT = "[opswatch] %(name)s - %(levelname)s - %(message)s"

_logger_configured = False


def configure_logging(level: int | str = logging.INFO, format_string: str | None = None,
                      force: bool = False) -> None:
    """
    Configure the root logger once. Logs go to stderr so stdout stays clean
    for command output and the MCP stdio transport.

    Args:
        level: Logging level name or number (default: INFO)
        format_string: Custom format string (optional)
        force: Reconfigure even if already configured
    """
    global _logger_configured

    if _logger_configured and not force:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=format_string or DEFAULT_FORMAT,
        stream=sys.stderr,
        force=True,
    )

    _logger_configured = True
