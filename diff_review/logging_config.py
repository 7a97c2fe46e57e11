"""Console logging for the diff-review command line."""

from __future__ import annotations

import logging
import sys

import click

PACKAGE_LOGGER = "diff_review"

_LEVEL_COLORS = {
    logging.DEBUG: "cyan",
    logging.INFO: "green",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class ColoredFormatter(logging.Formatter):
    """Prefix each record with a level name coloured by severity."""

    format_str = "%(levelname)s %(name)s: %(message)s"

    def __init__(self, *, use_color: bool = True) -> None:
        super().__init__(self.format_str)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if not self.use_color:
            return message
        color = _LEVEL_COLORS.get(record.levelno)
        if color is None:
            return message
        return click.style(message, fg=color, bold=record.levelno >= logging.CRITICAL)


def configure_logging(debug: bool = False) -> logging.Logger:
    """Install a single stderr handler on the package logger."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColoredFormatter(use_color=sys.stderr.isatty()))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False
    return logger
