"""
geoconv Logging Configuration
Attaches console and optional file handlers to the geoconv module loggers.
Library modules only create loggers; applications call setup_logging once.
"""

import logging
import sys
from typing import Optional

LOGGER_NAMES = (
    "geoconv_backends",
    "geoconv_conversion",
    "geoconv_export",
    "geoconv_formats",
    "geoconv_import",
    "geoconv_loaders",
    "geoconv_mesh",
    "geoconv_scene",
    "geoconv_writers",
    "geoconv_xfile_parser",
)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configures the loggers of every geoconv module.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
    """
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    file_handler = None
    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        # Re-running replaces handlers instead of duplicating output
        logger.handlers.clear()
        logger.addHandler(console_handler)
        if file_handler is not None:
            logger.addHandler(file_handler)
        logger.propagate = False

    logging.getLogger("geoconv_conversion").info("Logging initialized.")
