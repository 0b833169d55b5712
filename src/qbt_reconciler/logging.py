"""
Logging setup for qbt-reconciler

File handler plus stdout console handler, with an optional trace format
that includes module, function and line number.
"""

import sys
import logging
from pathlib import Path


LOG_FORMAT_SIMPLE = '%(asctime)s [%(levelname)s] %(message)s'
LOG_FORMAT_DETAILED = '%(asctime)s [%(levelname)s] %(name)s %(module)s.%(funcName)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config, trace_mode: bool = False):
    """
    Configure root logger with file and console handlers

    Args:
        config: Configuration object providing get_log_level() and get_log_file()
        trace_mode: Use detailed format with module/function/line information
    """
    level_name = str(config.get_log_level()).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = LOG_FORMAT_DETAILED if trace_mode else LOG_FORMAT_SIMPLE
    formatter = logging.Formatter(log_format, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers when setup runs more than once
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    log_file = Path(config.get_log_file())
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    except (OSError, PermissionError) as e:
        print(f"WARNING: Failed to setup file logging at {log_file}: {type(e).__name__}: {e}", file=sys.stderr)
        print("WARNING: Continuing with console logging only", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # qbittorrent-api and urllib3 are chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('qbittorrentapi').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger"""
    return logging.getLogger(name)
