"""
Centralized logging utilities for ab_av1

Provides consistent logging patterns with configurable debug levels:
- [INFO] for general information
- [WARN] for warnings
- [ERROR] for errors
- [RESULT] for final results
- [DEBUG] for debug information
- [CMD] for spawned command lines (debug only)
- [SAMPLE] for per-sample encode results
- [VMAF] for quality analyzer messages
- [CACHE] for sample-encode cache messages
- [CRF-SEARCH] for search iterations
- [CLEANUP] for temporary file cleanup

All messages go to stderr through ``tqdm.write`` so live progress bars stay
intact and stdout only carries results.

Usage:
    from ab_av1.utils.logging import get_logger, set_debug_mode

    set_debug_mode(True)
    logger = get_logger("crf_search")
    logger.info("This is an info message")
    logger.crf_search("crf 32 VMAF 94.10 (61%)")
"""

import os
import sys
from enum import Enum
from typing import Optional

from tqdm import tqdm

# Global logging configuration
_DEBUG_ENABLED = False
_QUIET_MODE = False
_LOG_LEVEL = "INFO"


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


def _init_debug_mode():
    global _DEBUG_ENABLED
    if os.getenv('DEBUG', '').lower() in ('1', 'true', 'yes'):
        _DEBUG_ENABLED = True


_init_debug_mode()


def set_debug_mode(enabled: bool):
    """Enable or disable debug mode globally"""
    global _DEBUG_ENABLED
    _DEBUG_ENABLED = enabled


def set_quiet_mode(enabled: bool):
    """Enable or disable quiet mode (suppress INFO and DEBUG messages)"""
    global _QUIET_MODE
    _QUIET_MODE = enabled


def set_log_level(level: str):
    """Set the global log level: DEBUG, INFO, WARN, ERROR"""
    global _LOG_LEVEL
    _LOG_LEVEL = level.upper()
    if _LOG_LEVEL == "DEBUG":
        set_debug_mode(True)


def get_debug_mode() -> bool:
    """Get current debug mode setting"""
    return _DEBUG_ENABLED


def _emit(line: str):
    tqdm.write(line, file=sys.stderr)


class Logger:
    """Centralized logger with consistent formatting and configurable output"""

    def __init__(self, module_name: str = ""):
        self.module_name = module_name

    def _should_log(self, level: LogLevel) -> bool:
        """Check if message should be logged based on current settings"""
        if _QUIET_MODE and level in (LogLevel.DEBUG, LogLevel.INFO):
            return False
        if level == LogLevel.DEBUG and not _DEBUG_ENABLED:
            return False

        current_level = LogLevel.__members__.get(_LOG_LEVEL, LogLevel.INFO)
        return level.value >= current_level.value

    def _log(self, level: LogLevel, tag: str, message: str):
        if self._should_log(level):
            prefix = f"[{self.module_name}] " if self.module_name and _DEBUG_ENABLED else ""
            _emit(f"[{tag}] {prefix}{message}")

    def debug(self, message: str):
        """Log debug message (only if debug mode enabled)"""
        self._log(LogLevel.DEBUG, "DEBUG", message)

    def info(self, message: str):
        self._log(LogLevel.INFO, "INFO", message)

    def warn(self, message: str):
        self._log(LogLevel.WARN, "WARN", message)

    def error(self, message: str):
        self._log(LogLevel.ERROR, "ERROR", message)

    def result(self, message: str):
        self._log(LogLevel.INFO, "RESULT", message)

    # Domain-specific logging methods
    def cmd(self, message: str):
        """Log a spawned command line"""
        self._log(LogLevel.DEBUG, "CMD", message)

    def sample(self, message: str):
        """Log a per-sample encode result"""
        self._log(LogLevel.INFO, "SAMPLE", message)

    def vmaf(self, message: str):
        self._log(LogLevel.INFO, "VMAF", message)

    def cache(self, message: str):
        self._log(LogLevel.DEBUG, "CACHE", message)

    def crf_search(self, message: str):
        """Log a search iteration"""
        self._log(LogLevel.INFO, "CRF-SEARCH", message)

    def encoder(self, message: str):
        self._log(LogLevel.INFO, "ENCODER", message)

    def cleanup(self, message: str):
        """Log cleanup operation"""
        self._log(LogLevel.DEBUG, "CLEANUP", message)


def get_logger(module_name: str = "") -> Logger:
    """Get a logger instance for a module"""
    return Logger(module_name)


def create_progress_bar(total: Optional[int] = None, desc: str = "", unit: str = "it",
                        position: Optional[int] = None, leave: bool = True,
                        disable: Optional[bool] = None) -> tqdm:
    """Create a progress bar with consistent styling"""
    if disable is None:
        disable = _QUIET_MODE
    return tqdm(total=total, desc=desc, unit=unit, position=position, leave=leave,
                file=sys.stderr, disable=disable, dynamic_ncols=True,
                bar_format="{desc} {bar} {percentage:3.0f}% {postfix} [{elapsed}<{remaining}]")
