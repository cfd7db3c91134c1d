"""Leveled reporting used by scripts and the scheduler."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:  # pragma: no cover
    from .scheduler import Scheduler

DEBUG_LOGGER = "pomelobot.debug"
REPLICATOR_LOGGER = "pomelobot.replicator"
FILE_LOGGER = "pomelobot.replicator.file"
LOG_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILE_DATEFMT = "%Y/%m/%d-%H:%M:%S"


class LogLevel(enum.IntEnum):
    VERBOSE = 0
    INFO = 1
    WARN = 2
    ERROR = 3

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    LogLevel.VERBOSE: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_LEVEL_NAMES = {
    "0": LogLevel.VERBOSE,
    "v": LogLevel.VERBOSE,
    "verbose": LogLevel.VERBOSE,
    "1": LogLevel.INFO,
    "i": LogLevel.INFO,
    "info": LogLevel.INFO,
    "2": LogLevel.WARN,
    "w": LogLevel.WARN,
    "warn": LogLevel.WARN,
    "warning": LogLevel.WARN,
    "3": LogLevel.ERROR,
    "e": LogLevel.ERROR,
    "error": LogLevel.ERROR,
}


def parse_level(value: Union[LogLevel, int, str, None]) -> LogLevel:
    """Map CLI/config spellings onto a LogLevel (unknown -> INFO)."""
    if value is None or value == "":
        return LogLevel.INFO
    if isinstance(value, LogLevel):
        return value
    return _LEVEL_NAMES.get(str(value).strip().lower(), LogLevel.INFO)


def format_args(*args: Any) -> str:
    return " ".join(str(arg) for arg in args)


class Reporter:
    """Sink interface consumed by :class:`pomelobot.script.Script`.

    The base implementation drops everything, so callers only override the
    channels they care about.
    """

    def verbose(self, *args: Any) -> None:
        pass

    def info(self, *args: Any) -> None:
        pass

    def warn(self, *args: Any) -> None:
        pass

    def error(self, err: Any) -> None:
        pass

    def end(self) -> None:
        pass


class LoggingReporter(Reporter):
    """Reporter forwarding to a stdlib logger; used by single-run mode."""

    def __init__(self, logger: Optional[logging.Logger] = None, *, prefix: str = "") -> None:
        self.logger = logger or logging.getLogger("pomelobot.script")
        self.prefix = prefix
        self.errors: list[BaseException] = []
        self.ended = False

    def _emit(self, level: int, args: tuple) -> None:
        text = format_args(*args)
        self.logger.log(level, "%s%s", self.prefix, text)

    def verbose(self, *args: Any) -> None:
        self._emit(logging.DEBUG, args)

    def info(self, *args: Any) -> None:
        self._emit(logging.INFO, args)

    def warn(self, *args: Any) -> None:
        self._emit(logging.WARNING, args)

    def error(self, err: Any) -> None:
        if isinstance(err, BaseException):
            self.errors.append(err)
        self._emit(logging.ERROR, (err,))

    def end(self) -> None:
        self.ended = True


@dataclass
class LogSettings:
    level: LogLevel = LogLevel.INFO
    console: bool = True
    log_file: Optional[Path] = None


class LeveledLog:
    """Four-level log gate owned by a Scheduler.

    Every call reaches the raw ``pomelobot.debug`` logger; calls at or above the
    configured level also reach the human-facing replicator logger and the
    optional log file.
    """

    def __init__(self, settings: Optional[LogSettings] = None) -> None:
        self.settings = settings or LogSettings()
        self.level = parse_level(self.settings.level)
        self._debug = logging.getLogger(DEBUG_LOGGER)
        self._console = logging.getLogger(REPLICATOR_LOGGER)
        self._file_logger: Optional[logging.Logger] = None
        self._file_handler: Optional[logging.FileHandler] = None
        if self.settings.log_file is not None:
            self._open_file(Path(self.settings.log_file))

    def _open_file(self, path: Path) -> None:
        path = path if path.is_absolute() else Path.cwd() / path
        handler = logging.FileHandler(path, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT, datefmt=LOG_FILE_DATEFMT))
        # the file logger is shared; each handler keeps only its owner's records
        handler.addFilter(lambda record: getattr(record, "leveled_log", None) is self)
        file_logger = logging.getLogger(FILE_LOGGER)
        file_logger.setLevel(logging.DEBUG)
        file_logger.propagate = False
        file_logger.addHandler(handler)
        self._file_logger = file_logger
        self._file_handler = handler

    def close(self) -> None:
        if self._file_logger is not None and self._file_handler is not None:
            self._file_logger.removeHandler(self._file_handler)
            self._file_handler.close()
        self._file_logger = None
        self._file_handler = None

    def enabled(self, level: LogLevel) -> bool:
        return level >= self.level

    def log(self, level: LogLevel, *args: Any) -> None:
        text = format_args(*args)
        self._debug.debug("[%s] %s", level.name.lower(), text)
        if not self.enabled(level):
            return
        if self.settings.console:
            self._console.log(level.logging_level, text)
        if self._file_logger is not None:
            self._file_logger.log(level.logging_level, text, extra={"leveled_log": self})

    def verbose(self, *args: Any) -> None:
        self.log(LogLevel.VERBOSE, *args)

    def info(self, *args: Any) -> None:
        self.log(LogLevel.INFO, *args)

    def warn(self, *args: Any) -> None:
        self.log(LogLevel.WARN, *args)

    def error(self, *args: Any) -> None:
        self.log(LogLevel.ERROR, *args)


class InstanceReporter(Reporter):
    """Reporter for one scheduler instance: tags lines and disposes on exit."""

    def __init__(
        self,
        scheduler: "Scheduler",
        instance_id: int,
        domain: str,
    ) -> None:
        self.scheduler = scheduler
        self.instance_id = instance_id
        self.domain = domain
        self.finished = False

    def verbose(self, *args: Any) -> None:
        self.scheduler.verbose(self.domain, *args)

    def info(self, *args: Any) -> None:
        self.scheduler.info(self.domain, *args)

    def warn(self, *args: Any) -> None:
        self.scheduler.warn(self.domain, *args)

    def error(self, err: Any) -> None:
        self.scheduler.error(self.domain, err)
        self._finish()

    def end(self) -> None:
        self.scheduler.info(self.domain, "complete")
        self._finish()
        self.scheduler.warn("ccu:", f"{self.scheduler.concurrency}/{self.scheduler.max_concurrency}")

    def _finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        self.scheduler.dispose(self.instance_id)


__all__ = [
    "LogLevel",
    "parse_level",
    "Reporter",
    "LoggingReporter",
    "LogSettings",
    "LeveledLog",
    "InstanceReporter",
]
