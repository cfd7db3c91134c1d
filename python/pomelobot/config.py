"""Run configuration shared by the CLI, scripts and the scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .reporter import LogLevel, LogSettings, parse_level
from .scheduler import SchedulerConfig, default_prefix
from .session import SessionConfig
from .transport import TransportConfig

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 3010
DEFAULT_TIMEOUT = 3.0
DEFAULT_INTERVAL = 0.25
DEFAULT_CONCURRENCY = 100


@dataclass
class RobotConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ssl: bool = False
    uri: Optional[str] = None
    request_timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_TIMEOUT
    interval: float = DEFAULT_INTERVAL
    concurrency: int = DEFAULT_CONCURRENCY
    level: LogLevel = LogLevel.INFO
    prefix: str = field(default_factory=default_prefix)
    log_file: Optional[Path] = None
    sustain: bool = False

    @classmethod
    def from_args(cls, args: Any) -> "RobotConfig":
        """Build from an argparse namespace; durations there are milliseconds."""
        config = cls()
        if getattr(args, "host", None):
            config.host = args.host
        if getattr(args, "port", None) is not None:
            config.port = int(args.port)
        config.ssl = bool(getattr(args, "ssl", False))
        config.uri = getattr(args, "uri", None) or None
        timeout = getattr(args, "timeout", None)
        if timeout is not None:
            if timeout <= 0:
                raise ValueError("timeout must be positive")
            config.request_timeout = config.connect_timeout = timeout / 1000.0
        interval = getattr(args, "interval", None)
        if interval is not None:
            if interval <= 0:
                raise ValueError("interval must be positive")
            config.interval = interval / 1000.0
        concurrency = getattr(args, "concurrency", None)
        if concurrency is not None:
            if concurrency < 1:
                raise ValueError("concurrency must be at least 1")
            config.concurrency = int(concurrency)
        config.level = parse_level(getattr(args, "level", None))
        if getattr(args, "prefix", None):
            config.prefix = args.prefix
        log_file = getattr(args, "log", None)
        config.log_file = Path(log_file) if log_file else None
        config.sustain = bool(getattr(args, "sustain", False))
        return config

    def transport_config(self) -> TransportConfig:
        return TransportConfig(
            uri=self.uri,
            host=self.host,
            port=self.port,
            ssl=self.ssl,
            connect_timeout=self.connect_timeout,
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(request_timeout=self.request_timeout, connect_timeout=self.connect_timeout)

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            interval=self.interval,
            concurrency=self.concurrency,
            prefix=self.prefix,
            sustain=self.sustain,
        )

    def log_settings(self) -> LogSettings:
        return LogSettings(level=self.level, log_file=self.log_file)

    def options(self) -> Dict[str, Any]:
        """The ``$options`` map exposed to scripts."""
        return {
            "host": self.host,
            "port": self.port,
            "ssl": self.ssl,
            "uri": self.uri,
            "timeout": int(self.request_timeout * 1000),
        }


__all__ = ["RobotConfig", "DEFAULT_HOST", "DEFAULT_PORT"]
