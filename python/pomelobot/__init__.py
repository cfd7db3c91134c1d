"""
pomelobot - Scripted robot clients for Pomelo game servers.

This package speaks the Pomelo wire protocol over WebSocket and drives
simulated players from declarative step lists.  Each concern lives in its own
module:

    codec.py       → package / message framing
    transport.py   → WebSocket connection
    session.py     → handshake, heartbeat, request correlation, pushes
    templating.py  → $session / $options / $args / $env substitution
    expect.py      → response expectations and assertion expressions
    script.py      → step compiler and interpreter
    reporter.py    → leveled logging and per-instance reporters
    scheduler.py   → admission-controlled replication of scripts
    config.py      → run configuration
    loader.py      → YAML script files
"""

from .codec import Message, MessageType, Package, PackageType, PomeloCodec  # noqa: F401
from .errors import (  # noqa: F401
    CodecError,
    CompilationError,
    ConnectionClosedError,
    ExpectationError,
    HandshakeError,
    HeartbeatTimeoutError,
    PomeloBotError,
    RouteCompressionError,
    ScriptLoadError,
    SessionTimeoutError,
    TemplateLookupError,
    TransportError,
)
from .transport import TransportConfig, WebSocketTransport  # noqa: F401
from .session import HeartbeatState, Session, SessionConfig, SessionState  # noqa: F401
from .templating import VariableScope  # noqa: F401
from .expect import Assertion, match_expected  # noqa: F401
from .reporter import InstanceReporter, LeveledLog, LoggingReporter, LogLevel, LogSettings, Reporter  # noqa: F401
from .script import Script, ScriptRuntime, compile_steps  # noqa: F401
from .scheduler import Scheduler, SchedulerConfig, script_task  # noqa: F401
from .config import RobotConfig  # noqa: F401
from .loader import load_script  # noqa: F401

__all__ = [
    "PomeloCodec",
    "Package",
    "PackageType",
    "Message",
    "MessageType",
    "PomeloBotError",
    "TransportError",
    "ConnectionClosedError",
    "HandshakeError",
    "SessionTimeoutError",
    "HeartbeatTimeoutError",
    "RouteCompressionError",
    "CodecError",
    "CompilationError",
    "TemplateLookupError",
    "ExpectationError",
    "ScriptLoadError",
    "TransportConfig",
    "WebSocketTransport",
    "Session",
    "SessionConfig",
    "SessionState",
    "HeartbeatState",
    "VariableScope",
    "Assertion",
    "match_expected",
    "Reporter",
    "LoggingReporter",
    "LeveledLog",
    "LogLevel",
    "LogSettings",
    "InstanceReporter",
    "Script",
    "ScriptRuntime",
    "compile_steps",
    "Scheduler",
    "SchedulerConfig",
    "script_task",
    "RobotConfig",
    "load_script",
]

__version__ = "0.1.0"
