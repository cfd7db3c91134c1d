"""Robot script compiler and interpreter.

A script is a list of one-key step mappings, usually loaded from YAML::

    - connect: {host: $options.host, port: 3010}
    - emit:
        route: connector.entryHandler.entry
        data: {name: $args.name}
        expect: {code: 200}
        session: {uid: user.id}
    - emit:
        route: area.playerHandler.move
        data: {uid: $session.uid}
        repeat: {count: 10, sleep: 500}
    - disconnect:

Each mapping is compiled once into a :class:`Step` object; running the script
executes the steps in order against a fresh :class:`ScriptRuntime`.  Durations
inside scripts (``sleep``, ``repeat.sleep``, ``connect.timeout``) are in
milliseconds.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import CompilationError, TransportError
from .expect import Assertion, compile_assertions, match_expected
from .reporter import Reporter
from .session import Session, SessionConfig
from .templating import VariableScope
from .transport import NORMAL_CLOSURE, TransportConfig

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., Session]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)


class ScriptRuntime:
    """Per-run state: bound session, variable scope and reporter."""

    def __init__(
        self,
        script: "Script",
        reporter: Optional[Reporter] = None,
        args: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.script = script
        self.reporter = reporter or Reporter()
        self.scope = VariableScope(
            session={},
            options=script.options,
            args=args or {},
            environ=script.environ,
        )
        self.session: Optional[Session] = None
        self.error: Optional[BaseException] = None
        self.ended = False

    @property
    def finished(self) -> bool:
        return self.ended or self.error is not None

    def require_session(self) -> Session:
        if self.session is None:
            raise TransportError("no session: a connect step must run first")
        return self.session

    async def open_session(self, transport_config: TransportConfig, session_config: SessionConfig) -> Session:
        if self.session is not None and self.session.ready:
            await self.session.disconnect()
        session = self.script.session_factory(
            transport_config,
            session_config,
            error_handler=self.on_error,
            message_handler=self.on_message,
            kick_handler=self.on_kick,
            disconnect_handler=self.on_disconnect,
        )
        self.session = session
        self.reporter.info(f"connect: {session.uri}")
        await session.connect()
        return session

    async def close(self) -> None:
        session = self.session
        if session is not None and session.ready:
            await session.disconnect()

    def fail(self, exc: BaseException) -> None:
        if self.finished:
            self.reporter.warn(f"error after finish: {exc}")
            return
        self.error = exc
        self.reporter.error(exc)

    def finish(self) -> None:
        if self.finished:
            return
        self.ended = True
        self.reporter.end()

    # Session callbacks

    def on_error(self, exc: BaseException) -> None:
        self.reporter.warn(f"{type(exc).__name__}: {exc}")

    def on_message(self, route: Any, msg: Any) -> None:
        self.reporter.verbose("event:", route, _dump(msg))

    def on_kick(self, msg: Any) -> None:
        self.reporter.warn("kicked", _dump(msg))

    def on_disconnect(self, code: int, reason: str) -> None:
        if code != NORMAL_CLOSURE:
            self.fail(TransportError(f"disconnected: code: {code}, reason: {reason}"))
        else:
            self.reporter.info("disconnected")


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------


class Step:
    """Base class for compiled steps."""

    kind: ClassVar[str] = ""

    @property
    def forever(self) -> bool:
        return False

    async def execute(self, runtime: ScriptRuntime) -> None:
        raise NotImplementedError("Step must implement execute()")


@dataclass
class ConnectStep(Step):
    target: Any
    kind: ClassVar[str] = "connect"

    async def execute(self, runtime: ScriptRuntime) -> None:
        target = runtime.scope.resolve(self.target)
        transport_config, session_config = runtime.script.connect_configs(target)
        await runtime.open_session(transport_config, session_config)


@dataclass
class DisconnectStep(Step):
    kind: ClassVar[str] = "disconnect"

    async def execute(self, runtime: ScriptRuntime) -> None:
        session = runtime.require_session()
        runtime.reporter.info(f"disconnect: {session.uri}")
        await session.disconnect()


@dataclass
class SleepStep(Step):
    duration_ms: float
    kind: ClassVar[str] = "sleep"

    async def execute(self, runtime: ScriptRuntime) -> None:
        runtime.reporter.info(f"sleep: {self.duration_ms}")
        await asyncio.sleep(self.duration_ms / 1000.0)


@dataclass
class EchoStep(Step):
    value: Any
    kind: ClassVar[str] = "echo"

    async def execute(self, runtime: ScriptRuntime) -> None:
        runtime.reporter.verbose(_dump(runtime.scope.resolve(self.value)))


@dataclass(frozen=True)
class RepeatPolicy:
    count: Optional[int] = None
    sleep_ms: Optional[float] = None

    @property
    def forever(self) -> bool:
        return self.count is None


@dataclass
class EmitStep(Step):
    route: str
    data: Any = None
    expect: Any = None
    capture: Optional[Dict[str, str]] = None
    assertions: Tuple[Assertion, ...] = ()
    repeat: Optional[RepeatPolicy] = None
    kind: ClassVar[str] = "emit"

    @property
    def forever(self) -> bool:
        return self.repeat is not None and self.repeat.forever

    async def execute(self, runtime: ScriptRuntime) -> None:
        session = runtime.require_session()
        payload = runtime.scope.resolve(self.data)
        if payload is None:
            runtime.reporter.info(f"emit: {self.route}")
        else:
            runtime.reporter.info(f"emit: {self.route} {_dump(payload)}")
        repeat = self.repeat
        if repeat is None:
            await self._emit(runtime, session, payload)
            return
        count = repeat.count
        if count is None:
            runtime.reporter.info("repeat: forever")
            while True:
                await self._emit(runtime, session, payload)
                await self._pause(runtime, repeat)
        for cycle in range(1, count + 1):
            runtime.reporter.info(f"repeat: {cycle}/{count}")
            await self._emit(runtime, session, payload)
            if cycle < count:
                await self._pause(runtime, repeat)

    async def _emit(self, runtime: ScriptRuntime, session: Session, payload: Any) -> Any:
        response = await session.request(self.route, payload)
        runtime.reporter.verbose(_dump(response))
        if self.expect is not None:
            match_expected(response, runtime.scope.resolve(self.expect))
        for assertion in self.assertions:
            assertion.check(response, runtime.scope)
        if self.capture:
            runtime.scope.capture(self.capture, response)
        return response

    @staticmethod
    async def _pause(runtime: ScriptRuntime, repeat: RepeatPolicy) -> None:
        if repeat.sleep_ms:
            runtime.reporter.info(f"sleep: {repeat.sleep_ms}")
            await asyncio.sleep(repeat.sleep_ms / 1000.0)


@dataclass
class NotifyStep(Step):
    route: str
    data: Any = None
    kind: ClassVar[str] = "notify"

    async def execute(self, runtime: ScriptRuntime) -> None:
        session = runtime.require_session()
        payload = runtime.scope.resolve(self.data)
        runtime.reporter.info(f"notify: {self.route}" if payload is None else f"notify: {self.route} {_dump(payload)}")
        await session.notify(self.route, payload)


# ----------------------------------------------------------------------
# Compilation
# ----------------------------------------------------------------------


def _compile_connect(value: Any) -> Step:
    if isinstance(value, str) and value:
        return ConnectStep(value)
    if isinstance(value, Mapping) and value.get("host") and value.get("port"):
        return ConnectStep(copy.deepcopy(dict(value)))
    raise CompilationError("connect must be a URI string or an object with host and port")


def _compile_disconnect(value: Any) -> Step:
    return DisconnectStep()


def _compile_sleep(value: Any) -> Step:
    if not _is_number(value) or value < 0:
        raise CompilationError("sleep must be a non-negative number of milliseconds")
    return SleepStep(value)


def _compile_echo(value: Any) -> Step:
    if value is None:
        raise CompilationError("echo must be defined")
    return EchoStep(copy.deepcopy(value))


def _compile_repeat(value: Any) -> RepeatPolicy:
    if not isinstance(value, Mapping):
        raise CompilationError("repeat must be an object")
    count = value.get("count")
    sleep = value.get("sleep")
    if count is not None and (not isinstance(count, int) or isinstance(count, bool) or count < 1):
        raise CompilationError("repeat.count must be a positive integer")
    if sleep is not None and (not _is_number(sleep) or sleep < 0):
        raise CompilationError("repeat.sleep must be a non-negative number")
    return RepeatPolicy(count=count, sleep_ms=sleep)


def _compile_emit(value: Any) -> Step:
    if isinstance(value, str) and value:
        return EmitStep(route=value)
    if not isinstance(value, Mapping):
        raise CompilationError("emit must be a string or an object")
    route = value.get("route")
    if not isinstance(route, str) or not route:
        raise CompilationError("missing route in emit")
    expect = value.get("expect")
    if expect is not None and not isinstance(expect, Mapping):
        raise CompilationError("expect must be an object")
    capture = value.get("session")
    if capture is not None:
        if not isinstance(capture, Mapping):
            raise CompilationError("session must be an object")
        for name, path in capture.items():
            if not isinstance(path, str):
                raise CompilationError(f"session.{name} must be a dotted path string")
    repeat = value.get("repeat")
    return EmitStep(
        route=route,
        data=copy.deepcopy(value.get("data")),
        expect=copy.deepcopy(expect),
        capture=dict(capture) if capture else None,
        assertions=compile_assertions(value.get("assert")),
        repeat=_compile_repeat(repeat) if repeat is not None else None,
    )


def _compile_notify(value: Any) -> Step:
    if isinstance(value, str) and value:
        return NotifyStep(route=value)
    if isinstance(value, Mapping) and isinstance(value.get("route"), str) and value.get("route"):
        return NotifyStep(route=value["route"], data=copy.deepcopy(value.get("data")))
    raise CompilationError("notify must be a route string or an object with a route")


STEP_COMPILERS: Dict[str, Callable[[Any], Step]] = {
    "connect": _compile_connect,
    "disconnect": _compile_disconnect,
    "sleep": _compile_sleep,
    "echo": _compile_echo,
    "emit": _compile_emit,
    "notify": _compile_notify,
}


def compile_step(raw: Any) -> Step:
    if not isinstance(raw, Mapping):
        raise CompilationError("step must be an object")
    if not raw:
        raise CompilationError("empty step")
    if len(raw) != 1:
        raise CompilationError(f"step must have exactly one kind (got {sorted(map(str, raw))})")
    (kind, value), = raw.items()
    compiler = STEP_COMPILERS.get(kind)
    if compiler is None:
        raise CompilationError(f"unknown step {kind}")
    return compiler(value)


def compile_steps(steps: Sequence[Any]) -> Tuple[Step, ...]:
    if isinstance(steps, (str, bytes)) or not isinstance(steps, Sequence):
        raise CompilationError("script must be a list of steps")
    compiled: List[Step] = []
    for index, raw in enumerate(steps):
        if compiled and compiled[-1].forever:
            raise CompilationError(f"step {index}: redundant steps after a forever repeat")
        try:
            compiled.append(compile_step(raw))
        except CompilationError as exc:
            raise CompilationError(f"step {index}: {exc}") from None
    return tuple(compiled)


# ----------------------------------------------------------------------
# Script
# ----------------------------------------------------------------------


class Script:
    """A compiled, re-runnable step list."""

    def __init__(
        self,
        steps: Sequence[Any],
        options: Optional[Mapping[str, Any]] = None,
        *,
        session_factory: SessionFactory = Session,
        session_config: Optional[SessionConfig] = None,
        transport_config: Optional[TransportConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
        name: str = "",
    ) -> None:
        self.steps = compile_steps(steps)
        self.options: Mapping[str, Any] = dict(options or {})
        self.session_factory = session_factory
        self.session_config = session_config or SessionConfig()
        self.transport_config = transport_config or TransportConfig()
        self.environ: Mapping[str, str] = environ if environ is not None else os.environ
        self.name = name

    @property
    def forever(self) -> bool:
        return bool(self.steps) and self.steps[-1].forever

    def connect_configs(self, target: Any) -> Tuple[TransportConfig, SessionConfig]:
        """Build transport/session configs for a resolved connect target."""
        session_config = self.session_config
        if isinstance(target, str):
            return replace(self.transport_config, uri=target), session_config
        if not isinstance(target, Mapping) or not target.get("host") or not target.get("port"):
            raise CompilationError("missing host/port in connect")
        try:
            port = int(target["port"])
        except (TypeError, ValueError):
            raise CompilationError(f"invalid port in connect: {target['port']!r}") from None
        transport_config = replace(
            self.transport_config,
            uri=None,
            host=str(target["host"]),
            port=port,
            ssl=bool(target.get("ssl", False)),
        )
        timeout = target.get("timeout")
        if _is_number(timeout) and timeout > 0:
            seconds = float(timeout) / 1000.0
            session_config = replace(session_config, request_timeout=seconds, connect_timeout=seconds)
            transport_config = replace(transport_config, connect_timeout=seconds)
        return transport_config, session_config

    async def run(self, reporter: Optional[Reporter] = None, args: Optional[Mapping[str, Any]] = None) -> ScriptRuntime:
        """Execute the steps in order.

        Step failures are reported through ``reporter.error`` and end the run;
        a finite script that completes fires ``reporter.end`` exactly once.
        """
        runtime = ScriptRuntime(self, reporter, args)
        try:
            for step in self.steps:
                await step.execute(runtime)
        except asyncio.CancelledError:
            await runtime.close()
            raise
        except Exception as exc:
            logger.debug("script %s failed", self.name or "<anonymous>", exc_info=True)
            runtime.fail(exc)
            await runtime.close()
            return runtime
        if not self.forever:
            runtime.finish()
        return runtime

    def __len__(self) -> int:
        return len(self.steps)


__all__ = [
    "Script",
    "ScriptRuntime",
    "Step",
    "ConnectStep",
    "DisconnectStep",
    "SleepStep",
    "EchoStep",
    "EmitStep",
    "NotifyStep",
    "RepeatPolicy",
    "STEP_COMPILERS",
    "compile_step",
    "compile_steps",
]
