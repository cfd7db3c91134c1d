"""Interactive request shell over a single Pomelo session."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Tuple

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from pomelobot.errors import PomeloBotError
from pomelobot.session import Session, SessionConfig
from pomelobot.transport import NORMAL_CLOSURE, TransportConfig

from .output import emit_error, emit_event, emit_result, format_value

LOGGER = logging.getLogger("pomelobot_cli.shell")

HELP_COMMANDS = ("help", "?", "/h")
QUIT_COMMANDS = ("quit", "exit", "close", "/q")


def parse_request(line: str) -> Optional[Tuple[str, Any]]:
    """Split ``<route> [json]``; returns None for a blank line."""
    stripped = line.strip()
    if not stripped:
        return None
    route, _, body = stripped.partition(" ")
    body = body.strip()
    if not body:
        return route, None
    return route, json.loads(body)


class RobotShell:
    """Prompt-toolkit REPL sending each line as a request."""

    def __init__(
        self,
        transport_config: TransportConfig,
        session_config: Optional[SessionConfig] = None,
        *,
        json_output: bool = False,
        session_factory: Callable[..., Session] = Session,
    ) -> None:
        self.json_output = json_output
        self.session = session_factory(
            transport_config,
            session_config,
            error_handler=self._on_error,
            message_handler=self._on_push,
            kick_handler=self._on_kick,
            disconnect_handler=self._on_disconnect,
        )
        self.closed = False
        self._prompt: Optional[PromptSession] = None

    @property
    def domain(self) -> str:
        return self.session.uri

    def print_help(self) -> None:
        print("/h, help, ?\t show help")
        print("/q, quit, exit, close\t close connection")
        print("<route> [json message]\t send message")

    async def run(self) -> int:
        try:
            await self.session.connect()
        except PomeloBotError as exc:
            emit_error(self.json_output, message=str(exc))
            return 1
        self.print_help()
        self._prompt = PromptSession(f"{self.domain}> ", history=InMemoryHistory())
        try:
            while not self.closed:
                try:
                    with patch_stdout():
                        line = await self._prompt.prompt_async()
                except (EOFError, KeyboardInterrupt):
                    print()
                    break
                if not await self.handle(line):
                    break
        finally:
            await self.session.disconnect()
        return 0

    async def handle(self, line: str) -> bool:
        """Process one input line; False means the shell should exit."""
        command = line.strip()
        if command in HELP_COMMANDS:
            self.print_help()
            return True
        if command in QUIT_COMMANDS:
            return False
        try:
            parsed = parse_request(command)
        except ValueError as exc:
            emit_error(self.json_output, message=f"invalid JSON body: {exc}")
            return True
        if parsed is None:
            return True
        route, payload = parsed
        try:
            response = await self.session.request(route, payload)
        except PomeloBotError as exc:
            emit_error(self.json_output, message=str(exc), data={"route": route})
            return not self.closed
        emit_result(self.json_output, message=format_value(response), data=response)
        return True

    # Session callbacks

    def _on_error(self, exc: BaseException) -> None:
        LOGGER.warning("%s: %s", type(exc).__name__, exc)

    def _on_push(self, route: Any, msg: Any) -> None:
        emit_event(self.json_output, kind="push", route=route, data=msg)

    def _on_kick(self, msg: Any) -> None:
        emit_event(self.json_output, kind="kicked", data=msg)

    def _on_disconnect(self, code: int, reason: str) -> None:
        self.closed = True
        if code != NORMAL_CLOSURE:
            emit_error(self.json_output, message=f"disconnected: code: {code}, reason: {reason}")
        app = self._prompt.app if self._prompt is not None else None
        if app is not None and app.is_running:
            app.exit(exception=EOFError())


__all__ = ["RobotShell", "parse_request", "HELP_COMMANDS", "QUIT_COMMANDS"]
