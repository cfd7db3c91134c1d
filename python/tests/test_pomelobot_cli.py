import asyncio
import functools
import json
from types import SimpleNamespace

import pytest

from pomelobot.config import RobotConfig
from pomelobot.reporter import LogLevel
from pomelobot.script import Script
from pomelobot.transport import TransportConfig
from pomelobot_cli import cli
from pomelobot_cli.output import emit_error, emit_event, emit_result
from pomelobot_cli.shell import RobotShell, parse_request

from pomelo_stubs import stub_session_factory

SCRIPT = """\
- connect: {host: $options.host, port: 3010}
- emit:
    route: connector.entryHandler.entry
    data: {name: $args.name}
    expect: {code: 200}
"""


@pytest.fixture
def stub_scripts(monkeypatch):
    factory = stub_session_factory()
    monkeypatch.setattr(cli, "Script", functools.partial(Script, session_factory=factory))
    return factory


def test_arg_parser_defaults():
    args = cli.build_arg_parser().parse_args(["a.yml"])
    assert args.files == ["a.yml"]
    assert args.host == "localhost"
    assert args.port is None
    assert args.interval == 250
    assert args.concurrency == 100
    assert not args.replicate and not args.sustain


def test_robot_config_from_args_converts_milliseconds():
    args = cli.build_arg_parser().parse_args(
        ["-H", "game", "-P", "4000", "-t", "1500", "-i", "50", "-c", "7", "-l", "w", "-p", "_p_", "--sustain", "x.yml"]
    )
    config = RobotConfig.from_args(args)
    assert config.transport_config().url == "ws://game:4000"
    assert config.session_config().request_timeout == pytest.approx(1.5)
    assert config.scheduler_config().interval == pytest.approx(0.05)
    assert config.scheduler_config().concurrency == 7
    assert config.scheduler_config().sustain
    assert config.level is LogLevel.WARN
    assert config.prefix == "_p_"
    assert config.options() == {"host": "game", "port": 4000, "ssl": False, "uri": None, "timeout": 1500}


def test_robot_config_defaults():
    config = RobotConfig.from_args(SimpleNamespace())
    assert config.transport_config().url == "ws://localhost:3010"
    assert config.request_timeout == 3.0
    assert config.interval == 0.25
    assert config.prefix.startswith("_") and config.prefix.endswith("_robot_")


def test_no_files_and_no_target_prints_usage(capsys):
    assert cli.main([]) == 2
    assert "usage:" in capsys.readouterr().err


def test_invalid_numbers_are_usage_errors():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["-c", "0", "a.yml"])
    assert excinfo.value.code == 2


def test_missing_script_file_exits_1(tmp_path, capsys):
    assert cli.main([str(tmp_path / "missing.yml")]) == 1
    assert "no such script file" in capsys.readouterr().out


def test_bad_script_reports_compilation_error(tmp_path, capsys):
    path = tmp_path / "bad.yml"
    path.write_text("- fly: 1\n", encoding="utf-8")
    assert cli.main(["--json", str(path)]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "error"
    assert "unknown step fly" in payload["error"]


def test_run_mode_executes_scripts(tmp_path, capsys, stub_scripts):
    path = tmp_path / "robot.yml"
    path.write_text(SCRIPT, encoding="utf-8")
    assert cli.main(["-H", "game", str(path)]) == 0
    assert f"{path}: complete" in capsys.readouterr().out
    (stub,) = stub_scripts.transports
    assert stub.url == "ws://game:3010"
    assert stub.requests[0].payload == {"name": "robot"}
    assert stub.closed_with == 1000


def test_run_mode_stops_at_first_failure(tmp_path, capsys, stub_scripts):
    failing = tmp_path / "fail.yml"
    failing.write_text("- emit: a.b.c\n", encoding="utf-8")
    passing = tmp_path / "ok.yml"
    passing.write_text(SCRIPT, encoding="utf-8")
    assert cli.main([str(failing), str(passing)]) == 1
    assert "a connect step must run first" in capsys.readouterr().out
    assert stub_scripts.transports == []


def test_replicate_mode_drains(tmp_path, stub_scripts):
    path = tmp_path / "robot.yml"
    path.write_text(SCRIPT, encoding="utf-8")
    log_file = tmp_path / "robots.log"
    code = cli.main(["-r", "-c", "2", "-i", "5", "-p", "_r_", "-o", str(log_file), str(path)])
    assert code == 0
    assert stub_scripts.transports
    assert stub_scripts.transports[0].requests[0].payload == {"name": "_r_1"}
    assert "<_r_1> complete" in log_file.read_text(encoding="utf-8")


def test_parse_request():
    assert parse_request("   ") is None
    assert parse_request("a.b.c") == ("a.b.c", None)
    assert parse_request('a.b.c {"x": [1, 2]}') == ("a.b.c", {"x": [1, 2]})
    with pytest.raises(ValueError):
        parse_request("a.b.c {oops")


def test_shell_sends_requests_and_prints_events(capsys):
    factory = stub_session_factory()
    shell = RobotShell(TransportConfig(host="h", port=1), json_output=True, session_factory=factory)

    async def scenario():
        await shell.session.connect()
        results = [
            await shell.handle("help"),
            await shell.handle('chat.h.send {"m": "hi"}'),
            await shell.handle("chat.h.send {broken"),
        ]
        factory.transports[0].push("onChat", {"m": "yo"})
        await asyncio.sleep(0.01)
        results.append(await shell.handle("/q"))
        await shell.session.disconnect()
        return results

    results = asyncio.run(scenario())
    assert results == [True, True, True, False]
    out = capsys.readouterr().out
    assert "/q, quit, exit, close" in out
    assert '"echo": {\n' in out
    assert "invalid JSON body" in out
    assert '"route": "onChat"' in out
    assert shell.domain == "ws://h:1"


def test_output_plain_and_json(capsys):
    emit_result(False, message="done", data={"x": 1})
    emit_error(False, message="nope")
    emit_event(False, kind="push", route="onChat", data={"m": 1})
    emit_event(False, kind="kicked", data=None)
    assert capsys.readouterr().out.splitlines() == ["done", "error: nope", 'onChat {"m": 1}', "kicked null"]

    emit_result(True, message="done")
    emit_error(True, message="nope", data={"route": "a.b.c"})
    emit_event(True, kind="kicked", data={"reason": "dup"})
    out = capsys.readouterr().out
    decoder = json.JSONDecoder()
    payloads, index = [], 0
    while index < len(out):
        payload, end = decoder.raw_decode(out, index)
        payloads.append(payload)
        index = end + 1
    assert payloads == [
        {"status": "ok", "message": "done"},
        {"status": "error", "error": "nope", "details": {"route": "a.b.c"}},
        {"status": "event", "event": "kicked", "data": {"reason": "dup"}},
    ]
