import pytest

from pomelobot.errors import ScriptLoadError
from pomelobot.loader import load_script
from pomelobot.script import Script

SCRIPT = """\
- connect:
    host: $options.host
    port: 3010
- emit:
    route: connector.entryHandler.entry
    data: {name: $args.name}
    expect: {code: 200}
    session: {uid: user.id}
- emit:
    route: area.playerHandler.move
    repeat: {count: 2, sleep: 100}
- disconnect:
"""


def test_load_script_returns_step_list(tmp_path):
    path = tmp_path / "robot.yml"
    path.write_text(SCRIPT, encoding="utf-8")
    steps = load_script(path)
    assert steps[0] == {"connect": {"host": "$options.host", "port": 3010}}
    assert steps[-1] == {"disconnect": None}
    assert len(Script(steps)) == 4


def test_relative_paths_resolve_against_cwd(tmp_path, monkeypatch):
    (tmp_path / "r.yaml").write_text("- sleep: 1\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    assert load_script("r.yaml") == [{"sleep": 1}]


def test_rejects_non_yaml_suffix(tmp_path):
    path = tmp_path / "robot.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ScriptLoadError, match=".yml or .yaml"):
        load_script(path)


def test_rejects_missing_file(tmp_path):
    with pytest.raises(ScriptLoadError, match="no such script"):
        load_script(tmp_path / "missing.yml")


def test_rejects_non_list_document(tmp_path):
    path = tmp_path / "robot.yml"
    path.write_text("connect: ws://h:1\n", encoding="utf-8")
    with pytest.raises(ScriptLoadError, match="list of steps"):
        load_script(path)


def test_rejects_invalid_yaml(tmp_path):
    path = tmp_path / "robot.yml"
    path.write_text("- emit: {route: [\n", encoding="utf-8")
    with pytest.raises(ScriptLoadError, match="invalid YAML"):
        load_script(path)
